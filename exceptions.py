"""Tallyman exceptions."""


class BaseError(Exception):
    """
    Structured exception with a machine-readable code.

    Subclasses declare ``_default_messages`` keyed by code. Extra keyword
    arguments are kept in ``data`` for logging and API responses.
    """

    _default_messages: dict[str, str] = {}

    def __init__(self, code: str, message: str | None = None, **data):
        self.code = code
        self.message = message or self._default_messages.get(code, code)
        self.data = data
        super().__init__(f"[{code}] {self.message}")

    def as_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "data": self.data,
        }


class TallymanError(BaseError):
    """
    Structured exception for ledger operations.

    Usage:
        try:
            LedgerService.apply_delta("user-1", 150, "purchase")
        except TallymanError as e:
            if e.code == "COMPENSATION_SUCCEEDED":
                schedule_retry()
    """

    _default_messages = {
        "PRINCIPAL_NOT_FOUND": "Principal has no loyalty balance",
        "LEDGER_COMMIT_FAILED": "Ledger transaction failed, nothing was persisted",
        "MIRROR_SYNC_FAILED": "Mirror snapshot could not be written",
        "COMPENSATION_SUCCEEDED": "Update could not be completed, please retry",
        "COMPENSATION_FAILED_CRITICAL": (
            "Update could not be completed and the ledger could not be restored"
        ),
        "INVALID_DELTA": "Delta must be an integer",
        "INVALID_REQUEST": "Principal id and reason are required",
        "INCIDENT_NOT_FOUND": "Incident not found",
        "MIRROR_BACKEND_INVALID": "Configured mirror backend does not implement MirrorBackend",
    }

    @property
    def retryable(self) -> bool:
        """True when the caller may safely retry the whole operation."""
        return self.code in ("LEDGER_COMMIT_FAILED", "COMPENSATION_SUCCEEDED")
