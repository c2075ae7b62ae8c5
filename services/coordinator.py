"""Ledger coordinator: ApplyDelta as a small state machine.

    IDLE -> COMMITTING_LEDGER -> LEDGER_COMMITTED -> SYNCING_MIRROR
        -> MIRROR_SYNCED                                   (success)
        -> MIRROR_FAILED -> COMPENSATING
            -> COMPENSATION_SUCCEEDED                      (error)
            -> COMPENSATION_FAILED_CRITICAL                (error, incident)
    COMMITTING_LEDGER -> LEDGER_COMMIT_FAILED              (error)

Contract towards callers: ledger and mirror agree, or the operation
did not happen. Only MIRROR_SYNCED returns; every other terminal
state raises TallymanError.
"""

import enum
import logging
from dataclasses import dataclass, field

from tallyman.exceptions import TallymanError
from tallyman.protocols.mirror import MirrorBackend
from tallyman.protocols.notifier import TierChangeNotifier
from tallyman.services.compensation import CompensationHandler
from tallyman.services.ledger import MAX_DELTA, CommitResult, LedgerStore
from tallyman.services.mirror import MirrorSync, get_mirror_backend
from tallyman.services.notifications import dispatch_tier_change, get_notifier
from tallyman.tiers import discount_of

logger = logging.getLogger(__name__)


class SyncState(str, enum.Enum):
    IDLE = "idle"
    COMMITTING_LEDGER = "committing_ledger"
    LEDGER_COMMIT_FAILED = "ledger_commit_failed"
    LEDGER_COMMITTED = "ledger_committed"
    SYNCING_MIRROR = "syncing_mirror"
    MIRROR_SYNCED = "mirror_synced"
    MIRROR_FAILED = "mirror_failed"
    COMPENSATING = "compensating"
    COMPENSATION_SUCCEEDED = "compensation_succeeded"
    COMPENSATION_FAILED_CRITICAL = "compensation_failed_critical"


TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.COMMITTING_LEDGER}),
    SyncState.COMMITTING_LEDGER: frozenset({SyncState.LEDGER_COMMITTED, SyncState.LEDGER_COMMIT_FAILED}),
    SyncState.LEDGER_COMMITTED: frozenset({SyncState.SYNCING_MIRROR}),
    SyncState.SYNCING_MIRROR: frozenset({SyncState.MIRROR_SYNCED, SyncState.MIRROR_FAILED}),
    SyncState.MIRROR_FAILED: frozenset({SyncState.COMPENSATING}),
    SyncState.COMPENSATING: frozenset(
        {SyncState.COMPENSATION_SUCCEEDED, SyncState.COMPENSATION_FAILED_CRITICAL}
    ),
}

TERMINAL_STATES = frozenset(
    {
        SyncState.LEDGER_COMMIT_FAILED,
        SyncState.MIRROR_SYNCED,
        SyncState.COMPENSATION_SUCCEEDED,
        SyncState.COMPENSATION_FAILED_CRITICAL,
    }
)


@dataclass
class SyncRun:
    """State of one apply_delta call."""

    principal_id: str
    delta: int
    reason: str
    state: SyncState = SyncState.IDLE
    history: list[SyncState] = field(default_factory=lambda: [SyncState.IDLE])

    def advance(self, new_state: SyncState) -> None:
        if new_state not in TRANSITIONS.get(self.state, frozenset()):
            raise ValueError(f"Illegal transition {self.state.value} -> {new_state.value}")
        logger.debug("ApplyDelta %s: %s -> %s", self.principal_id, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass(frozen=True)
class ApplyResult:
    """Successful apply_delta outcome. ``delta`` is the effective delta."""

    balance: int
    tier: str
    discount_percent: int
    delta: int

    def as_dict(self) -> dict:
        return {
            "balance": self.balance,
            "tier": str(self.tier),
            "discountPercent": self.discount_percent,
            "delta": self.delta,
        }


class LedgerCoordinator:
    """
    Orchestrates ledger commit, mirror sync and compensation.

    Backends default to the configured ones; pass instances to
    inject fakes.
    """

    def __init__(
        self,
        mirror_backend: MirrorBackend | None = None,
        notifier: TierChangeNotifier | None = None,
    ):
        self.mirror_backend = mirror_backend
        self.notifier = notifier

    def apply_delta(
        self,
        principal_id: str,
        delta: int,
        reason: str,
        metadata: dict | None = None,
    ) -> ApplyResult:
        """
        Apply a signed point delta to the ledger and the mirror.

        Raises:
            TallymanError: INVALID_DELTA / INVALID_REQUEST, PRINCIPAL_NOT_FOUND,
                LEDGER_COMMIT_FAILED, COMPENSATION_SUCCEEDED or
                COMPENSATION_FAILED_CRITICAL. ``error.data["state"]`` holds
                the terminal state where one was reached.
        """
        self._validate(principal_id, delta, reason, metadata)

        # Resolve collaborators before touching the ledger
        backend = self.mirror_backend or get_mirror_backend()
        notifier = self.notifier or get_notifier()

        run = SyncRun(principal_id=principal_id, delta=delta, reason=reason)
        commit = self._commit(run, metadata)

        run.advance(SyncState.SYNCING_MIRROR)
        discount = discount_of(commit.new_tier)
        try:
            MirrorSync.sync_from_ledger(principal_id, backend=backend)
        except TallymanError as mirror_error:
            run.advance(SyncState.MIRROR_FAILED)
            self._compensate(run, commit, mirror_error)

        run.advance(SyncState.MIRROR_SYNCED)
        if commit.tier_changed and notifier is not None:
            dispatch_tier_change(principal_id, commit.new_tier, discount, notifier=notifier)

        return ApplyResult(
            balance=commit.new_balance,
            tier=str(commit.new_tier),
            discount_percent=discount,
            delta=commit.effective_delta,
        )

    def _commit(self, run: SyncRun, metadata: dict | None) -> CommitResult:
        run.advance(SyncState.COMMITTING_LEDGER)
        try:
            commit = LedgerStore.commit_delta(run.principal_id, run.delta, run.reason, metadata=metadata)
        except TallymanError as exc:
            run.advance(SyncState.LEDGER_COMMIT_FAILED)
            exc.data["state"] = run.state.value
            logger.error(
                "ApplyDelta failed for %s before commit: %s",
                run.principal_id,
                exc.code,
                extra={"principal_id": run.principal_id, "delta": run.delta, "reason": run.reason},
            )
            raise
        run.advance(SyncState.LEDGER_COMMITTED)
        return commit

    def _compensate(self, run: SyncRun, commit: CommitResult, mirror_error: TallymanError) -> None:
        """Reverse the commit and raise; never returns."""
        run.advance(SyncState.COMPENSATING)
        try:
            restored = CompensationHandler.compensate(
                run.principal_id,
                original_delta=commit.effective_delta,
                original_reason=run.reason,
                original_entry_id=commit.entry_id,
                requested_delta=commit.requested_delta,
                cause=mirror_error,
            )
        except TallymanError as exc:
            run.advance(SyncState.COMPENSATION_FAILED_CRITICAL)
            exc.data["state"] = run.state.value
            exc.data["ledger_balance"] = commit.new_balance
            raise

        run.advance(SyncState.COMPENSATION_SUCCEEDED)
        logger.error(
            "ApplyDelta for %s rolled back after mirror failure (%s)",
            run.principal_id,
            mirror_error.data.get("cause", mirror_error.message),
            extra={"principal_id": run.principal_id, "delta": run.delta, "reason": run.reason},
        )
        raise TallymanError(
            "COMPENSATION_SUCCEEDED",
            principal_id=run.principal_id,
            delta=run.delta,
            reason=run.reason,
            restored_balance=restored.new_balance,
            state=run.state.value,
        ) from mirror_error

    @staticmethod
    def _validate(principal_id: str, delta: int, reason: str, metadata: dict | None) -> None:
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise TallymanError("INVALID_DELTA", delta=repr(delta))
        if abs(delta) > MAX_DELTA:
            raise TallymanError(
                "INVALID_DELTA",
                message=f"Delta must be between -{MAX_DELTA} and {MAX_DELTA}",
                delta=delta,
            )
        if not principal_id or not reason:
            raise TallymanError("INVALID_REQUEST", principal_id=principal_id, reason=reason)
        if metadata is not None and not isinstance(metadata, dict):
            raise TallymanError("INVALID_REQUEST", message="Metadata must be a mapping")
