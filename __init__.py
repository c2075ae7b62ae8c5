"""
Django Tallyman - Loyalty points ledger with mirror synchronization.

Usage:
    from tallyman import LedgerService, TallymanError

    result = LedgerService.apply_delta("uid-123", 150, "purchase", {"order": "A-1"})
    status = LedgerService.get_status("uid-123")

    try:
        LedgerService.apply_delta("uid-123", -50, "redemption")
    except TallymanError as e:
        if e.retryable:
            schedule_retry()
"""


def __getattr__(name):
    if name == "LedgerService":
        from tallyman.service import LedgerService

        return LedgerService
    if name == "LedgerCoordinator":
        from tallyman.services.coordinator import LedgerCoordinator

        return LedgerCoordinator
    if name == "TallymanError":
        from tallyman.exceptions import TallymanError

        return TallymanError
    if name == "Tier":
        from tallyman.tiers import Tier

        return Tier
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["LedgerService", "LedgerCoordinator", "TallymanError", "Tier"]
__version__ = "0.1.0"
