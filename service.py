"""
Tallyman public API.

CORE (essential):
    LedgerService.apply_delta(principal_id, delta, reason, metadata)
    LedgerService.get_status(principal_id)

CONVENIENCE (helpers):
    LedgerService.provision(principal_id)
    LedgerService.history(principal_id)
    LedgerService.verify(principal_id)
    LedgerService.resync_mirror(principal_id)
    LedgerService.resolve_incident(incident_id, resolved_by)
"""

from dataclasses import dataclass

from tallyman.conf import tallyman_settings
from tallyman.models import ActivityLogEntry, LedgerIncident, PrincipalBalance
from tallyman.protocols.mirror import MirrorSnapshot
from tallyman.services import reconciliation
from tallyman.services.coordinator import ApplyResult, LedgerCoordinator
from tallyman.services.ledger import LedgerStore
from tallyman.tiers import discount_of, next_tier


@dataclass(frozen=True)
class LoyaltyStatus:
    """Current loyalty status as read from the ledger."""

    balance: int
    tier: str
    discount_percent: int
    next_tier: str | None
    points_to_next_tier: int

    def as_dict(self) -> dict:
        return {
            "balance": self.balance,
            "tier": str(self.tier),
            "discountPercent": self.discount_percent,
            "nextTier": str(self.next_tier) if self.next_tier else None,
            "pointsToNextTier": self.points_to_next_tier,
        }


class LedgerService:
    """
    Tallyman public API.

    Uses @classmethod for extensibility, consistent with the other services.
    Callers that need injected backends use LedgerCoordinator directly.
    """

    # ======================================================================
    # CORE API
    # ======================================================================

    @classmethod
    def apply_delta(
        cls,
        principal_id: str,
        delta: int,
        reason: str,
        metadata: dict | None = None,
    ) -> ApplyResult:
        """
        Credit or debit points on ledger and mirror.

        Args:
            principal_id: Principal identifier
            delta: Signed points change (debits floor the balance at zero)
            reason: Tag for the activity log (purchase, referral, redemption, ...)
            metadata: Opaque JSON-serializable context

        Returns:
            ApplyResult(balance, tier, discount_percent, delta)

        Raises:
            TallymanError: any non-success outcome. Treat it as "points not
                credited yet"; on COMPENSATION_FAILED_CRITICAL the ledger may
                still hold the update.
        """
        return LedgerCoordinator().apply_delta(principal_id, delta, reason, metadata)

    @classmethod
    def get_status(cls, principal_id: str) -> LoyaltyStatus:
        """
        Read balance, tier and progress to the next tier from the ledger.

        Raises:
            TallymanError: PRINCIPAL_NOT_FOUND
        """
        account = LedgerStore.get_account(principal_id)
        upcoming, missing = next_tier(account.points_balance)
        return LoyaltyStatus(
            balance=account.points_balance,
            tier=str(account.tier),
            discount_percent=discount_of(account.tier),
            next_tier=str(upcoming) if upcoming else None,
            points_to_next_tier=missing,
        )

    # ======================================================================
    # CONVENIENCE API
    # ======================================================================

    @classmethod
    def provision(cls, principal_id: str) -> PrincipalBalance:
        """Create a zero-balance row. Idempotent."""
        account, _ = LedgerStore.provision(principal_id)
        return account

    @classmethod
    def history(cls, principal_id: str, limit: int | None = None) -> list[ActivityLogEntry]:
        """Most recent activity entries (HISTORY_LIMIT by default)."""
        if limit is None:
            limit = tallyman_settings.HISTORY_LIMIT
        return LedgerStore.entries(principal_id, limit=limit)

    @classmethod
    def verify(cls, principal_id: str) -> reconciliation.ReconciliationReport:
        """Check activity log, ledger row and mirror agree."""
        return reconciliation.verify(principal_id)

    @classmethod
    def resync_mirror(cls, principal_id: str) -> MirrorSnapshot:
        """Overwrite the mirror snapshot with the ledger's state."""
        return reconciliation.resync_mirror(principal_id)

    @classmethod
    def open_incidents(cls) -> list[LedgerIncident]:
        return list(LedgerIncident.objects.filter(status=LedgerIncident.Status.OPEN))

    @classmethod
    def resolve_incident(
        cls,
        incident_id: int,
        resolved_by: str,
        note: str = "",
        resync: bool = True,
    ) -> LedgerIncident:
        """Close an incident after manual reconciliation."""
        return reconciliation.resolve_incident(incident_id, resolved_by, note=note, resync=resync)
