"""Reconciliation: detect and repair ledger/mirror divergence.

The ledger is replayed from its activity log (floor at zero at every
step) and compared with the stored row, and the stored row is compared
with what the mirror serves to client apps.
"""

import logging
from dataclasses import dataclass

from tallyman.exceptions import TallymanError
from tallyman.models import ActivityLogEntry, LedgerIncident, PrincipalBalance
from tallyman.protocols.mirror import MirrorBackend, MirrorSnapshot
from tallyman.services.mirror import MirrorSync, get_mirror_backend
from tallyman.tiers import Tier, tier_of

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationReport:
    principal_id: str
    ledger_balance: int
    ledger_tier: str
    folded_balance: int
    entries_checked: int
    mirror_balance: int | None
    mirror_tier: str | None

    @property
    def ledger_consistent(self) -> bool:
        return (
            self.folded_balance == self.ledger_balance
            and self.ledger_tier == tier_of(self.ledger_balance)
        )

    @property
    def mirror_consistent(self) -> bool:
        # A missing document reads as an empty (zero, BRONZE) balance.
        if self.mirror_balance is None:
            return self.ledger_balance == 0 and self.ledger_tier == Tier.BRONZE
        return self.mirror_balance == self.ledger_balance and self.mirror_tier == self.ledger_tier

    @property
    def is_consistent(self) -> bool:
        return self.ledger_consistent and self.mirror_consistent


def fold_balance(deltas) -> int:
    """Replay deltas from zero, flooring at zero after each step."""
    balance = 0
    for delta in deltas:
        balance = max(0, balance + delta)
    return balance


def verify(principal_id: str, backend: MirrorBackend | None = None) -> ReconciliationReport:
    """Compare activity log, ledger row and mirror snapshot of one principal."""
    try:
        account = PrincipalBalance.objects.get(principal_id=principal_id)
    except PrincipalBalance.DoesNotExist:
        raise TallymanError("PRINCIPAL_NOT_FOUND", principal_id=principal_id)

    deltas = list(
        ActivityLogEntry.objects.filter(account=account)
        .order_by("id")
        .values_list("delta", flat=True)
    )
    snapshot = MirrorSync.get_snapshot(principal_id, backend=backend or get_mirror_backend())

    report = ReconciliationReport(
        principal_id=principal_id,
        ledger_balance=account.points_balance,
        ledger_tier=account.tier,
        folded_balance=fold_balance(deltas),
        entries_checked=len(deltas),
        mirror_balance=snapshot.points_balance if snapshot else None,
        mirror_tier=snapshot.tier if snapshot else None,
    )
    if not report.is_consistent:
        logger.warning(
            "Divergence for %s: ledger=%s folded=%s mirror=%s",
            principal_id,
            report.ledger_balance,
            report.folded_balance,
            report.mirror_balance,
            extra={"principal_id": principal_id},
        )
    return report


def resync_mirror(principal_id: str, backend: MirrorBackend | None = None) -> MirrorSnapshot:
    """Push the ledger's current state to the mirror (operator repair)."""
    snapshot = MirrorSync.sync_from_ledger(principal_id, backend=backend)
    logger.info("Mirror resynced for %s at %s pts", principal_id, snapshot.points_balance)
    return snapshot


def resolve_incident(
    incident_id: int,
    resolved_by: str,
    note: str = "",
    resync: bool = True,
    backend: MirrorBackend | None = None,
) -> LedgerIncident:
    """Close an incident, by default after realigning the mirror with the ledger."""
    try:
        incident = LedgerIncident.objects.get(pk=incident_id)
    except LedgerIncident.DoesNotExist:
        raise TallymanError("INCIDENT_NOT_FOUND", incident_id=incident_id)

    if resync:
        resync_mirror(incident.principal_id, backend=backend)
    incident.mark_resolved(resolved_by, note)
    logger.info("Incident #%s resolved by %s", incident.pk, resolved_by)
    return incident
