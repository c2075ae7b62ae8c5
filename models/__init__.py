"""Tallyman models."""

from tallyman.models.balance import PrincipalBalance
from tallyman.models.activity import ActivityLogEntry, ROLLBACK_REASON
from tallyman.models.incident import LedgerIncident
from tallyman.models.mirror_document import MirrorDocument

__all__ = [
    # Ledger (source of truth)
    "PrincipalBalance",
    "ActivityLogEntry",
    "ROLLBACK_REASON",
    # Operator-facing divergence records
    "LedgerIncident",
    # Bundled mirror store
    "MirrorDocument",
]
