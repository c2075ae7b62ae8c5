"""
Tallyman signals: public event API.

Emitted signals:
- tier_changed: Emitted by SignalTierChangeNotifier after a successful apply_delta
- ledger_compensated: Emitted by CompensationHandler after a successful rollback
- incident_raised: Emitted by CompensationHandler when a rollback failed
"""

from django.dispatch import Signal

tier_changed = Signal()  # sender=SignalTierChangeNotifier, principal_id, new_tier, discount_percent
ledger_compensated = Signal()  # sender=CompensationHandler, principal_id, result, original_entry_id
incident_raised = Signal()  # sender=CompensationHandler, incident (may be None if not persisted)
