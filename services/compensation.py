"""Compensation: reverses a ledger commit whose mirror sync failed.

One synchronous attempt only. If the reversing commit fails too, the
divergence is logged at CRITICAL, stored as a LedgerIncident and left
for an operator; it is never retried here.
"""

import logging

from django.db import DatabaseError, transaction

from tallyman.exceptions import TallymanError
from tallyman.models import ROLLBACK_REASON, LedgerIncident
from tallyman.services.ledger import CommitResult, LedgerStore
from tallyman.signals import incident_raised, ledger_compensated

logger = logging.getLogger(__name__)


class CompensationHandler:
    """Compensating transaction for the ledger/mirror dual write."""

    @classmethod
    def compensate(
        cls,
        principal_id: str,
        original_delta: int,
        original_reason: str,
        original_entry_id: int | None = None,
        requested_delta: int | None = None,
        cause: Exception | None = None,
    ) -> CommitResult:
        """
        Commit -original_delta with reason ROLLBACK_REASON.

        Pass the effective delta of the original commit: a debit that was
        floored at zero is then reversed by exactly what it removed.

        Args:
            principal_id: Principal identifier
            original_delta: Effective delta of the commit to reverse
            original_reason: Reason of the commit to reverse
            original_entry_id: ActivityLogEntry id of the commit to reverse
            requested_delta: Delta the caller originally asked for
            cause: The mirror failure that triggered compensation

        Returns:
            CommitResult of the reversing commit (restored balance/tier)

        Raises:
            TallymanError: COMPENSATION_FAILED_CRITICAL if the reversing
                commit failed; an incident has been raised
        """
        if requested_delta is None:
            requested_delta = original_delta

        metadata = {
            "compensates_entry": original_entry_id,
            "original_reason": original_reason,
            "original_delta": original_delta,
            "original_requested_delta": requested_delta,
            "mirror_error": str(cause) if cause else "",
        }

        try:
            restored = LedgerStore.commit_delta(
                principal_id,
                -original_delta,
                ROLLBACK_REASON,
                metadata=metadata,
                reverses=original_entry_id,
            )
        except TallymanError as exc:
            incident = cls._raise_incident(
                principal_id=principal_id,
                original_delta=original_delta,
                requested_delta=requested_delta,
                original_reason=original_reason,
                original_entry_id=original_entry_id,
                mirror_error=cause,
                compensation_error=exc,
            )
            raise TallymanError(
                "COMPENSATION_FAILED_CRITICAL",
                principal_id=principal_id,
                original_delta=original_delta,
                original_reason=original_reason,
                mirror_error=str(cause) if cause else "",
                compensation_error=str(exc),
                incident_id=incident.pk if incident else None,
            ) from exc

        logger.error(
            "Ledger compensated for %s: reversed %+d (%s), balance restored to %s",
            principal_id,
            original_delta,
            original_reason,
            restored.new_balance,
            extra={
                "principal_id": principal_id,
                "original_delta": original_delta,
                "original_reason": original_reason,
                "original_entry_id": original_entry_id,
            },
        )
        ledger_compensated.send_robust(
            sender=cls,
            principal_id=principal_id,
            result=restored,
            original_entry_id=original_entry_id,
        )
        return restored

    @classmethod
    def _raise_incident(
        cls,
        principal_id: str,
        original_delta: int,
        requested_delta: int,
        original_reason: str,
        original_entry_id: int | None,
        mirror_error: Exception | None,
        compensation_error: Exception,
    ) -> LedgerIncident | None:
        """Log at CRITICAL and persist an incident for manual reconciliation."""
        context = {
            "principal_id": principal_id,
            "original_delta": original_delta,
            "requested_delta": requested_delta,
            "original_reason": original_reason,
            "original_entry_id": original_entry_id,
            "mirror_error": str(mirror_error) if mirror_error else "",
            "compensation_error": str(compensation_error),
        }
        logger.critical(
            "UNRESOLVED LEDGER/MIRROR DIVERGENCE for %s: rollback of %+d (%s) failed; "
            "manual reconciliation required. mirror_error=%s compensation_error=%s",
            principal_id,
            original_delta,
            original_reason,
            context["mirror_error"],
            context["compensation_error"],
            extra=context,
        )

        incident = None
        try:
            with transaction.atomic():
                incident = LedgerIncident.objects.create(
                    principal_id=principal_id,
                    original_delta=original_delta,
                    requested_delta=requested_delta,
                    original_reason=original_reason,
                    original_entry_id=original_entry_id,
                    mirror_error=context["mirror_error"],
                    compensation_error=context["compensation_error"],
                    context=context,
                )
        except DatabaseError:
            # The CRITICAL log line above is the record of last resort.
            logger.exception("Could not persist ledger incident for %s", principal_id, extra=context)

        incident_raised.send_robust(sender=cls, incident=incident, context=context)
        return incident
