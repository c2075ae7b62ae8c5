"""Ledger store: the only writer of principal balances.

Every mutation runs inside a durable transaction.atomic() with the principal's
row locked by select_for_update(), so updates to one principal are
serialized while different principals never wait on each other.
"""

import logging
from dataclasses import dataclass

from django.db import DatabaseError, transaction

from tallyman.conf import tallyman_settings
from tallyman.exceptions import TallymanError
from tallyman.models import ActivityLogEntry, PrincipalBalance
from tallyman.tiers import Tier, tier_of

logger = logging.getLogger(__name__)

# Largest |delta| accepted; matches the range of the balance column.
MAX_DELTA = 2_147_483_647


@dataclass(frozen=True)
class CommitResult:
    """Outcome of one committed ledger transaction."""

    principal_id: str
    old_balance: int
    old_tier: str
    new_balance: int
    new_tier: str
    requested_delta: int
    effective_delta: int
    entry_id: int

    @property
    def tier_changed(self) -> bool:
        return self.old_tier != self.new_tier

    @property
    def was_floored(self) -> bool:
        return self.effective_delta != self.requested_delta


class LedgerStore:
    """
    Durable store adapter.

    Uses @classmethod for extensibility (consistent with other services).
    """

    @classmethod
    def commit_delta(
        cls,
        principal_id: str,
        delta: int,
        reason: str,
        metadata: dict | None = None,
        reverses: int | None = None,
    ) -> CommitResult:
        """
        Apply a signed delta to a principal's balance.

        The balance is floored at zero, so a debit larger than the
        balance applies only what is available. The activity entry
        records both the requested and the effective delta.

        The transaction is durable: the commit is final when this returns,
        and calls made inside an outer atomic block are refused.

        Args:
            principal_id: Principal identifier
            delta: Signed change requested by the caller
            reason: Tag stored on the activity entry (purchase, referral, ...)
            metadata: Opaque JSON-serializable context
            reverses: Id of the activity entry this commit compensates

        Returns:
            CommitResult with balances and tiers before and after

        Raises:
            TallymanError: PRINCIPAL_NOT_FOUND, INVALID_REQUEST inside an
                outer transaction, or LEDGER_COMMIT_FAILED when the
                transaction could not commit (nothing persisted)
        """
        try:
            with transaction.atomic(durable=True):
                account = cls._get_account_for_update(principal_id)

                old_balance = account.points_balance
                old_tier = account.tier
                new_balance = max(0, old_balance + delta)
                new_tier = tier_of(new_balance)

                account.points_balance = new_balance
                account.tier = new_tier
                account.save(update_fields=["points_balance", "tier", "updated_at"])

                entry = ActivityLogEntry.objects.create(
                    account=account,
                    delta=new_balance - old_balance,
                    requested_delta=delta,
                    reason=reason,
                    resulting_balance=new_balance,
                    resulting_tier=new_tier,
                    metadata=dict(metadata or {}),
                    reverses_id=reverses,
                )
        except RuntimeError:
            # Django refuses a durable block nested in another atomic block
            if not transaction.get_connection().in_atomic_block:
                raise
            logger.error(
                "Ledger commit refused for %s: called inside an outer transaction",
                principal_id,
                extra={"principal_id": principal_id, "delta": delta, "reason": reason},
            )
            raise TallymanError(
                "INVALID_REQUEST",
                message="Ledger updates must not run inside an outer transaction",
                principal_id=principal_id,
                delta=delta,
                reason=reason,
            ) from None
        except DatabaseError as exc:
            logger.error(
                "Ledger commit failed for %s (delta=%s, reason=%s): %s",
                principal_id,
                delta,
                reason,
                exc,
                extra={"principal_id": principal_id, "delta": delta, "reason": reason},
            )
            raise TallymanError(
                "LEDGER_COMMIT_FAILED",
                principal_id=principal_id,
                delta=delta,
                reason=reason,
                cause=str(exc),
            ) from exc

        logger.info(
            "Ledger commit %s: %s -> %s (%+d, %s)",
            principal_id,
            old_balance,
            new_balance,
            entry.delta,
            reason,
        )
        return CommitResult(
            principal_id=principal_id,
            old_balance=old_balance,
            old_tier=old_tier,
            new_balance=new_balance,
            new_tier=new_tier,
            requested_delta=delta,
            effective_delta=entry.delta,
            entry_id=entry.pk,
        )

    @classmethod
    def provision(cls, principal_id: str) -> tuple[PrincipalBalance, bool]:
        """
        Create a zero-balance row for a principal.

        Idempotent: returns the existing row if already provisioned.
        """
        return PrincipalBalance.objects.get_or_create(
            principal_id=principal_id,
            defaults={"points_balance": 0, "tier": Tier.BRONZE},
        )

    @classmethod
    def get_account(cls, principal_id: str) -> PrincipalBalance:
        """Read a balance row or raise PRINCIPAL_NOT_FOUND."""
        try:
            return PrincipalBalance.objects.get(principal_id=principal_id)
        except PrincipalBalance.DoesNotExist:
            raise TallymanError("PRINCIPAL_NOT_FOUND", principal_id=principal_id)

    @classmethod
    def entries(cls, principal_id: str, limit: int | None = None) -> list[ActivityLogEntry]:
        """Activity entries for a principal, most recent first."""
        qs = ActivityLogEntry.objects.filter(account__principal_id=principal_id)
        if limit is not None:
            qs = qs[:limit]
        return list(qs)

    @classmethod
    def lock_account(cls, principal_id: str) -> PrincipalBalance:
        """
        Read a balance row and hold its lock until the transaction ends.

        MUST be called inside transaction.atomic().
        """
        try:
            return PrincipalBalance.objects.select_for_update().get(principal_id=principal_id)
        except PrincipalBalance.DoesNotExist:
            raise TallymanError("PRINCIPAL_NOT_FOUND", principal_id=principal_id)

    @classmethod
    def _get_account_for_update(cls, principal_id: str) -> PrincipalBalance:
        """
        Get the balance row with a row-level lock.

        MUST be called inside transaction.atomic().
        """
        try:
            return cls.lock_account(principal_id)
        except TallymanError:
            if not tallyman_settings.AUTO_PROVISION:
                raise

        account, _ = cls.provision(principal_id)
        logger.info("Auto-provisioned loyalty balance for %s", principal_id)
        return PrincipalBalance.objects.select_for_update().get(pk=account.pk)
