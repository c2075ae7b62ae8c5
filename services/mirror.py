"""Mirror sync: pushes ledger snapshots to the eventually-consistent mirror."""

import logging

from django.db import DatabaseError, transaction
from django.utils import timezone
from django.utils.module_loading import import_string

from tallyman.conf import tallyman_settings
from tallyman.exceptions import TallymanError
from tallyman.protocols.mirror import MirrorBackend, MirrorSnapshot
from tallyman.services.ledger import LedgerStore
from tallyman.tiers import discount_of

logger = logging.getLogger(__name__)

# One inline retry at most; anything beyond goes to compensation.
MAX_SYNC_ATTEMPTS = 2


def get_mirror_backend() -> MirrorBackend:
    """Instantiate the configured MirrorBackend."""
    backend_path = tallyman_settings.MIRROR_BACKEND
    backend = import_string(backend_path)()
    if not isinstance(backend, MirrorBackend):
        raise TallymanError("MIRROR_BACKEND_INVALID", backend=backend_path)
    return backend


class MirrorSync:
    """Mirror store adapter."""

    @classmethod
    def sync_snapshot(
        cls,
        principal_id: str,
        balance: int,
        tier: str,
        discount: int,
        backend: MirrorBackend | None = None,
    ) -> MirrorSnapshot:
        """
        Upsert-merge the loyalty snapshot of a principal.

        Tries MIRROR_SYNC_ATTEMPTS times (capped at MAX_SYNC_ATTEMPTS).
        Backends raise whatever their client raises, so any exception
        counts as a failed attempt.

        Returns:
            The MirrorSnapshot that landed

        Raises:
            TallymanError: MIRROR_SYNC_FAILED once attempts are exhausted
        """
        backend = backend or get_mirror_backend()
        snapshot = MirrorSnapshot(
            points_balance=balance,
            tier=str(tier),
            discount_percent=discount,
            last_synced_at=timezone.now(),
        )
        attempts = min(max(1, tallyman_settings.MIRROR_SYNC_ATTEMPTS), MAX_SYNC_ATTEMPTS)

        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                backend.upsert_snapshot(principal_id, snapshot)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Mirror sync attempt %s/%s failed for %s: %s",
                    attempt,
                    attempts,
                    principal_id,
                    exc,
                )
                continue

            logger.info(
                "Mirror synced %s: %s pts, %s (%s%%)",
                principal_id,
                balance,
                snapshot.tier,
                discount,
            )
            return snapshot

        logger.error(
            "Mirror sync failed for %s after %s attempts",
            principal_id,
            attempts,
            extra={"principal_id": principal_id, "balance": balance, "tier": snapshot.tier},
        )
        raise TallymanError(
            "MIRROR_SYNC_FAILED",
            principal_id=principal_id,
            attempts=attempts,
            cause=str(last_error),
        ) from last_error

    @classmethod
    def sync_from_ledger(
        cls,
        principal_id: str,
        backend: MirrorBackend | None = None,
    ) -> MirrorSnapshot:
        """
        Push the ledger row's current state to the mirror.

        The row stays locked until the mirror write lands, so mirror
        writes for one principal happen in ledger order and a slow
        writer never overwrites a newer snapshot.

        Raises:
            TallymanError: PRINCIPAL_NOT_FOUND, or MIRROR_SYNC_FAILED
                (also when the ledger row could not be read)
        """
        backend = backend or get_mirror_backend()
        try:
            with transaction.atomic():
                account = LedgerStore.lock_account(principal_id)
                return cls.sync_snapshot(
                    principal_id,
                    account.points_balance,
                    account.tier,
                    discount_of(account.tier),
                    backend=backend,
                )
        except DatabaseError as exc:
            logger.error(
                "Mirror sync failed for %s: ledger row unavailable (%s)",
                principal_id,
                exc,
                extra={"principal_id": principal_id},
            )
            raise TallymanError(
                "MIRROR_SYNC_FAILED",
                principal_id=principal_id,
                attempts=0,
                cause=str(exc),
            ) from exc

    @classmethod
    def get_snapshot(
        cls,
        principal_id: str,
        backend: MirrorBackend | None = None,
    ) -> MirrorSnapshot | None:
        """Read what client apps currently see."""
        backend = backend or get_mirror_backend()
        return backend.get_snapshot(principal_id)
