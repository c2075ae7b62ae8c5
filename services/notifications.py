"""Tier-change notification dispatch (fire-and-forget)."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor

from django.db import connections
from django.utils.module_loading import import_string

from tallyman.conf import tallyman_settings
from tallyman.protocols.notifier import TierChangeNotifier

logger = logging.getLogger(__name__)

_executor: ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()


def get_notifier() -> TierChangeNotifier | None:
    """Instantiate the configured TierChangeNotifier (None if disabled)."""
    backend_path = tallyman_settings.NOTIFIER_BACKEND
    if not backend_path:
        return None
    return import_string(backend_path)()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(
                max_workers=tallyman_settings.NOTIFIER_MAX_WORKERS,
                thread_name_prefix="tallyman-notify",
            )
        return _executor


def _deliver(notifier: TierChangeNotifier, principal_id: str, new_tier: str, discount_percent: int) -> bool:
    """Call the notifier; failures are logged, never raised."""
    try:
        notifier.notify_tier_change(principal_id, new_tier, discount_percent)
    except Exception:
        logger.warning(
            "Tier-change notification failed for %s (non-critical)",
            principal_id,
            exc_info=True,
            extra={"principal_id": principal_id, "new_tier": new_tier},
        )
        return False
    logger.info("Tier-change notification sent for %s: %s", principal_id, new_tier)
    return True


def _deliver_in_worker(*args) -> bool:
    try:
        return _deliver(*args)
    finally:
        # Worker threads hold their own DB connections
        connections.close_all()


def dispatch_tier_change(
    principal_id: str,
    new_tier: str,
    discount_percent: int,
    notifier: TierChangeNotifier | None = None,
) -> Future | None:
    """
    Hand a tier change to the notifier without blocking the caller.

    Returns the Future of the background delivery, or None when the
    notifier is disabled or NOTIFY_ASYNC is off (delivered inline).
    """
    notifier = notifier or get_notifier()
    if notifier is None:
        return None

    new_tier = str(new_tier)
    if not tallyman_settings.NOTIFY_ASYNC:
        _deliver(notifier, principal_id, new_tier, discount_percent)
        return None
    return _get_executor().submit(_deliver_in_worker, notifier, principal_id, new_tier, discount_percent)


def shutdown(wait: bool = True) -> None:
    """Stop the notification pool (tests, graceful worker exit)."""
    global _executor
    with _executor_lock:
        if _executor is not None:
            _executor.shutdown(wait=wait)
            _executor = None
