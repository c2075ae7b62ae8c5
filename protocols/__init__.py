"""Tallyman protocols."""

from tallyman.protocols.mirror import (
    MirrorBackend,
    MirrorSnapshot,
    SNAPSHOT_FIELDS,
)
from tallyman.protocols.notifier import TierChangeNotifier

__all__ = [
    # Mirror store
    "MirrorBackend",
    "MirrorSnapshot",
    "SNAPSHOT_FIELDS",
    # Notifications
    "TierChangeNotifier",
]
