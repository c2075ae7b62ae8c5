"""
Tallyman configuration.

Usage in settings.py:
    TALLYMAN = {
        "AUTO_PROVISION": False,
        "MIRROR_BACKEND": "tallyman.adapters.django_mirror.ModelMirrorBackend",
        "MIRROR_DATABASE": "mirror",
        "NOTIFIER_BACKEND": "myapp.push.PushTierChangeNotifier",
    }
"""

from dataclasses import dataclass
from typing import Any

from django.conf import settings


@dataclass
class TallymanSettings:
    """Tallyman configuration settings."""

    # Create a zero-balance row on first apply_delta instead of failing
    AUTO_PROVISION: bool = False

    # Mirror store
    MIRROR_BACKEND: str = "tallyman.adapters.django_mirror.ModelMirrorBackend"
    MIRROR_DATABASE: str = "default"
    # First attempt plus one inline retry
    MIRROR_SYNC_ATTEMPTS: int = 2

    # Tier-change notifications
    NOTIFIER_BACKEND: str = "tallyman.adapters.signal_notifier.SignalTierChangeNotifier"
    NOTIFY_ASYNC: bool = True
    NOTIFIER_MAX_WORKERS: int = 4

    # Activity history page size
    HISTORY_LIMIT: int = 50


def get_tallyman_settings() -> TallymanSettings:
    """Load settings from Django settings."""
    user_settings: dict[str, Any] = getattr(settings, "TALLYMAN", {})
    return TallymanSettings(**user_settings)


class _LazySettings:
    """Lazy proxy that re-reads settings on every attribute access."""

    def __getattr__(self, name):
        return getattr(get_tallyman_settings(), name)


tallyman_settings = _LazySettings()
