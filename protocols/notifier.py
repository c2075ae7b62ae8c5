"""Tier-change notifier protocol."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class TierChangeNotifier(Protocol):
    """
    Protocol for telling a principal that their tier changed.

    Called fire-and-forget after a successful apply_delta. The
    implementation owns its delivery channel and retry policy;
    exceptions are logged by tallyman and never propagate.

    Configuration in settings.py:
        TALLYMAN = {
            "NOTIFIER_BACKEND": "myproject.push.FcmTierChangeNotifier",
        }
    """

    def notify_tier_change(self, principal_id: str, new_tier: str, discount_percent: int) -> None:
        ...
