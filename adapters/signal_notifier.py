"""Django-signal TierChangeNotifier adapter."""

from tallyman.signals import tier_changed


class SignalTierChangeNotifier:
    """
    Re-emits tier changes as the ``tallyman.signals.tier_changed`` signal.

    Push/e-mail delivery lives in receivers connected by the project.

    Configuration in settings.py:
        TALLYMAN = {
            "NOTIFIER_BACKEND": "tallyman.adapters.signal_notifier.SignalTierChangeNotifier",
        }
    """

    def notify_tier_change(self, principal_id: str, new_tier: str, discount_percent: int) -> None:
        tier_changed.send(
            sender=self.__class__,
            principal_id=principal_id,
            new_tier=new_tier,
            discount_percent=discount_percent,
        )
