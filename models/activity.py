"""ActivityLogEntry model: append-only ledger history."""

from django.db import models
from django.utils.translation import gettext_lazy as _

from tallyman.tiers import Tier

ROLLBACK_REASON = "rollback_mirror_failure"


class ActivityLogEntry(models.Model):
    """
    Immutable record of one committed balance change.

    Compensations are entries too: they carry ROLLBACK_REASON and point
    at the entry they reverse. Both the requested and the effective
    (floored) delta are stored.
    """

    account = models.ForeignKey(
        "tallyman.PrincipalBalance",
        on_delete=models.PROTECT,
        related_name="activity",
        verbose_name=_("account"),
    )

    delta = models.IntegerField(
        _("delta"),
        help_text=_("Effective change applied after flooring the balance at zero"),
    )
    requested_delta = models.IntegerField(
        _("requested delta"),
        help_text=_("Change requested by the caller"),
    )
    reason = models.CharField(_("reason"), max_length=64, db_index=True)
    resulting_balance = models.PositiveIntegerField(_("resulting balance"))
    resulting_tier = models.CharField(_("resulting tier"), max_length=20, choices=Tier.choices)
    metadata = models.JSONField(_("metadata"), default=dict, blank=True)

    reverses = models.OneToOneField(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="reversed_by",
        verbose_name=_("reverses"),
    )

    created_at = models.DateTimeField(_("created at"), auto_now_add=True, db_index=True)

    class Meta:
        db_table = "tallyman_activity_log"
        verbose_name = _("activity log entry")
        verbose_name_plural = _("activity log")
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["account", "-created_at"], name="tallyman_act_account_idx"),
        ]

    def __str__(self):
        sign = "+" if self.delta > 0 else ""
        return f"{sign}{self.delta}pts - {self.reason}"

    @property
    def principal_id(self) -> str:
        return self.account.principal_id

    @property
    def was_floored(self) -> bool:
        return self.delta != self.requested_delta

    @property
    def is_compensation(self) -> bool:
        return self.reason == ROLLBACK_REASON
