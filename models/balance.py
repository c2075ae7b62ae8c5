"""PrincipalBalance model: one ledger row per customer."""

from django.db import models
from django.utils.translation import gettext_lazy as _

from tallyman.tiers import Tier, discount_of


class PrincipalBalance(models.Model):
    """
    Durable point balance of a principal (source of truth).

    Mutated only by LedgerStore.commit_delta, which always rewrites
    the tier from the balance it writes. Never deleted.
    """

    principal_id = models.CharField(
        _("principal"),
        max_length=128,
        unique=True,
        help_text=_("Opaque customer identifier (e.g. identity provider UID)"),
    )
    points_balance = models.PositiveIntegerField(_("points balance"), default=0)
    tier = models.CharField(
        _("tier"),
        max_length=20,
        choices=Tier.choices,
        default=Tier.BRONZE,
    )

    created_at = models.DateTimeField(_("created at"), auto_now_add=True)
    updated_at = models.DateTimeField(_("updated at"), auto_now=True)

    class Meta:
        db_table = "tallyman_principal_balance"
        verbose_name = _("principal balance")
        verbose_name_plural = _("principal balances")
        constraints = [
            models.CheckConstraint(
                condition=models.Q(points_balance__gte=0),
                name="tallyman_balance_non_negative",
            ),
        ]

    def __str__(self):
        return f"{self.principal_id}: {self.points_balance}pts | {self.tier}"

    @property
    def discount_percent(self) -> int:
        return discount_of(self.tier)
