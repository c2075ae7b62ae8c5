"""
LedgerIncident model: unresolved ledger/mirror divergence.

Raised when a mirror sync failed after the ledger commit and the
reversing commit failed too. Operators resolve incidents by hand
(admin action or LedgerService.resolve_incident).
"""

from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _


class LedgerIncident(models.Model):
    """Operator-facing record requiring manual reconciliation."""

    class Status(models.TextChoices):
        OPEN = "open", _("Open")
        RESOLVED = "resolved", _("Resolved")

    principal_id = models.CharField(_("principal"), max_length=128, db_index=True)
    original_delta = models.IntegerField(_("original delta"))
    requested_delta = models.IntegerField(_("requested delta"))
    original_reason = models.CharField(_("original reason"), max_length=64)
    original_entry = models.ForeignKey(
        "tallyman.ActivityLogEntry",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="incidents",
        verbose_name=_("original entry"),
    )

    mirror_error = models.TextField(_("mirror error"))
    compensation_error = models.TextField(_("compensation error"))
    context = models.JSONField(_("context"), default=dict, blank=True)

    status = models.CharField(
        _("status"),
        max_length=20,
        choices=Status.choices,
        default=Status.OPEN,
        db_index=True,
    )
    created_at = models.DateTimeField(_("created at"), auto_now_add=True)
    resolved_at = models.DateTimeField(_("resolved at"), null=True, blank=True)
    resolved_by = models.CharField(_("resolved by"), max_length=100, blank=True)
    resolution_note = models.TextField(_("resolution note"), blank=True)

    class Meta:
        db_table = "tallyman_incident"
        verbose_name = _("ledger incident")
        verbose_name_plural = _("ledger incidents")
        ordering = ["-created_at"]

    def __str__(self):
        return f"#{self.pk} {self.principal_id} ({self.status})"

    @property
    def is_open(self) -> bool:
        return self.status == self.Status.OPEN

    def mark_resolved(self, resolved_by: str, note: str = "") -> None:
        self.status = self.Status.RESOLVED
        self.resolved_at = timezone.now()
        self.resolved_by = resolved_by
        self.resolution_note = note
        self.save(update_fields=["status", "resolved_at", "resolved_by", "resolution_note"])
