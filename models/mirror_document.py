"""
MirrorDocument model: document store behind ModelMirrorBackend.

Client apps read these documents. Tallyman owns only the loyalty
keys inside ``data``; other keys belong to other writers and are
preserved on every merge.
"""

from django.db import models
from django.utils.translation import gettext_lazy as _


class MirrorDocument(models.Model):
    document_id = models.CharField(_("document id"), max_length=128, unique=True)
    data = models.JSONField(_("data"), default=dict)
    updated_at = models.DateTimeField(_("updated at"), auto_now=True)

    class Meta:
        db_table = "tallyman_mirror_document"
        verbose_name = _("mirror document")
        verbose_name_plural = _("mirror documents")

    def __str__(self):
        return self.document_id
