"""Django ORM MirrorBackend adapter."""

from django.db import transaction

from tallyman.conf import tallyman_settings
from tallyman.models import MirrorDocument
from tallyman.protocols.mirror import MirrorSnapshot


class ModelMirrorBackend:
    """
    Adapter that implements MirrorBackend on MirrorDocument rows.

    Point MIRROR_DATABASE at a separate database alias to keep the
    mirror independent from the ledger.

    Configuration in settings.py:
        TALLYMAN = {
            "MIRROR_BACKEND": "tallyman.adapters.django_mirror.ModelMirrorBackend",
            "MIRROR_DATABASE": "mirror",
        }
    """

    def __init__(self, using: str | None = None):
        self.using = using or tallyman_settings.MIRROR_DATABASE

    def upsert_snapshot(self, principal_id: str, snapshot: MirrorSnapshot) -> None:
        """Create or merge the document in one transaction on the mirror alias."""
        with transaction.atomic(using=self.using):
            document, _ = (
                MirrorDocument.objects.using(self.using)
                .select_for_update()
                .get_or_create(document_id=principal_id, defaults={"data": {}})
            )
            document.data = {**document.data, **snapshot.as_document()}
            document.save(using=self.using, update_fields=["data", "updated_at"])

    def get_snapshot(self, principal_id: str) -> MirrorSnapshot | None:
        document = (
            MirrorDocument.objects.using(self.using)
            .filter(document_id=principal_id)
            .first()
        )
        if document is None:
            return None
        return MirrorSnapshot.from_document(document.data)
