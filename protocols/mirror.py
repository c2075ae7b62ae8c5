"""Mirror store protocol."""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class MirrorSnapshot:
    """Loyalty fields owned by tallyman inside a mirror document."""

    points_balance: int
    tier: str
    discount_percent: int
    last_synced_at: datetime

    def as_document(self) -> dict:
        """Fields merged into the mirror document (JSON-safe)."""
        return {
            "points_balance": self.points_balance,
            "tier": str(self.tier),
            "discount_percent": self.discount_percent,
            "last_synced_at": self.last_synced_at.isoformat(),
        }

    @classmethod
    def from_document(cls, data: dict) -> "MirrorSnapshot | None":
        """Read the loyalty fields back; None if the document has none."""
        if "points_balance" not in data:
            return None
        return cls(
            points_balance=data["points_balance"],
            tier=data["tier"],
            discount_percent=data["discount_percent"],
            last_synced_at=datetime.fromisoformat(data["last_synced_at"]),
        )


# Keys of a mirror document written by tallyman
SNAPSHOT_FIELDS = ("points_balance", "tier", "discount_percent", "last_synced_at")


@runtime_checkable
class MirrorBackend(Protocol):
    """
    Protocol for the eventually-consistent mirror read by client apps.

    Implementations must upsert with merge semantics: create the
    document when missing, otherwise overwrite only SNAPSHOT_FIELDS.
    A call either lands the full snapshot or raises.

    Configuration in settings.py:
        TALLYMAN = {
            "MIRROR_BACKEND": "tallyman.adapters.django_mirror.ModelMirrorBackend",
        }
    """

    def upsert_snapshot(self, principal_id: str, snapshot: MirrorSnapshot) -> None:
        """Merge the snapshot into the principal's document."""
        ...

    def get_snapshot(self, principal_id: str) -> MirrorSnapshot | None:
        """Return the loyalty fields of the principal's document, if any."""
        ...
