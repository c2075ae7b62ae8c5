"""In-memory MirrorBackend adapter (tests and local development)."""

import threading

from tallyman.protocols.mirror import MirrorSnapshot


class InMemoryMirrorBackend:
    """
    Process-local mirror keeping documents in a shared dict.

    Documents live on the class so every instance loaded through
    MIRROR_BACKEND sees the same store. Call reset() between tests.
    """

    _documents: dict[str, dict] = {}
    _lock = threading.Lock()

    def upsert_snapshot(self, principal_id: str, snapshot: MirrorSnapshot) -> None:
        with self._lock:
            current = self._documents.get(principal_id, {})
            self._documents[principal_id] = {**current, **snapshot.as_document()}

    def get_snapshot(self, principal_id: str) -> MirrorSnapshot | None:
        with self._lock:
            data = self._documents.get(principal_id)
        if data is None:
            return None
        return MirrorSnapshot.from_document(data)

    def get_document(self, principal_id: str) -> dict | None:
        """Raw document, including fields tallyman does not own."""
        with self._lock:
            data = self._documents.get(principal_id)
        return dict(data) if data is not None else None

    def put_document(self, principal_id: str, data: dict) -> None:
        """Write a raw document (simulates other writers)."""
        with self._lock:
            self._documents[principal_id] = dict(data)

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls._documents.clear()
