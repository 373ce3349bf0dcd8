import asyncio
import os
from typing import Optional, List, Dict, Any, Tuple

from config import settings
from models.errors import DocumentNotFoundError
from services.document_store import (
    DocumentStore, DocData, DocCallback, CollectionCallback, Unsubscribe,
    Increment, SERVER_TIMESTAMP,
)


class FirestoreService(DocumentStore):
    """
    Async-friendly Firestore wrapper using run_in_executor to avoid
    blocking the event loop. Switch to AsyncClient once stable.

    Listener callbacks fire on Firestore's watch thread and are handed back
    to the event loop that registered them.
    """

    def __init__(self):
        if settings.firestore_emulator_host:
            os.environ["FIRESTORE_EMULATOR_HOST"] = settings.firestore_emulator_host
        # Lazy import so the service can be instantiated before GCP creds exist
        from google.cloud import firestore
        self._firestore = firestore
        self.db = firestore.Client(project=settings.google_cloud_project or None)

    def _run(self, fn):
        """Run a sync Firestore call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, fn)

    def _doc_ref(self, path: str):
        return self.db.document(path)

    def _collection_ref(self, path: str):
        return self.db.collection(path)

    def _encode(self, value: Any) -> Any:
        """Swap store-neutral sentinels for Firestore transforms."""
        if isinstance(value, Increment):
            return self._firestore.Increment(value.amount)
        if value is SERVER_TIMESTAMP:
            return self._firestore.SERVER_TIMESTAMP
        if isinstance(value, dict):
            return {k: self._encode(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._encode(v) for v in value]
        return value

    # ── Documents ─────────────────────────────────────────────────────────────

    async def get_doc(self, path: str) -> Optional[DocData]:
        doc = await self._run(lambda: self._doc_ref(path).get())
        if doc.exists:
            return doc.to_dict()
        return None

    async def set_doc(self, path: str, data: DocData, merge: bool = False) -> None:
        encoded = self._encode(data)
        await self._run(lambda: self._doc_ref(path).set(encoded, merge=merge))

    async def update_doc(self, path: str, data: DocData) -> None:
        from google.api_core.exceptions import NotFound

        encoded = self._encode(data)
        try:
            await self._run(lambda: self._doc_ref(path).update(encoded))
        except NotFound as exc:
            raise DocumentNotFoundError(path) from exc

    async def delete_doc(self, path: str) -> None:
        await self._run(lambda: self._doc_ref(path).delete())

    async def list_docs(self, collection_path: str) -> List[Tuple[str, DocData]]:
        docs = await self._run(lambda: list(self._collection_ref(collection_path).stream()))
        return [(d.id, d.to_dict()) for d in docs]

    async def add_doc(self, collection_path: str, data: DocData) -> str:
        encoded = self._encode(data)
        _, ref = await self._run(lambda: self._collection_ref(collection_path).add(encoded))
        return ref.id

    # ── Push notifications ────────────────────────────────────────────────────

    def subscribe(self, path: str, on_change: DocCallback) -> Unsubscribe:
        loop = asyncio.get_running_loop()

        def _on_snapshot(snapshots, changes, read_time):
            for snap in snapshots:
                loop.call_soon_threadsafe(on_change, snap.to_dict() if snap.exists else None)

        watch = self._doc_ref(path).on_snapshot(_on_snapshot)
        return watch.unsubscribe

    def subscribe_collection(
        self, collection_path: str, on_change: CollectionCallback
    ) -> Unsubscribe:
        loop = asyncio.get_running_loop()

        def _on_snapshot(snapshots, changes, read_time):
            docs = [(s.id, s.to_dict()) for s in snapshots]
            loop.call_soon_threadsafe(on_change, docs)

        watch = self._collection_ref(collection_path).on_snapshot(_on_snapshot)
        return watch.unsubscribe


_firestore_service: Optional["FirestoreService"] = None


def get_firestore_service() -> "FirestoreService":
    """Lazy singleton: initialised on first call, not at import time.
    This prevents credential errors from crashing the app before FastAPI boots.
    The Firestore client is process-wide; room state lives in RoomSession objects.
    """
    global _firestore_service
    if _firestore_service is None:
        _firestore_service = FirestoreService()
    return _firestore_service
