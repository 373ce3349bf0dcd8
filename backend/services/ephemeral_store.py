"""
Fast Ephemeral Store boundary: countdown timers and presence heartbeats only.

Durability is not expected. Deleting a key also deletes every key nested under
it ("presence/ABCD" removes each player's heartbeat in room ABCD).
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from services.document_store import Unsubscribe


ValueCallback = Callable[[Optional[Dict[str, Any]]], None]


class EphemeralStore(ABC):

    @abstractmethod
    async def set_value(self, key: str, value: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def update_value(self, key: str, partial: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def subscribe_value(self, key: str, on_change: ValueCallback) -> Unsubscribe:
        ...

    @abstractmethod
    async def delete_value(self, key: str) -> None:
        ...


class FirestoreEphemeralStore(EphemeralStore):
    """
    Ephemeral keys kept as flat documents in one Firestore collection.

    The key is stored alongside the value so nested keys can be removed with a
    range query on delete.
    """

    COLLECTION = "ephemeral"

    def __init__(self, db):
        self.db = db

    def _run(self, fn):
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, fn)

    def _ref(self, key: str):
        return self.db.collection(self.COLLECTION).document(key.replace("/", "__"))

    async def set_value(self, key: str, value: Dict[str, Any]) -> None:
        data = dict(value, _key=key)
        await self._run(lambda: self._ref(key).set(data))

    async def update_value(self, key: str, partial: Dict[str, Any]) -> None:
        data = dict(partial, _key=key)
        await self._run(lambda: self._ref(key).set(data, merge=True))

    def subscribe_value(self, key: str, on_change: ValueCallback) -> Unsubscribe:
        loop = asyncio.get_running_loop()

        def _on_snapshot(snapshots, changes, read_time):
            for snap in snapshots:
                value = snap.to_dict() if snap.exists else None
                if value is not None:
                    value.pop("_key", None)
                loop.call_soon_threadsafe(on_change, value)

        watch = self._ref(key).on_snapshot(_on_snapshot)
        return watch.unsubscribe

    async def delete_value(self, key: str) -> None:
        col = self.db.collection(self.COLLECTION)
        prefix = key + "/"

        def _delete():
            self._ref(key).delete()
            nested = col.where("_key", ">=", prefix).where("_key", "<", prefix + "\uf8ff")
            for snap in nested.stream():
                snap.reference.delete()

        await self._run(_delete)
