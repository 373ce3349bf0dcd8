"""
In-process stores for a single-machine table and for the test-suite.

Every client sharing one InMemoryDocumentStore sees the same documents, so a
whole room (host + players) can run inside one event loop. Notifications are
scheduled on the loop rather than delivered inline, matching the
asynchronous push of a real store. Setting `deliver_notifications = False`
drops pushes on the floor, which is how a connectivity hiccup looks to a
subscriber.
"""
import asyncio
import copy
import itertools
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from models.errors import DocumentNotFoundError
from services.document_store import (
    DocumentStore, DocData, DocCallback, CollectionCallback, Unsubscribe,
    Increment, SERVER_TIMESTAMP,
)
from services.ephemeral_store import EphemeralStore, ValueCallback


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parent(path: str) -> str:
    return path.rsplit("/", 1)[0]


class InMemoryDocumentStore(DocumentStore):

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self.clock = clock
        self.deliver_notifications = True
        self._docs: Dict[str, DocData] = {}
        self._doc_subs: Dict[str, Dict[int, DocCallback]] = defaultdict(dict)
        self._col_subs: Dict[str, Dict[int, CollectionCallback]] = defaultdict(dict)
        self._sub_ids = itertools.count()

    # ── Write resolution ──────────────────────────────────────────────────────

    def _resolve(self, current: Any, value: Any) -> Any:
        if isinstance(value, Increment):
            base = current if isinstance(current, (int, float)) else 0
            return base + value.amount
        if value is SERVER_TIMESTAMP:
            return self.clock()
        if isinstance(value, dict):
            nested = current if isinstance(current, dict) else {}
            return {k: self._resolve(nested.get(k), v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve(None, v) for v in value]
        return copy.deepcopy(value)

    def _merge(self, current: DocData, data: DocData) -> DocData:
        merged = dict(current)
        for key, value in data.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = self._merge(merged[key], value)
            else:
                merged[key] = self._resolve(merged.get(key), value)
        return merged

    # ── Notification fan-out ──────────────────────────────────────────────────

    def _collection_snapshot(self, collection_path: str) -> List[Tuple[str, DocData]]:
        prefix = collection_path + "/"
        return [
            (path[len(prefix):], copy.deepcopy(data))
            for path, data in sorted(self._docs.items())
            if path.startswith(prefix) and "/" not in path[len(prefix):]
        ]

    def _notify(self, path: str) -> None:
        if not self.deliver_notifications:
            return
        loop = asyncio.get_running_loop()
        data = self._docs.get(path)
        for cb in list(self._doc_subs.get(path, {}).values()):
            loop.call_soon(cb, copy.deepcopy(data))
        collection = _parent(path)
        if self._col_subs.get(collection):
            docs = self._collection_snapshot(collection)
            for cb in list(self._col_subs[collection].values()):
                loop.call_soon(cb, copy.deepcopy(docs))

    # ── DocumentStore ─────────────────────────────────────────────────────────

    async def get_doc(self, path: str) -> Optional[DocData]:
        await asyncio.sleep(0)
        data = self._docs.get(path)
        return copy.deepcopy(data) if data is not None else None

    async def set_doc(self, path: str, data: DocData, merge: bool = False) -> None:
        await asyncio.sleep(0)
        if merge and path in self._docs:
            self._docs[path] = self._merge(self._docs[path], data)
        else:
            self._docs[path] = self._resolve(None, data)
        self._notify(path)

    async def update_doc(self, path: str, data: DocData) -> None:
        await asyncio.sleep(0)
        if path not in self._docs:
            raise DocumentNotFoundError(path)
        current = dict(self._docs[path])
        for key, value in data.items():
            current[key] = self._resolve(current.get(key), value)
        self._docs[path] = current
        self._notify(path)

    async def delete_doc(self, path: str) -> None:
        await asyncio.sleep(0)
        if self._docs.pop(path, None) is not None:
            self._notify(path)

    async def list_docs(self, collection_path: str) -> List[Tuple[str, DocData]]:
        await asyncio.sleep(0)
        return self._collection_snapshot(collection_path)

    async def add_doc(self, collection_path: str, data: DocData) -> str:
        doc_id = uuid.uuid4().hex[:20]
        await self.set_doc(f"{collection_path}/{doc_id}", data)
        return doc_id

    def subscribe(self, path: str, on_change: DocCallback) -> Unsubscribe:
        sub_id = next(self._sub_ids)
        self._doc_subs[path][sub_id] = on_change
        # Listeners get the current value first, like a Firestore snapshot listener
        asyncio.get_running_loop().call_soon(on_change, copy.deepcopy(self._docs.get(path)))
        return lambda: self._doc_subs[path].pop(sub_id, None)

    def subscribe_collection(
        self, collection_path: str, on_change: CollectionCallback
    ) -> Unsubscribe:
        sub_id = next(self._sub_ids)
        self._col_subs[collection_path][sub_id] = on_change
        asyncio.get_running_loop().call_soon(on_change, self._collection_snapshot(collection_path))
        return lambda: self._col_subs[collection_path].pop(sub_id, None)


class InMemoryEphemeralStore(EphemeralStore):

    def __init__(self):
        self._values: Dict[str, Dict[str, Any]] = {}
        self._subs: Dict[str, Dict[int, ValueCallback]] = defaultdict(dict)
        self._sub_ids = itertools.count()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = self._values.get(key)
        return dict(value) if value is not None else None

    def _notify(self, key: str) -> None:
        loop = asyncio.get_running_loop()
        for cb in list(self._subs.get(key, {}).values()):
            loop.call_soon(cb, self.get(key))

    async def set_value(self, key: str, value: Dict[str, Any]) -> None:
        self._values[key] = dict(value)
        self._notify(key)

    async def update_value(self, key: str, partial: Dict[str, Any]) -> None:
        self._values[key] = {**self._values.get(key, {}), **partial}
        self._notify(key)

    def subscribe_value(self, key: str, on_change: ValueCallback) -> Unsubscribe:
        sub_id = next(self._sub_ids)
        self._subs[key][sub_id] = on_change
        asyncio.get_running_loop().call_soon(on_change, self.get(key))
        return lambda: self._subs[key].pop(sub_id, None)

    async def delete_value(self, key: str) -> None:
        prefix = key + "/"
        doomed = [k for k in self._values if k == key or k.startswith(prefix)]
        for k in doomed:
            del self._values[k]
            self._notify(k)
