"""
Document Store boundary.

Any store that implements DocumentStore can back a room: the Firestore adapter
in services/firestore_service.py for real play, InMemoryDocumentStore in
services/memory_store.py for a single-process table and the test-suite.

Notifications are at-least-once and may arrive out of order; callers must not
assume anything stronger.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

DocData = Dict[str, Any]
Unsubscribe = Callable[[], None]
DocCallback = Callable[[Optional[DocData]], None]
CollectionCallback = Callable[[List[Tuple[str, DocData]]], None]


@dataclass(frozen=True)
class Increment:
    """Server-resolved numeric increment, usable inside any write."""
    amount: int = 1


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


# Replaced with the store's clock at write time
SERVER_TIMESTAMP = _ServerTimestamp()


class DocumentStore(ABC):

    @abstractmethod
    async def get_doc(self, path: str) -> Optional[DocData]:
        ...

    @abstractmethod
    async def set_doc(self, path: str, data: DocData, merge: bool = False) -> None:
        ...

    @abstractmethod
    async def update_doc(self, path: str, data: DocData) -> None:
        """Partial update. Raises DocumentNotFoundError if the document is absent."""

    @abstractmethod
    async def delete_doc(self, path: str) -> None:
        ...

    @abstractmethod
    async def list_docs(self, collection_path: str) -> List[Tuple[str, DocData]]:
        ...

    @abstractmethod
    async def add_doc(self, collection_path: str, data: DocData) -> str:
        """Create a document under an auto-generated id and return the id."""

    @abstractmethod
    def subscribe(self, path: str, on_change: DocCallback) -> Unsubscribe:
        ...

    @abstractmethod
    def subscribe_collection(
        self, collection_path: str, on_change: CollectionCallback
    ) -> Unsubscribe:
        ...

    async def atomic_increment(self, path: str, field: str, amount: int = 1) -> None:
        await self.update_doc(path, {field: Increment(amount)})


# ── Persisted layout ──────────────────────────────────────────────────────────

ROOMS = "rooms"
PLAYERS = "players"
SETTINGS = "settings"
GAME_STATE = "gameState"
VOTES = "votes"
NIGHT_ACTIONS = "nightActions"
DEATH_LOG = "deathLog"
VOTE_HISTORY = "voteHistory"

# Cleared on host leave, in this order (room document last)
ROOM_SUBCOLLECTIONS = (
    PLAYERS, VOTES, NIGHT_ACTIONS, DEATH_LOG, VOTE_HISTORY, GAME_STATE, SETTINGS,
)


class RoomPaths:
    """Document and collection paths for one room."""

    def __init__(self, room_code: str):
        self.room_code = room_code
        self.room = f"{ROOMS}/{room_code}"

    def collection(self, name: str) -> str:
        return f"{self.room}/{name}"

    @property
    def players(self) -> str:
        return self.collection(PLAYERS)

    def player(self, player_id: str) -> str:
        return f"{self.players}/{player_id}"

    @property
    def settings(self) -> str:
        return f"{self.collection(SETTINGS)}/main"

    @property
    def game_state(self) -> str:
        return f"{self.collection(GAME_STATE)}/current"

    @property
    def votes(self) -> str:
        return self.collection(VOTES)

    def vote(self, voter_id: str) -> str:
        return f"{self.votes}/{voter_id}"

    @property
    def night_actions(self) -> str:
        return self.collection(NIGHT_ACTIONS)

    def night_action(self, actor_id: str) -> str:
        return f"{self.night_actions}/{actor_id}"

    @property
    def death_log(self) -> str:
        return self.collection(DEATH_LOG)

    def death(self, victim_id: str) -> str:
        return f"{self.death_log}/{victim_id}"

    @property
    def vote_history(self) -> str:
        return self.collection(VOTE_HISTORY)

    # Ephemeral keys
    @property
    def timer_key(self) -> str:
        return f"timers/{self.room_code}"

    @property
    def presence_room_key(self) -> str:
        return f"presence/{self.room_code}"

    def presence_key(self, player_id: str) -> str:
        return f"{self.presence_room_key}/{player_id}"
