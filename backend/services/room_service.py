"""
Room lifecycle and per-client session context.

A RoomSession is created when this client joins (or creates, or restores) a
room and closed when it leaves. Everything the client runs for that room
(listeners, guard loops, heartbeats, host monitors) is registered on the
session so that closing it tears the lot down. Nothing here is module-level
state.
"""
import asyncio
import logging
import random
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import settings
from models.errors import GameInProgressError, RoomNotFoundError
from models.game import GameSettings, Phase, Player, RoleId, Room, RoomStatus
from services.document_store import (
    DocumentStore, RoomPaths, ROOM_SUBCOLLECTIONS, SERVER_TIMESTAMP, Unsubscribe,
)
from services.ephemeral_store import EphemeralStore

logger = logging.getLogger(__name__)

ROOM_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
ROOM_CODE_LENGTH = 4


class IdentityProvider:
    """Stable per-process player identity (anonymous; issuance is external)."""

    def __init__(self, player_id: Optional[str] = None):
        self._player_id = player_id or settings.player_id or str(uuid.uuid4())

    def current_user_id(self) -> Optional[str]:
        return self._player_id


class Scope:
    """Tasks and cancel handles that live and die together."""

    def __init__(self):
        self._tasks: List[asyncio.Task] = []
        self._cleanups: List[Unsubscribe] = []

    def add_task(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks = [t for t in self._tasks if not t.done()]
        self._tasks.append(task)
        return task

    def add_cleanup(self, cleanup: Unsubscribe) -> None:
        self._cleanups.append(cleanup)

    def close(self) -> None:
        cleanups, self._cleanups = self._cleanups, []
        for cleanup in cleanups:
            try:
                cleanup()
            except Exception as exc:
                logger.warning("Cleanup failed: %s", exc)
        tasks, self._tasks = self._tasks, []
        current = asyncio.current_task()
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()


class RoomSession:
    """Explicit context for one client's membership of one room."""

    def __init__(
        self,
        room_code: str,
        player_id: str,
        player_name: str,
        is_host: bool,
        store: DocumentStore,
        ephemeral: EphemeralStore,
        role: Optional[RoleId] = None,
    ):
        self.room_code = room_code
        self.player_id = player_id
        self.player_name = player_name
        self.is_host = is_host
        self.role = role
        self.store = store
        self.ephemeral = ephemeral
        self.paths = RoomPaths(room_code)
        self.scope = Scope()        # whole membership
        self.phase_scope = Scope()  # current phase only
        self.closed = False

    def reset_phase_scope(self) -> Scope:
        self.phase_scope.close()
        self.phase_scope = Scope()
        return self.phase_scope

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.phase_scope.close()
        self.scope.close()
        logger.info("[%s] Session closed for %s", self.room_code, self.player_id)


# ── Store helpers shared with the Game Master ────────────────────────────────

async def load_players(store: DocumentStore, paths: RoomPaths) -> List[Player]:
    docs = await store.list_docs(paths.players)
    return [Player.from_doc(doc_id, data) for doc_id, data in docs]


async def load_settings(store: DocumentStore, paths: RoomPaths) -> GameSettings:
    data = await store.get_doc(paths.settings)
    return GameSettings.model_validate(data) if data else GameSettings()


async def best_effort(room_code: str, label: str, calls: List[Awaitable[Any]]) -> int:
    """
    Run writes in parallel; log and count failures instead of raising.
    Returns the number of failed calls.
    """
    results = await asyncio.gather(*calls, return_exceptions=True)
    failures = [r for r in results if isinstance(r, Exception)]
    if failures:
        logger.warning(
            "[%s] %s: %d of %d writes failed (first: %s)",
            room_code, label, len(failures), len(results), failures[0],
        )
    return len(failures)


async def clear_collection(store: DocumentStore, paths: RoomPaths, name: str) -> int:
    """Delete every document in a room subcollection (best effort)."""
    collection = paths.collection(name)
    try:
        docs = await store.list_docs(collection)
    except Exception as exc:
        logger.warning("[%s] Could not list %s for clearing: %s", paths.room_code, name, exc)
        return 1
    return await best_effort(
        paths.room_code,
        f"clear {name}",
        [store.delete_doc(f"{collection}/{doc_id}") for doc_id, _ in docs],
    )


def lobby_state_doc(host_uid: str) -> Dict[str, Any]:
    """Full GameState record for a fresh lobby (written without merge)."""
    return {
        "phase": Phase.LOBBY.value,
        "version": 0,
        "transitionId": f"RESET_{int(time.time() * 1000)}",
        "updatedAt": SERVER_TIMESTAMP,
        "hostUid": host_uid,
    }


# ── Room service ──────────────────────────────────────────────────────────────

class RoomService:
    """
    Create / join / restore / leave rooms and manage lobby membership.
    Host-only operations are silent no-ops for everybody else.
    """

    def __init__(
        self,
        store: DocumentStore,
        ephemeral: EphemeralStore,
        identity: IdentityProvider,
        rng: Optional[random.Random] = None,
        presence_interval: Optional[float] = None,
    ):
        self.store = store
        self.ephemeral = ephemeral
        self.identity = identity
        self.rng = rng or random.Random()
        self.presence_interval = (
            presence_interval if presence_interval is not None else settings.presence_interval
        )

    def _user_id(self) -> str:
        user_id = self.identity.current_user_id()
        if not user_id:
            raise RuntimeError("No player identity available")
        return user_id

    def generate_room_code(self) -> str:
        return "".join(self.rng.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))

    async def create_room(self, player_name: str) -> RoomSession:
        user_id = self._user_id()
        room_code = self.generate_room_code()
        while await self.store.get_doc(RoomPaths(room_code).room) is not None:
            room_code = self.generate_room_code()
        paths = RoomPaths(room_code)

        room = Room(room_code=room_code, host_id=user_id)
        await self.store.set_doc(paths.room, {**room.to_doc(), "createdAt": SERVER_TIMESTAMP})
        session = await self.join_room(room_code, player_name, is_host=True)
        await self.store.set_doc(paths.settings, GameSettings().to_doc())
        await self.store.set_doc(paths.game_state, lobby_state_doc(user_id))

        logger.info("Room %s created by host %s (%s)", room_code, user_id, player_name)
        return session

    async def join_room(self, room_code: str, player_name: str, is_host: bool = False) -> RoomSession:
        """
        Join (or rejoin) a room. A returning player keeps their role, life and
        confirmation; a newcomer is only accepted while the room is in the lobby.
        """
        user_id = self._user_id()
        paths = RoomPaths(room_code)

        room_data = await self.store.get_doc(paths.room)
        if room_data is None:
            raise RoomNotFoundError(room_code)
        room = Room.model_validate(room_data)
        if room.status == RoomStatus.CLOSED:
            raise RoomNotFoundError(room_code)

        existing = await self.store.get_doc(paths.player(user_id))
        if room.status != RoomStatus.LOBBY and existing is None:
            raise GameInProgressError(room_code)
        existing = existing or {}

        host = is_host or bool(existing.get("isHost", False))
        await self.store.set_doc(paths.player(user_id), {
            "name": player_name,
            "isHost": host,
            "isAlive": existing.get("isAlive", True),
            "role": existing.get("role"),
            "roleReadConfirmed": existing.get("roleReadConfirmed", False),
            "connected": True,
            "joinedAt": existing.get("joinedAt") or SERVER_TIMESTAMP,
        }, merge=True)

        role = existing.get("role")
        session = RoomSession(
            room_code, user_id, player_name, host, self.store, self.ephemeral,
            role=RoleId(role) if role else None,
        )
        await self._start_presence(session)
        logger.info("Player %s (%s) joined room %s", user_id, player_name, room_code)
        return session

    async def restore_session(self, room_code: str) -> Optional[RoomSession]:
        """Rebuild a session after a restart; None if the room or player is gone."""
        user_id = self.identity.current_user_id()
        if not user_id:
            return None
        paths = RoomPaths(room_code)
        try:
            room_data = await self.store.get_doc(paths.room)
            player_data = await self.store.get_doc(paths.player(user_id))
        except Exception as exc:
            logger.error("Failed to restore session for room %s: %s", room_code, exc)
            return None
        if room_data is None or player_data is None:
            return None
        if room_data.get("status") == RoomStatus.CLOSED.value:
            return None

        player = Player.from_doc(user_id, player_data)
        session = RoomSession(
            room_code, user_id, player.name, player.is_host,
            self.store, self.ephemeral, role=player.role,
        )
        await self._start_presence(session)
        logger.info("Session restored: %s in room %s", user_id, room_code)
        return session

    async def leave_room(self, session: RoomSession) -> None:
        """
        Host leaving closes the room for everyone and wipes it (best effort);
        anyone else just removes their own player record.
        """
        paths = session.paths
        try:
            if session.is_host:
                await self.store.update_doc(paths.room, {"status": RoomStatus.CLOSED.value})
                for name in ROOM_SUBCOLLECTIONS:
                    await clear_collection(self.store, paths, name)
                await self.store.delete_doc(paths.room)
                await best_effort(session.room_code, "clear ephemeral", [
                    self.ephemeral.delete_value(paths.presence_room_key),
                    self.ephemeral.delete_value(paths.timer_key),
                ])
            else:
                await self.store.delete_doc(paths.player(session.player_id))
        except Exception as exc:
            logger.error("[%s] Error during leave_room: %s", session.room_code, exc)

        try:
            await self.ephemeral.delete_value(paths.presence_key(session.player_id))
        except Exception as exc:
            logger.error("[%s] Error removing presence: %s", session.room_code, exc)

        session.close()

    async def kick_player(self, session: RoomSession, player_id: str) -> bool:
        if not session.is_host:
            return False
        await self.store.delete_doc(session.paths.player(player_id))
        await self.ephemeral.delete_value(session.paths.presence_key(player_id))
        logger.info("[%s] Host kicked %s", session.room_code, player_id)
        return True

    async def update_settings(self, session: RoomSession, new_settings: GameSettings) -> bool:
        if not session.is_host:
            return False
        await self.store.update_doc(session.paths.settings, new_settings.to_doc())
        return True

    async def get_settings(self, session: RoomSession) -> GameSettings:
        return await load_settings(self.store, session.paths)

    async def get_room(self, session: RoomSession) -> Optional[Room]:
        data = await self.store.get_doc(session.paths.room)
        return Room.model_validate(data) if data else None

    async def get_players(self, session: RoomSession) -> List[Player]:
        return await load_players(self.store, session.paths)

    # ── Presence ──────────────────────────────────────────────────────────────

    async def _start_presence(self, session: RoomSession) -> None:
        key = session.paths.presence_key(session.player_id)
        await self.ephemeral.set_value(key, {"online": True, "lastPing": _now_ms()})
        session.scope.add_task(asyncio.create_task(self._heartbeat(key)))

    async def _heartbeat(self, key: str) -> None:
        while True:
            await asyncio.sleep(self.presence_interval)
            try:
                await self.ephemeral.update_value(key, {"lastPing": _now_ms()})
            except Exception as exc:
                logger.warning("Presence heartbeat failed for %s: %s", key, exc)


def _now_ms() -> int:
    return int(time.time() * 1000)


def watch_room_closed(session: RoomSession, on_closed: Callable[[], None]) -> None:
    """Call `on_closed` once when the room is closed or deleted by the host."""
    fired = False

    def _on_room(data: Optional[Dict[str, Any]]) -> None:
        nonlocal fired
        if fired:
            return
        if data is None or data.get("status") == RoomStatus.CLOSED.value:
            fired = True
            on_closed()

    session.scope.add_cleanup(session.store.subscribe(session.paths.room, _on_room))
