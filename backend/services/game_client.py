"""
GameClient — this process's seat at the table.

Owns at most one RoomSession at a time and wires the pieces to it:
  GameMaster        (host-only writes, no-ops for everyone else)
  StateSynchronizer (every client follows the phase record)
  timer mirror      (ephemeral countdown → UI)
  room watcher      (host closed the room → tear down)

Everything the session starts is registered on it, so leaving (or the room
closing under us) stops it all. UI listeners receive plain dict events
through asyncio queues; the WebSocket router pumps them to sockets.
"""
import asyncio
import logging
import random
from typing import Any, Dict, List, Optional

from models.errors import NotInRoomError
from models.game import GameSettings, GameState, RoleId, TimerState
from agents.game_master import GameMaster
from agents.state_sync import StateSynchronizer
from services.document_store import DocumentStore
from services.ephemeral_store import EphemeralStore
from services.room_service import IdentityProvider, RoomService, RoomSession, watch_room_closed

logger = logging.getLogger(__name__)


class GameClient:

    def __init__(
        self,
        store: DocumentStore,
        ephemeral: EphemeralStore,
        identity: Optional[IdentityProvider] = None,
        rng: Optional[random.Random] = None,
        **engine_options: Any,
    ):
        self.rooms = RoomService(store, ephemeral, identity or IdentityProvider(), rng=rng)
        # tick_seconds / monitor_interval for GameMaster, guard_interval / staleness_window for sync
        self.engine_options = engine_options
        self.session: Optional[RoomSession] = None
        self.game_master: Optional[GameMaster] = None
        self.sync: Optional[StateSynchronizer] = None
        self._listeners: List[asyncio.Queue] = []

    @property
    def player_id(self) -> Optional[str]:
        return self.rooms.identity.current_user_id()

    def require_session(self) -> RoomSession:
        if self.session is None or self.session.closed:
            raise NotInRoomError("Not in a room")
        return self.session

    def require_game(self) -> GameMaster:
        self.require_session()
        return self.game_master

    # ── Room membership ───────────────────────────────────────────────────────

    async def create_room(self, player_name: str) -> RoomSession:
        session = await self.rooms.create_room(player_name)
        await self._leave_current()
        return self._attach(session)

    async def join_room(self, room_code: str, player_name: str) -> RoomSession:
        session = await self.rooms.join_room(room_code.upper(), player_name)
        await self._leave_current()
        return self._attach(session)

    async def restore(self, room_code: str) -> Optional[RoomSession]:
        session = await self.rooms.restore_session(room_code.upper())
        if session is None:
            return None
        await self._leave_current()
        return self._attach(session)

    async def leave(self) -> None:
        session = self.require_session()
        await self.rooms.leave_room(session)
        self._detach(session)

    async def _leave_current(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.leave()

    async def update_settings(self, new_settings: GameSettings) -> bool:
        return await self.rooms.update_settings(self.require_session(), new_settings)

    async def kick_player(self, player_id: str) -> bool:
        return await self.rooms.kick_player(self.require_session(), player_id)

    def _attach(self, session: RoomSession) -> RoomSession:
        self.session = session
        self.game_master = GameMaster(
            session,
            tick_seconds=self.engine_options.get("tick_seconds"),
            monitor_interval=self.engine_options.get("monitor_interval"),
        )
        self.sync = StateSynchronizer(
            session,
            self._on_render,
            guard_interval=self.engine_options.get("guard_interval"),
            staleness_window=self.engine_options.get("staleness_window"),
        )
        self.sync.start()
        session.scope.add_cleanup(
            session.ephemeral.subscribe_value(session.paths.timer_key, self._on_timer)
        )
        watch_room_closed(session, lambda: self._on_room_closed(session))
        return session

    def _detach(self, session: RoomSession) -> None:
        session.close()
        if self.session is session:
            self.session = None
            self.game_master = None
            self.sync = None

    def _on_room_closed(self, session: RoomSession) -> None:
        if session.closed:
            return
        logger.info("[%s] Room closed by host; leaving", session.room_code)
        self.publish({"type": "room_closed", "roomCode": session.room_code})
        self._detach(session)

    # ── Push to UI ────────────────────────────────────────────────────────────

    async def _on_render(self, state: GameState, role: Optional[RoleId]) -> None:
        session = self.session
        if session is None or session.closed:
            return
        self.publish({
            "type": "phase_change",
            "phase": state.phase.value,
            "role": role.value if role else None,
            "state": state.to_doc(),
        })
        if session.is_host and self.game_master.aggregation_check(state.phase):
            session.phase_scope.add_task(
                asyncio.create_task(self.game_master.run_host_monitor(state.phase))
            )

    def _on_timer(self, value: Optional[Dict[str, Any]]) -> None:
        if not value:
            return
        timer = TimerState.model_validate(value)
        self.publish({
            "type": "timer",
            "remaining": timer.remaining,
            "phase": timer.phase.value,
        })

    def listen(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._listeners.append(queue)
        if self.sync and self.sync.state:
            state = self.sync.state
            queue.put_nowait({
                "type": "phase_change",
                "phase": state.phase.value,
                "role": self.session.role.value if self.session.role else None,
                "state": state.to_doc(),
            })
        return queue

    def unlisten(self, queue: asyncio.Queue) -> None:
        if queue in self._listeners:
            self._listeners.remove(queue)

    def publish(self, message: Dict[str, Any]) -> None:
        for queue in list(self._listeners):
            queue.put_nowait(message)

    async def close(self) -> None:
        """Shutdown: drop the session locally without touching the room."""
        if self.session is not None:
            self._detach(self.session)
