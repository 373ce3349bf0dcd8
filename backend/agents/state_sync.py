"""
State Synchronizer — every client (host included) follows the authoritative
phase record through this.

Push path:  Document Store notification → version check → render
Pull path:  guard loop notices no push for `staleness_window` seconds →
            re-fetch the record → render if the version moved

Version is the only change signal. A record whose version equals the last
applied one is ignored; any other version (including a reset back to 0) is
applied. Notifications may arrive late, twice, or not at all.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from config import settings
from models.game import GameState, Phase, Player, RoleId
from services.room_service import RoomSession

logger = logging.getLogger(__name__)

RenderHandler = Callable[[GameState, Optional[RoleId]], Awaitable[None]]

# Roles can change only while these phases are showing
_ROLE_REFRESH_PHASES = (Phase.LOBBY, Phase.ROLE_REVEAL)


class StateSynchronizer:

    def __init__(
        self,
        session: RoomSession,
        on_render: RenderHandler,
        guard_interval: Optional[float] = None,
        staleness_window: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.on_render = on_render
        self.guard_interval = (
            guard_interval if guard_interval is not None else settings.sync_guard_interval
        )
        self.staleness_window = (
            staleness_window if staleness_window is not None else settings.sync_staleness_window
        )
        self.clock = clock
        self.local_version = -1
        self.last_notification_time = clock()
        self.state: Optional[GameState] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._guard_task: Optional[asyncio.Task] = None

    @property
    def phase(self) -> Optional[Phase]:
        return self.state.phase if self.state else None

    @property
    def running(self) -> bool:
        return self._unsubscribe is not None

    def start(self) -> None:
        if self.running:
            return
        self.last_notification_time = self.clock()
        self._unsubscribe = self.session.store.subscribe(
            self.session.paths.game_state, self._on_snapshot
        )
        self._guard_task = self.session.scope.add_task(asyncio.create_task(self._guard_loop()))
        self.session.scope.add_cleanup(self.stop)
        logger.info("[%s] State sync started for %s",
                    self.session.room_code, self.session.player_id)

    def stop(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        guard, self._guard_task = self._guard_task, None
        if unsubscribe:
            unsubscribe()
        if guard and not guard.done():
            guard.cancel()

    # ── Push path ─────────────────────────────────────────────────────────────

    def _on_snapshot(self, data: Optional[Dict[str, Any]]) -> None:
        self.last_notification_time = self.clock()
        if data is None or self.session.closed:
            return
        try:
            state = GameState.model_validate(data)
        except Exception as exc:
            logger.warning("[%s] Unreadable game state ignored: %s", self.session.room_code, exc)
            return
        if state.version != self.local_version:
            self._apply(state)

    def _apply(self, state: GameState) -> None:
        self.local_version = state.version
        self.session.scope.add_task(asyncio.create_task(self._render(state)))

    async def _render(self, state: GameState) -> None:
        role = await self._resolve_role(state.phase)
        if state.version != self.local_version or self.session.closed:
            # A newer record arrived while the role was being fetched
            return
        self.state = state
        self.session.reset_phase_scope()
        logger.info("[%s] Render %s (v%d) for %s",
                    self.session.room_code, state.phase.value, state.version,
                    self.session.player_id)
        try:
            await self.on_render(state, role)
        except Exception as exc:
            logger.error("[%s] Render of %s failed: %s",
                         self.session.room_code, state.phase.value, exc)

    async def _resolve_role(self, phase: Phase) -> Optional[RoleId]:
        if phase not in _ROLE_REFRESH_PHASES and self.session.role is not None:
            return self.session.role
        try:
            data = await self.session.store.get_doc(
                self.session.paths.player(self.session.player_id)
            )
        except Exception as exc:
            logger.warning("[%s] Role fetch failed, keeping cached role: %s",
                           self.session.room_code, exc)
            return self.session.role
        if data is not None:
            self.session.role = Player.from_doc(self.session.player_id, data).role
        return self.session.role

    # ── Pull path (anti-stuck guard) ──────────────────────────────────────────

    async def _guard_loop(self) -> None:
        while True:
            await asyncio.sleep(self.guard_interval)
            try:
                await self.check_staleness()
            except Exception as exc:
                logger.warning("[%s] Sync guard check failed: %s", self.session.room_code, exc)

    async def check_staleness(self) -> bool:
        """
        Force-pull the record if no push arrived within the staleness window.
        Returns True when the pull found (and applied) a newer version.
        """
        if self.clock() - self.last_notification_time <= self.staleness_window:
            return False

        data = await self.session.store.get_doc(self.session.paths.game_state)
        self.last_notification_time = self.clock()
        if data is None:
            return False
        state = GameState.model_validate(data)
        if state.version == self.local_version:
            return False

        logger.warning(
            "[%s] Desync detected: local v%d, authoritative v%d (%s); re-rendering",
            self.session.room_code, self.local_version, state.version, state.phase.value,
        )
        self._apply(state)
        return True
