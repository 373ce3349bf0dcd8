import asyncio
import random
from typing import Dict, List, Optional

import pytest

from agents.game_master import GameMaster
from models.game import GameSettings, Phase, RoleId, TimerSettings
from services.memory_store import InMemoryDocumentStore, InMemoryEphemeralStore
from services.room_service import IdentityProvider, RoomService, RoomSession


class Table:
    """One room with several in-process clients sharing the same stores."""

    def __init__(self, store, ephemeral, sessions: List[RoomSession]):
        self.store = store
        self.ephemeral = ephemeral
        self.sessions = sessions
        self.masters: Dict[str, GameMaster] = {
            s.player_id: GameMaster(s, tick_seconds=0.01, monitor_interval=0.01)
            for s in sessions
        }

    @property
    def host(self) -> RoomSession:
        return self.sessions[0]

    @property
    def paths(self):
        return self.host.paths

    @property
    def gm(self) -> GameMaster:
        return self.masters[self.host.player_id]

    def master(self, player_id: str) -> GameMaster:
        return self.masters[player_id]

    async def set_roles(self, roles: Dict[str, RoleId]) -> None:
        for player_id, role in roles.items():
            await self.store.update_doc(self.paths.player(player_id), {"role": role.value})

    async def player(self, player_id: str) -> Optional[dict]:
        return await self.store.get_doc(self.paths.player(player_id))

    async def wait_for_phase(self, phase: Phase, timeout: float = 1.0) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if await self.gm.current_phase() == phase:
                return True
            await asyncio.sleep(0.005)
        return False

    def close(self) -> None:
        for session in self.sessions:
            session.close()


@pytest.fixture
def make_table():
    """
    Coroutine factory: await make_table(["host", "p1", ...], roles=..., timers=...).
    The first id is the host. Must be awaited inside the test's event loop.
    """

    async def _make(
        player_ids: List[str],
        roles: Optional[Dict[RoleId, int]] = None,
        timers: Optional[TimerSettings] = None,
    ) -> Table:
        store = InMemoryDocumentStore()
        ephemeral = InMemoryEphemeralStore()

        def _service(player_id: str) -> RoomService:
            return RoomService(
                store, ephemeral, IdentityProvider(player_id),
                rng=random.Random(7), presence_interval=60,
            )

        host = await _service(player_ids[0]).create_room(player_ids[0].title())
        sessions = [host]
        for player_id in player_ids[1:]:
            sessions.append(await _service(player_id).join_room(host.room_code, player_id.title()))

        game_settings = GameSettings(
            roles=roles or {RoleId.CITIZEN: len(player_ids) - 1, RoleId.IMPOSTOR: 1},
            timers=timers or TimerSettings(),
        )
        await store.set_doc(host.paths.settings, game_settings.to_doc())
        return Table(store, ephemeral, sessions)

    return _make
