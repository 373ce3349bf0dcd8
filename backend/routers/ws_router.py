"""
WebSocket push channel for the local UI.

URL: /ws

Connection flow:
  1. Accept connection, register a listener queue on the GameClient
  2. If a phase is already applied, it is sent first as "phase_change"
  3. Pump GameClient events to the socket until it disconnects

Server → client message types:
  phase_change  — {phase, role, state}; sent for every applied version
  timer         — {remaining, phase}; host countdown mirror
  room_closed   — the host closed the room; the session is gone

Client → server message types:
  ping          — keep-alive heartbeat → responds with "pong"
"""
import asyncio
import json
import logging
from typing import Dict, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from services.game_client import GameClient

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Connection Manager ─────────────────────────────────────────────────────────

class ConnectionManager:
    """
    Tracks open UI sockets.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        self._sockets: Set[WebSocket] = set()

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._sockets.add(ws)
        logger.debug("UI socket connected (%d total)", self.count())

    def disconnect(self, ws: WebSocket) -> None:
        self._sockets.discard(ws)

    def count(self) -> int:
        return len(self._sockets)

    async def send(self, ws: WebSocket, message: Dict) -> bool:
        try:
            await ws.send_json(message)
            return True
        except Exception as exc:
            logger.warning("UI socket send failed: %s", exc)
            self.disconnect(ws)
            return False


# ── WebSocket endpoint ─────────────────────────────────────────────────────────

@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    client: GameClient = ws.app.state.client
    manager: ConnectionManager = ws.app.state.connections
    await manager.connect(ws)
    queue = client.listen()

    async def _pump() -> None:
        while True:
            message = await queue.get()
            if not await manager.send(ws, message):
                return

    pump = asyncio.create_task(_pump())
    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send(ws, {
                    "type": "error",
                    "message": "Invalid JSON",
                    "code": "PARSE_ERROR",
                })
                continue
            if data.get("type") == "ping":
                await manager.send(ws, {"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        pump.cancel()
        client.unlisten(queue)
        manager.disconnect(ws)
