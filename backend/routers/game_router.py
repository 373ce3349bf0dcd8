"""
Room and game HTTP endpoints for the local UI.

Routes (prefix /api):
  POST /api/rooms                          — Create room, this client becomes host
  POST /api/rooms/{room_code}/join         — Join (or rejoin) a room
  POST /api/rooms/leave                    — Leave; host leaving closes the room
  POST /api/rooms/restore/{room_code}      — Rebuild the session after a restart
  GET  /api/rooms/current                  — Room, players (roles hidden), settings
  PUT  /api/rooms/settings                 — Host edits role counts / timers
  POST /api/rooms/kick/{player_id}         — Host removes a player
  POST /api/game/start                     — Host starts the game (role assignment)
  POST /api/game/role-read                 — Confirm own role card
  POST /api/game/voting                    — Host ends the meeting early
  POST /api/game/votes                     — Cast own vote
  POST /api/game/vote-result/proceed       — Host continues past VOTE_RESULT
  POST /api/game/night                     — Host ends the break early
  POST /api/game/night-actions             — Submit own night action
  POST /api/game/morning/proceed           — Host continues past the morning
  POST /api/game/reset                     — Host resets to a fresh lobby
  GET  /api/game/state                     — Applied phase record + own role
  GET  /api/game/vote-history              — Archived votes
  GET  /api/game/death-log                 — Deaths so far
  GET  /api/game/reveal/{target_id}        — Engineer / Doctor role check

Host-only routes answer {"ok": false} for everyone else instead of failing:
stale screens call them and that is not an error.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request

from models.errors import (
    GameInProgressError, NotInRoomError, RoleCountMismatchError, RoomNotFoundError,
)
from models.game import (
    CreateRoomRequest, GameSettings, JoinRoomRequest, NightActionRequest,
    RoomResponse, VoteRequest,
)
from services.game_client import GameClient
from services.room_service import RoomSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["game"])


def _client(request: Request) -> GameClient:
    return request.app.state.client


def _session(client: GameClient) -> RoomSession:
    try:
        return client.require_session()
    except NotInRoomError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


def _room_response(session: RoomSession) -> RoomResponse:
    return RoomResponse(
        room_code=session.room_code,
        player_id=session.player_id,
        is_host=session.is_host,
    )


# ── Rooms ─────────────────────────────────────────────────────────────────────

@router.post("/rooms", response_model=RoomResponse, status_code=201)
async def create_room(body: CreateRoomRequest, request: Request):
    session = await _client(request).create_room(body.player_name)
    return _room_response(session)


@router.post("/rooms/{room_code}/join", response_model=RoomResponse)
async def join_room(room_code: str, body: JoinRoomRequest, request: Request):
    try:
        session = await _client(request).join_room(room_code, body.player_name)
    except RoomNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except GameInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _room_response(session)


@router.post("/rooms/leave")
async def leave_room(request: Request):
    client = _client(request)
    _session(client)
    await client.leave()
    return {"ok": True}


@router.post("/rooms/restore/{room_code}", response_model=RoomResponse)
async def restore_room(room_code: str, request: Request):
    session = await _client(request).restore(room_code)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No session to restore in room {room_code}")
    return _room_response(session)


@router.get("/rooms/current")
async def current_room(request: Request):
    client = _client(request)
    session = _session(client)
    room = await client.rooms.get_room(session)
    if room is None:
        raise HTTPException(status_code=404, detail=f"Room {session.room_code} not found")
    players = await client.rooms.get_players(session)
    game_settings = await client.rooms.get_settings(session)
    return {
        "room": room.to_doc(),
        "players": [p.to_public() for p in players],
        "settings": game_settings.to_doc(),
        "you": {
            "playerId": session.player_id,
            "isHost": session.is_host,
            "role": session.role.value if session.role else None,
        },
    }


@router.put("/rooms/settings")
async def update_settings(body: GameSettings, request: Request):
    client = _client(request)
    _session(client)
    return {"ok": await client.update_settings(body)}


@router.post("/rooms/kick/{player_id}")
async def kick_player(player_id: str, request: Request):
    client = _client(request)
    _session(client)
    return {"ok": await client.kick_player(player_id)}


# ── Game flow ─────────────────────────────────────────────────────────────────

@router.post("/game/start")
async def start_game(request: Request):
    client = _client(request)
    _session(client)
    try:
        assignments = await client.require_game().start_game()
    except RoleCountMismatchError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"ok": assignments is not None, "playerCount": len(assignments or [])}


@router.post("/game/role-read")
async def confirm_role_read(request: Request):
    client = _client(request)
    _session(client)
    game = client.require_game()
    await game.mark_role_read()
    await game.check_all_players_read_role()
    return {"ok": True}


@router.post("/game/voting")
async def start_voting(request: Request):
    client = _client(request)
    _session(client)
    return {"ok": await client.require_game().transition_to_voting()}


@router.post("/game/votes")
async def submit_vote(body: VoteRequest, request: Request):
    client = _client(request)
    _session(client)
    game = client.require_game()
    accepted = await game.submit_vote(body.target_id)
    if accepted:
        await game.check_all_voted()
    return {"ok": accepted}


@router.post("/game/vote-result/proceed")
async def proceed_after_vote(request: Request):
    client = _client(request)
    _session(client)
    phase = await client.require_game().proceed_after_vote()
    return {"ok": phase is not None, "phase": phase.value if phase else None}


@router.post("/game/night")
async def start_night(request: Request):
    client = _client(request)
    _session(client)
    return {"ok": await client.require_game().transition_to_night()}


@router.post("/game/night-actions")
async def submit_night_action(body: NightActionRequest, request: Request):
    client = _client(request)
    session = _session(client)
    game = client.require_game()
    me = await game.own_player()
    if me is None or me.role is None or not me.is_alive:
        raise HTTPException(status_code=400, detail="No night action available")
    await game.submit_night_action(me.role, body.target_id)
    logger.info("[%s] Night action from %s (%s)", session.room_code, me.id, me.role.value)
    await game.check_special_roles_submitted()
    await game.check_impostor_submitted()
    return {"ok": True}


@router.post("/game/morning/proceed")
async def proceed_after_morning(request: Request):
    client = _client(request)
    _session(client)
    phase = await client.require_game().proceed_after_morning()
    return {"ok": phase is not None, "phase": phase.value if phase else None}


@router.post("/game/reset")
async def reset_game(request: Request):
    client = _client(request)
    _session(client)
    return {"ok": await client.require_game().reset_game_state()}


# ── Reads ─────────────────────────────────────────────────────────────────────

@router.get("/game/state")
async def get_state(request: Request) -> Dict[str, Any]:
    client = _client(request)
    session = _session(client)
    game = client.require_game()
    state = await game.get_state()
    return {
        "state": state.to_doc() if state else None,
        "appliedVersion": client.sync.local_version if client.sync else None,
        "role": session.role.value if session.role else None,
        "nightTargets": await game.night_targets(),
    }


@router.get("/game/vote-history")
async def get_vote_history(request: Request):
    client = _client(request)
    _session(client)
    entries = await client.require_game().get_vote_history()
    return {"votes": [e.to_doc() for e in entries]}


@router.get("/game/death-log")
async def get_death_log(request: Request):
    client = _client(request)
    _session(client)
    log = await client.require_game().get_death_log()
    return {"deaths": {victim_id: entry.to_doc() for victim_id, entry in log.items()}}


@router.get("/game/reveal/{target_id}")
async def reveal_role(target_id: str, request: Request):
    client = _client(request)
    _session(client)
    reveal = await client.require_game().reveal_role(target_id)
    if reveal is None:
        raise HTTPException(status_code=403, detail="Reveal not available for this target")
    return reveal
