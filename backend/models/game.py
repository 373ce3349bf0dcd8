from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any, FrozenSet
from enum import Enum
from datetime import datetime

from models.errors import RoleCountMismatchError


class RoleId(str, Enum):
    CITIZEN = "citizen"
    IMPOSTOR = "impostor"
    ENGINEER = "engineer"          # Checks one living player; unmasks (kills) a Bug
    DOCTOR = "doctor"              # Examines a deceased player's role
    FALLEN_ANGEL = "fallen_angel"  # Protects one player from the impostor kill
    GUARD_DUTY = "guard_duty"
    IMPOSTOR_FOLLOWER = "impostor_follower"
    BUG = "bug"                    # Immune to impostors; wins if alive when the game ends


class Faction(str, Enum):
    CITIZEN = "citizen"
    IMPOSTOR = "impostor"
    BUG = "bug"


ROLE_FACTION: Dict[RoleId, Faction] = {
    RoleId.CITIZEN: Faction.CITIZEN,
    RoleId.IMPOSTOR: Faction.IMPOSTOR,
    RoleId.ENGINEER: Faction.CITIZEN,
    RoleId.DOCTOR: Faction.CITIZEN,
    RoleId.FALLEN_ANGEL: Faction.CITIZEN,
    RoleId.GUARD_DUTY: Faction.CITIZEN,
    RoleId.IMPOSTOR_FOLLOWER: Faction.IMPOSTOR,
    RoleId.BUG: Faction.BUG,
}

# Roles that act during NIGHT_SPECIAL (before the impostor)
SPECIAL_NIGHT_ROLES: FrozenSet[RoleId] = frozenset(
    {RoleId.ENGINEER, RoleId.DOCTOR, RoleId.FALLEN_ANGEL}
)

# targetId submitted when an actor has no valid target tonight
SKIP_TARGET = "SKIP"

# Placeholder for a vote victim whose player record is gone (left mid-game)
LEFT_PLAYER_NAME = "Unknown (Left)"


class Phase(str, Enum):
    LOBBY = "LOBBY"
    ROLE_REVEAL = "ROLE_REVEAL"
    MEETING_DISCUSSION = "MEETING_DISCUSSION"
    VOTING = "VOTING"
    VOTE_RESULT = "VOTE_RESULT"
    BREAK = "BREAK"
    NIGHT_SPECIAL = "NIGHT_SPECIAL"
    NIGHT_IMPOSTOR = "NIGHT_IMPOSTOR"
    MORNING_ANNOUNCEMENT = "MORNING_ANNOUNCEMENT"
    GAME_RESULT = "GAME_RESULT"


# Host-driven edges. Reset (any phase → LOBBY) is a full overwrite, not an edge.
PHASE_TRANSITIONS: Dict[Phase, FrozenSet[Phase]] = {
    Phase.LOBBY: frozenset({Phase.ROLE_REVEAL}),
    Phase.ROLE_REVEAL: frozenset({Phase.MEETING_DISCUSSION}),
    Phase.MEETING_DISCUSSION: frozenset({Phase.VOTING}),
    Phase.VOTING: frozenset({Phase.VOTE_RESULT}),
    Phase.VOTE_RESULT: frozenset(
        {Phase.MEETING_DISCUSSION, Phase.BREAK, Phase.GAME_RESULT}
    ),
    Phase.BREAK: frozenset({Phase.NIGHT_SPECIAL}),
    Phase.NIGHT_SPECIAL: frozenset({Phase.NIGHT_IMPOSTOR}),
    Phase.NIGHT_IMPOSTOR: frozenset({Phase.MORNING_ANNOUNCEMENT}),
    Phase.MORNING_ANNOUNCEMENT: frozenset(
        {Phase.MEETING_DISCUSSION, Phase.GAME_RESULT}
    ),
    Phase.GAME_RESULT: frozenset(),
}

_uncovered = set(Phase) - set(PHASE_TRANSITIONS)
if _uncovered:
    raise RuntimeError(f"PHASE_TRANSITIONS has no entry for {sorted(p.value for p in _uncovered)}")


def can_transition(current: Phase, target: Phase) -> bool:
    return target in PHASE_TRANSITIONS[current]


class RoomStatus(str, Enum):
    LOBBY = "lobby"
    INGAME = "ingame"
    CLOSED = "closed"   # terminal, triggers teardown


class DeathCause(str, Enum):
    VOTE = "vote"
    IMPOSTOR = "impostor"
    BUG_DEATH = "bug_death"


class TimerKind(str, Enum):
    MEETING = "meeting"
    VOTING = "voting"
    BREAK = "break"


class VoteOutcome(str, Enum):
    KILLED = "killed"
    TIE = "tie"
    NO_VOTES = "no_votes"


# Default role table written when a room is created (9 players)
DEFAULT_ROLE_COUNTS: Dict[RoleId, int] = {
    RoleId.CITIZEN: 4,
    RoleId.IMPOSTOR: 2,
    RoleId.ENGINEER: 1,
    RoleId.DOCTOR: 1,
    RoleId.FALLEN_ANGEL: 1,
    RoleId.GUARD_DUTY: 0,
    RoleId.IMPOSTOR_FOLLOWER: 0,
    RoleId.BUG: 0,
}


# ── Persisted documents ───────────────────────────────────────────────────────

class StoreModel(BaseModel):
    """Base for persisted documents: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_doc(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude={"id"})


class Room(StoreModel):
    room_code: str
    host_id: str
    status: RoomStatus = RoomStatus.LOBBY
    day: int = Field(default=1, ge=1)
    created_at: Optional[datetime] = None


class Player(StoreModel):
    id: str = ""  # document id, never stored in the body
    name: str
    is_host: bool = False
    is_alive: bool = True
    role: Optional[RoleId] = None
    role_read_confirmed: bool = False
    connected: bool = False
    joined_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc_id: str, data: Dict[str, Any]) -> "Player":
        return cls(id=doc_id, **data)

    def to_public(self) -> Dict[str, Any]:
        """Safe representation: omits role (hidden during game)."""
        return {
            "id": self.id,
            "name": self.name,
            "isHost": self.is_host,
            "isAlive": self.is_alive,
            "connected": self.connected,
            "roleReadConfirmed": self.role_read_confirmed,
        }


class TimerSettings(StoreModel):
    meeting: NonNegativeInt = 300
    vote: NonNegativeInt = 60
    break_: NonNegativeInt = Field(default=120, alias="break")

    def seconds_for(self, kind: TimerKind) -> int:
        if kind == TimerKind.MEETING:
            return self.meeting
        if kind == TimerKind.VOTING:
            return self.vote
        return self.break_


class GameSettings(StoreModel):
    roles: Dict[RoleId, NonNegativeInt] = Field(
        default_factory=lambda: dict(DEFAULT_ROLE_COUNTS)
    )
    timers: TimerSettings = Field(default_factory=TimerSettings)

    def check_player_count(self, player_count: int) -> None:
        """Raise RoleCountMismatchError unless these settings can start a game."""
        total = sum(self.roles.values())
        if total != player_count:
            raise RoleCountMismatchError(
                f"Role counts add up to {total} but {player_count} players are in the room."
            )
        if self.roles.get(RoleId.IMPOSTOR, 0) < 1:
            raise RoleCountMismatchError("At least one impostor is required.")


class GameState(StoreModel):
    """
    Authoritative phase record (rooms/{code}/gameState/current).

    Only fields documented for the current phase are meaningful; payload from
    an earlier phase may linger because phase writes are merges.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    phase: Phase = Phase.LOBBY
    version: int = 0
    transition_id: str = ""
    host_uid: Optional[str] = None
    updated_at: Optional[datetime] = None
    # VOTE_RESULT
    result: Optional[VoteOutcome] = None
    victim_id: Optional[str] = None
    victim_name: Optional[str] = None
    tied_players: Optional[List[str]] = None
    vote_counts: Optional[Dict[str, int]] = None
    # MORNING_ANNOUNCEMENT
    victims: Optional[List[str]] = None
    # GAME_RESULT
    winner: Optional[Faction] = None


class Vote(StoreModel):
    target_id: str
    submitted_at: Optional[datetime] = None


class NightAction(StoreModel):
    actor_id: str = ""  # document id
    type: RoleId
    target_id: str
    submitted_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc_id: str, data: Dict[str, Any]) -> "NightAction":
        return cls(actor_id=doc_id, **data)


class DeathLogEntry(StoreModel):
    cause: DeathCause
    day: int
    role: Optional[RoleId] = None
    timestamp: Optional[datetime] = None


class VoteHistoryEntry(StoreModel):
    day: int
    voter_id: str
    target_id: str
    timestamp: Optional[datetime] = None


class TimerState(StoreModel):
    remaining: int
    phase: TimerKind


# ── HTTP request/response models ──────────────────────────────────────────────

class CreateRoomRequest(BaseModel):
    player_name: str = "Host"


class JoinRoomRequest(BaseModel):
    player_name: str


class RoomResponse(BaseModel):
    room_code: str
    player_id: str
    is_host: bool


class VoteRequest(BaseModel):
    target_id: str


class NightActionRequest(BaseModel):
    target_id: str = SKIP_TARGET
