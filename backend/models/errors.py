"""
Error taxonomy for the room/game core.

UserFacing errors (room missing on join, game already running, bad role counts)
abort the operation and are shown to the player by the API layer. NotFound on a
player record inside the game flow is recovered locally with a placeholder.
Unauthorized (non-host calling a host action) never raises: those calls are
silent no-ops in the engine.
"""


class GameError(Exception):
    """Base class for every error raised by the game core."""


class RoomNotFoundError(GameError):
    def __init__(self, room_code: str):
        super().__init__(f"Room {room_code} not found")
        self.room_code = room_code


class GameInProgressError(GameError):
    def __init__(self, room_code: str):
        super().__init__("Game already in progress. Cannot join now.")
        self.room_code = room_code


class RoleCountMismatchError(GameError, ValueError):
    """Settings cannot start a game for the current player count."""


class PlayerNotFoundError(GameError):
    def __init__(self, room_code: str, player_id: str):
        super().__init__(f"Player {player_id} not found in room {room_code}")
        self.room_code = room_code
        self.player_id = player_id


class DocumentNotFoundError(GameError):
    """update_doc() on a path with no document."""

    def __init__(self, path: str):
        super().__init__(f"No document at {path}")
        self.path = path


class NotInRoomError(GameError):
    """An action needed an active room session and there is none."""
