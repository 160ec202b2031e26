from typing import Optional


class GameError(Exception):
    """A rejected game action. Delivered to the requester only, never broadcast."""
    code = "GAME_ERROR"
    default_message = "Action not allowed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_message(self) -> dict:
        return {"type": "ERROR", "code": self.code, "message": self.message}


class NotAuthorized(GameError):
    code = "NOT_AUTHORIZED"
    default_message = "Only the host can do that"


class RoomNotFound(GameError):
    code = "ROOM_NOT_FOUND"
    default_message = "Room not found"


class RoomFinished(GameError):
    code = "ROOM_FINISHED"
    default_message = "The game has already finished"


class RoomFull(GameError):
    code = "ROOM_FULL"
    default_message = "Room is full"


class PlayerNotFound(GameError):
    code = "PLAYER_NOT_FOUND"
    default_message = "Player is not in this room"


class NicknameTaken(GameError):
    code = "NICKNAME_TAKEN"
    default_message = "That nickname is already used in this room"


class TeamsNotSupported(GameError):
    code = "TEAMS_NOT_SUPPORTED"
    default_message = "This pack does not support teams"


class InvalidTeam(GameError):
    code = "INVALID_TEAM"
    default_message = "Team does not exist"


class InvalidSpot(GameError):
    code = "INVALID_SPOT"
    default_message = "Spot does not exist"


class SpotOccupied(GameError):
    code = "SPOT_OCCUPIED"
    default_message = "That spot is already taken"


class NoQuestions(GameError):
    code = "NO_QUESTIONS"
    default_message = "The selected pack has no questions"


class InvalidState(GameError):
    code = "INVALID_STATE"
    default_message = "Action not allowed in the current game state"


class RoomCreationFailed(GameError):
    code = "ROOM_CREATION_FAILED"
    default_message = "Could not allocate a room code"


class InvalidRequest(GameError):
    code = "INVALID_REQUEST"
    default_message = "Invalid request"
