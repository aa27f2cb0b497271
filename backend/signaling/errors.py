"""Errors surfaced synchronously by the signaling relay."""


class RelayError(Exception):
    """Base class for relay errors. The message is sent back to the client."""

    def to_payload(self) -> dict:
        return {"error": str(self)}


class RoomNotFoundError(RelayError):
    def __init__(self, room_id: str) -> None:
        super().__init__("Room not found")
        self.room_id = room_id


class RoomFullError(RelayError):
    def __init__(self, room_id: str) -> None:
        super().__init__("Room is full")
        self.room_id = room_id


class PermissionDeniedError(RelayError):
    def __init__(self, room_id: str) -> None:
        super().__init__("Permission denied")
        self.room_id = room_id


class RoomLimitError(RelayError):
    """Raised when the room creation limiter refuses a new room."""

    def __init__(self, remaining: int, reset_time: float | None) -> None:
        super().__init__("Daily room limit reached")
        self.remaining = remaining
        self.reset_time = reset_time

    def to_payload(self) -> dict:
        return {
            "error": str(self),
            "limitReached": True,
            "remaining": self.remaining,
            "resetTime": self.reset_time,
        }
