from __future__ import annotations

from typing import Any, Dict, Optional

INSTRUCTOR_ONLY_MESSAGE = "Only the instructor can do this."


class RoomSessionError(Exception):
    """Base class for failures scoped to a single room request."""

    code = "room_session_error"
    status_code = 400
    default_message = "The request could not be applied to the room."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        room_id: Optional[str] = None,
        identity: Optional[str] = None,
    ) -> None:
        self.message = message or self.default_message
        self.room_id = room_id
        self.identity = identity
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.room_id:
            payload["roomId"] = self.room_id
        return payload


class Unauthorized(RoomSessionError):
    code = "unauthorized"
    status_code = 403
    default_message = INSTRUCTOR_ONLY_MESSAGE


class NotFound(RoomSessionError):
    code = "not_found"
    status_code = 404
    default_message = "Room or participant not found."


class NotAParticipant(RoomSessionError):
    code = "not_a_participant"
    status_code = 403
    default_message = "You are not a participant of this room."


class RoomClosed(RoomSessionError):
    code = "room_closed"
    status_code = 409
    default_message = "This room has ended."


class InvalidPoll(RoomSessionError):
    code = "invalid_poll"
    status_code = 422
    default_message = "A poll needs a question and at least two non-empty options."


class InvalidOption(RoomSessionError):
    code = "invalid_option"
    status_code = 422
    default_message = "The selected option does not exist in this poll."


class PollNotFound(RoomSessionError):
    code = "poll_not_found"
    status_code = 404
    default_message = "Poll not found."


class PollInactive(RoomSessionError):
    code = "poll_inactive"
    status_code = 409
    default_message = "This poll is closed."


class InvalidEvent(RoomSessionError):
    code = "invalid_event"
    status_code = 422
    default_message = "The event is malformed."
