from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ParticipantRole(str, Enum):
    INSTRUCTOR = "instructor"
    STUDENT = "student"


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class RoomState(str, Enum):
    OPEN = "open"
    ENDING = "ending"
    CLOSED = "closed"


def normalize_role(value: Any) -> ParticipantRole:
    """Map any collaborator-supplied role onto the two roles a room knows."""
    if isinstance(value, ParticipantRole):
        return value
    if str(value or "").strip().lower() == ParticipantRole.INSTRUCTOR.value:
        return ParticipantRole.INSTRUCTOR
    return ParticipantRole.STUDENT


class RoomCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(..., alias="roomId", min_length=1, max_length=120)
    display_name: Optional[str] = Field(None, alias="displayName", max_length=120)

    @field_validator("room_id", mode="before")
    @classmethod
    def strip_room_id(cls, value: Any) -> str:
        return str(value or "").strip()


class EventRequest(BaseModel):
    type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


class TransportNotification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event: Literal["joined", "left", "heartbeat"]
    identity: str = Field(..., min_length=1)
    display_name: Optional[str] = Field(None, alias="displayName", max_length=120)


class JoinTokenResponse(BaseModel):
    room_id: str
    identity: str
    role: ParticipantRole
    token: str
    url: str
    expires_in: int
