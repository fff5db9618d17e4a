from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from app.schemas.rooms import ParticipantRole, normalize_role


class EventType(str, Enum):
    JOIN = "join"
    LEAVE = "leave"
    RAISE_HAND = "raiseHand"
    LOWER_HAND = "lowerHand"
    SEND_REACTION = "sendReaction"
    CHAT_MESSAGE = "chatMessage"
    CREATE_POLL = "createPoll"
    CAST_VOTE = "castVote"
    CLOSE_POLL = "closePoll"
    SET_PERMISSION = "setPermission"
    REMOVE_PARTICIPANT = "removeParticipant"
    MUTE_PARTICIPANT = "muteParticipant"
    END_ROOM = "endRoom"


INSTRUCTOR_ONLY_EVENTS = frozenset(
    {
        EventType.REMOVE_PARTICIPANT,
        EventType.MUTE_PARTICIPANT,
        EventType.SET_PERMISSION,
        EventType.END_ROOM,
        EventType.CREATE_POLL,
        EventType.CLOSE_POLL,
    }
)


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EmptyPayload(_Payload):
    pass


class JoinPayload(_Payload):
    display_name: Optional[str] = Field(None, alias="displayName", max_length=120)


class HandPayload(_Payload):
    # Defaults to the sender; naming anyone else is rejected by the roster.
    identity: Optional[str] = None


class ReactionPayload(_Payload):
    emoji: str = Field(..., min_length=1, max_length=32)


class ChatPayload(_Payload):
    message: str = Field(..., min_length=1, max_length=2000)

    @field_validator("message")
    @classmethod
    def strip_message(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("message must not be blank")
        return stripped


class CreatePollPayload(_Payload):
    question: str = Field("", max_length=500)
    options: List[str] = Field(default_factory=list)


class CastVotePayload(_Payload):
    poll_id: str = Field(..., alias="pollId", min_length=1)
    option_index: int = Field(..., alias="optionIndex")


class ClosePollPayload(_Payload):
    poll_id: str = Field(..., alias="pollId", min_length=1)


class SetPermissionPayload(_Payload):
    identity: str = Field(..., min_length=1)
    can_publish: bool = Field(..., alias="canPublish")
    can_subscribe: Optional[bool] = Field(None, alias="canSubscribe")


class RemoveParticipantPayload(_Payload):
    identity: str = Field(..., min_length=1)


class MuteParticipantPayload(_Payload):
    identity: str = Field(..., min_length=1)
    muted: bool = True
    # Media track the transport should mute; the roster only keeps the flag.
    track_sid: Optional[str] = Field(None, alias="trackSid")


class JoinEvent(BaseModel):
    type: Literal["join"]
    payload: JoinPayload = Field(default_factory=JoinPayload)


class LeaveEvent(BaseModel):
    type: Literal["leave"]
    payload: EmptyPayload = Field(default_factory=EmptyPayload)


class RaiseHandEvent(BaseModel):
    type: Literal["raiseHand"]
    payload: HandPayload = Field(default_factory=HandPayload)


class LowerHandEvent(BaseModel):
    type: Literal["lowerHand"]
    payload: HandPayload = Field(default_factory=HandPayload)


class SendReactionEvent(BaseModel):
    type: Literal["sendReaction"]
    payload: ReactionPayload


class ChatMessageEvent(BaseModel):
    type: Literal["chatMessage"]
    payload: ChatPayload


class CreatePollEvent(BaseModel):
    type: Literal["createPoll"]
    payload: CreatePollPayload


class CastVoteEvent(BaseModel):
    type: Literal["castVote"]
    payload: CastVotePayload


class ClosePollEvent(BaseModel):
    type: Literal["closePoll"]
    payload: ClosePollPayload


class SetPermissionEvent(BaseModel):
    type: Literal["setPermission"]
    payload: SetPermissionPayload


class RemoveParticipantEvent(BaseModel):
    type: Literal["removeParticipant"]
    payload: RemoveParticipantPayload


class MuteParticipantEvent(BaseModel):
    type: Literal["muteParticipant"]
    payload: MuteParticipantPayload


class EndRoomEvent(BaseModel):
    type: Literal["endRoom"]
    payload: EmptyPayload = Field(default_factory=EmptyPayload)


InboundEvent = Annotated[
    Union[
        JoinEvent,
        LeaveEvent,
        RaiseHandEvent,
        LowerHandEvent,
        SendReactionEvent,
        ChatMessageEvent,
        CreatePollEvent,
        CastVoteEvent,
        ClosePollEvent,
        SetPermissionEvent,
        RemoveParticipantEvent,
        MuteParticipantEvent,
        EndRoomEvent,
    ],
    Field(discriminator="type"),
]

inbound_event_adapter: TypeAdapter = TypeAdapter(InboundEvent)


class EventEnvelope(BaseModel):
    """An inbound event together with the facts supplied by the collaborators."""

    room_id: str
    sender_identity: str
    sender_role: ParticipantRole = ParticipantRole.STUDENT
    sender_display_name: Optional[str] = None
    event: InboundEvent

    @field_validator("sender_role", mode="before")
    @classmethod
    def coerce_role(cls, value: Any) -> ParticipantRole:
        return normalize_role(value)

    @property
    def type(self) -> EventType:
        return EventType(self.event.type)

