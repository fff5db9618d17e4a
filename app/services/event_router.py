from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence
from uuid import uuid4

from pydantic import ValidationError

from app.schemas.events import (
    INSTRUCTOR_ONLY_EVENTS,
    EventEnvelope,
    EventType,
    inbound_event_adapter,
)
from app.services.errors import (
    InvalidEvent,
    NotAParticipant,
    RoomClosed,
    RoomSessionError,
    Unauthorized,
)
from app.services.poll_engine import PollEngine
from app.services.roster_store import (
    JSONCompatibleDict,
    Participant,
    Room,
    RoomState,
    RosterStore,
)

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from app.services.session_lifecycle import SessionLifecycleManager

logger = logging.getLogger(__name__)

SYSTEM_IDENTITY = "system"
DEFAULT_REACTION_TTL_SECONDS = 4

Handler = Callable[["Room", Optional["Participant"], EventEnvelope, "DispatchResult"], None]


class Broadcaster(Protocol):
    def publish(
        self,
        room_id: str,
        recipients: Sequence[str],
        message: JSONCompatibleDict,
    ) -> None:
        """Hand a message to every recipient without waiting for delivery."""


class NullBroadcaster:
    def publish(
        self,
        room_id: str,
        recipients: Sequence[str],
        message: JSONCompatibleDict,
    ) -> None:
        logger.debug(
            "Dropping %s for room_id=%s (no broadcaster configured)",
            message.get("type"),
            room_id,
        )


@dataclass
class Delivery:
    message: JSONCompatibleDict
    recipients: List[str]


@dataclass
class DispatchResult:
    room_id: str
    event_type: str
    response: JSONCompatibleDict = field(default_factory=dict)
    deliveries: List[Delivery] = field(default_factory=list)

    @property
    def messages(self) -> List[JSONCompatibleDict]:
        return [delivery.message for delivery in self.deliveries]


def build_message(room_id: str, message_type: str, payload: JSONCompatibleDict) -> JSONCompatibleDict:
    return {"roomId": room_id, "type": message_type, "payload": payload}


class EventRouter:
    """Validates inbound room events and fans out the resulting state deltas.

    Every event for a room is applied while holding that room's lock, so two
    events never interleave their read-modify-write sequences. Broadcasting
    happens after the lock is released and never waits on delivery.
    """

    def __init__(
        self,
        roster: RosterStore,
        polls: PollEngine,
        broadcaster: Optional[Broadcaster] = None,
        *,
        reaction_ttl_seconds: int = DEFAULT_REACTION_TTL_SECONDS,
    ) -> None:
        self.roster = roster
        self.polls = polls
        self.broadcaster: Broadcaster = broadcaster or NullBroadcaster()
        self.reaction_ttl_seconds = reaction_ttl_seconds
        self.lifecycle: Optional["SessionLifecycleManager"] = None
        self._handlers: Dict[EventType, Handler] = {
            EventType.JOIN: self._handle_join,
            EventType.LEAVE: self._handle_leave,
            EventType.RAISE_HAND: self._handle_hand,
            EventType.LOWER_HAND: self._handle_hand,
            EventType.SEND_REACTION: self._handle_reaction,
            EventType.CHAT_MESSAGE: self._handle_chat,
            EventType.CREATE_POLL: self._handle_create_poll,
            EventType.CAST_VOTE: self._handle_cast_vote,
            EventType.CLOSE_POLL: self._handle_close_poll,
            EventType.SET_PERMISSION: self._handle_set_permission,
            EventType.REMOVE_PARTICIPANT: self._handle_remove_participant,
            EventType.MUTE_PARTICIPANT: self._handle_mute_participant,
            EventType.END_ROOM: self._handle_end_room,
        }

    def bind_lifecycle(self, lifecycle: "SessionLifecycleManager") -> None:
        self.lifecycle = lifecycle

    # Entry point

    def dispatch(self, envelope: EventEnvelope) -> DispatchResult:
        """Apply one inbound event; failures are raised to the caller only."""
        room_id = envelope.room_id
        event_type = envelope.type
        result = DispatchResult(room_id=room_id, event_type=event_type.value)
        try:
            with self.roster.lock_for(room_id):
                room = self.roster.require_room(room_id)
                self._check_room_accepts(room, event_type, envelope.sender_identity)
                sender = self._authorize(room, event_type, envelope.sender_identity)
                self._handlers[event_type](room, sender, envelope, result)
        except RoomSessionError as exc:
            log = logger.info if isinstance(exc, Unauthorized) else logger.debug
            log(
                "Rejected %s from identity=%s in room_id=%s: %s",
                event_type.value,
                envelope.sender_identity,
                room_id,
                exc.message,
            )
            raise

        self.deliver(result.deliveries)
        return result

    def _check_room_accepts(self, room: Room, event_type: EventType, sender_identity: str) -> None:
        if room.state == RoomState.CLOSED:
            raise RoomClosed(room_id=room.room_id, identity=sender_identity)
        # An ending room only takes disconnect acknowledgements.
        if room.state == RoomState.ENDING and event_type != EventType.LEAVE:
            raise RoomClosed(
                "This room is ending.", room_id=room.room_id, identity=sender_identity
            )

    def _authorize(
        self, room: Room, event_type: EventType, sender_identity: str
    ) -> Optional[Participant]:
        if event_type == EventType.JOIN:
            return self.roster.get_participant(room.room_id, sender_identity)
        sender = self.roster.get_participant(room.room_id, sender_identity)
        if sender is None:
            raise NotAParticipant(room_id=room.room_id, identity=sender_identity)
        if event_type in INSTRUCTOR_ONLY_EVENTS and not sender.is_instructor:
            raise Unauthorized(room_id=room.room_id, identity=sender_identity)
        return sender

    # Fan-out

    def recipients(self, room_id: str, extra: Iterable[str] = ()) -> List[str]:
        identities = []
        if self.roster.get_room(room_id) is not None:
            identities = self.roster.list_participants(room_id).identities()
        for identity in extra:
            if identity and identity not in identities:
                identities.append(identity)
        return identities

    def queue(
        self,
        result: DispatchResult,
        message_type: str,
        payload: JSONCompatibleDict,
        *,
        extra_recipients: Iterable[str] = (),
    ) -> None:
        result.deliveries.append(
            Delivery(
                message=build_message(result.room_id, message_type, payload),
                recipients=self.recipients(result.room_id, extra_recipients),
            )
        )

    def deliver(self, deliveries: Iterable[Delivery]) -> None:
        for delivery in deliveries:
            if not delivery.recipients:
                continue
            try:
                self.broadcaster.publish(
                    delivery.message["roomId"], delivery.recipients, delivery.message
                )
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Broadcast of %s failed for room_id=%s",
                    delivery.message.get("type"),
                    delivery.message.get("roomId"),
                )

    def roster_payload(self, room_id: str) -> List[JSONCompatibleDict]:
        return [participant.to_payload() for participant in self.roster.list_participants(room_id)]

    # Handlers

    def _handle_join(self, room, existing, envelope, result) -> None:
        participant = self.roster.upsert_participant(
            room.room_id,
            envelope.sender_identity,
            envelope.sender_role,
            envelope.event.payload.display_name or envelope.sender_display_name,
        )
        result.response = {
            "room": room.to_payload(),
            "participant": participant.to_payload(),
            "participants": self.roster_payload(room.room_id),
            "polls": [
                {"poll": poll.to_payload(), "tally": self.polls.tally(room.room_id, poll.poll_id).to_payload()}
                for poll in self.polls.list_polls(room.room_id)
            ],
        }
        if existing is not None:
            return
        self.queue(
            result,
            "participant_joined",
            {
                "participant": participant.to_payload(),
                "participants": result.response["participants"],
            },
        )

    def _handle_leave(self, room, sender, envelope, result) -> None:
        self.remove_and_queue(room, sender.identity, result, reason="left")

    def remove_and_queue(
        self,
        room: Room,
        identity: str,
        result: DispatchResult,
        *,
        reason: str,
        removed_by: Optional[str] = None,
    ) -> Participant:
        participant = self.roster.remove_participant(room.room_id, identity)
        participants = self.roster_payload(room.room_id)
        self.queue(
            result,
            "participant_left",
            {
                "identity": identity,
                "reason": reason,
                "removedBy": removed_by,
                "participants": participants,
            },
            extra_recipients=[identity],
        )
        result.response = {"identity": identity, "participants": participants}
        if self.lifecycle is not None:
            self.lifecycle.close_if_drained(room, result, notify=[identity])
        return participant

    def _handle_hand(self, room, sender, envelope, result) -> None:
        target = envelope.event.payload.identity or sender.identity
        raised = envelope.type == EventType.RAISE_HAND
        participant = self.roster.set_hand_raised(
            room.room_id, target, raised, actor=sender.identity
        )
        result.response = {"participant": participant.to_payload()}
        self.queue(
            result,
            "participant_updated",
            {"participant": participant.to_payload(), "change": "handRaised"},
        )

    def _handle_reaction(self, room, sender, envelope, result) -> None:
        reaction = {
            "id": uuid4().hex,
            "emoji": envelope.event.payload.emoji,
            "senderIdentity": sender.identity,
            "displayName": sender.display_name,
            "timestamp": self.roster.now().isoformat(),
            "ttlSeconds": self.reaction_ttl_seconds,
        }
        result.response = {"reaction": reaction}
        self.queue(result, "reaction", reaction)

    def _handle_chat(self, room, sender, envelope, result) -> None:
        message = {
            "id": uuid4().hex,
            "senderIdentity": sender.identity,
            "displayName": sender.display_name,
            "message": envelope.event.payload.message,
            "timestamp": self.roster.now().isoformat(),
        }
        result.response = {"message": message}
        self.queue(result, "chat_message", message)

    def _handle_create_poll(self, room, sender, envelope, result) -> None:
        payload = envelope.event.payload
        poll = self.polls.create_poll(
            room.room_id, payload.question, payload.options, created_by=sender.identity
        )
        tally = self.polls.tally(room.room_id, poll.poll_id)
        result.response = {"poll": poll.to_payload(), "tally": tally.to_payload()}
        self.queue(result, "poll_created", dict(result.response))

    def _handle_cast_vote(self, room, sender, envelope, result) -> None:
        payload = envelope.event.payload
        tally = self.polls.cast_vote(
            room.room_id, payload.poll_id, sender.identity, payload.option_index
        )
        result.response = {
            "pollId": payload.poll_id,
            "optionIndex": payload.option_index,
            "tally": tally.to_payload(),
        }
        self.queue(
            result,
            "poll_updated",
            {"pollId": payload.poll_id, "tally": tally.to_payload()},
        )

    def _handle_close_poll(self, room, sender, envelope, result) -> None:
        poll_id = envelope.event.payload.poll_id
        tally = self.polls.close_poll(room.room_id, poll_id)
        poll = self.polls.get_poll(room.room_id, poll_id)
        result.response = {"poll": poll.to_payload(), "tally": tally.to_payload()}
        self.queue(result, "poll_closed", dict(result.response))

    def _handle_set_permission(self, room, sender, envelope, result) -> None:
        payload = envelope.event.payload
        participant = self.roster.set_permissions(
            room.room_id,
            payload.identity,
            actor=sender.identity,
            can_publish=payload.can_publish,
            can_subscribe=payload.can_subscribe,
        )
        result.response = {"participant": participant.to_payload()}
        change = "canPublish" if payload.can_subscribe is None else "permissions"
        self.queue(
            result,
            "participant_updated",
            {"participant": participant.to_payload(), "change": change},
        )

    def _handle_mute_participant(self, room, sender, envelope, result) -> None:
        payload = envelope.event.payload
        participant = self.roster.set_muted(
            room.room_id, payload.identity, payload.muted, actor=sender.identity
        )
        result.response = {"participant": participant.to_payload(), "trackSid": payload.track_sid}
        self.queue(
            result,
            "participant_updated",
            {
                "participant": participant.to_payload(),
                "change": "muted",
                "trackSid": payload.track_sid,
            },
        )

    def _handle_remove_participant(self, room, sender, envelope, result) -> None:
        self.remove_and_queue(
            room,
            envelope.event.payload.identity,
            result,
            reason="removed",
            removed_by=sender.identity,
        )

    def _handle_end_room(self, room, sender, envelope, result) -> None:
        if self.lifecycle is None:
            raise RuntimeError("Event router is not bound to a lifecycle manager.")
        self.lifecycle.begin_ending(room, result, requested_by=sender.identity)
        result.response = {"room": room.to_payload()}


def describe_failure(exc: RoomSessionError) -> Dict[str, Any]:
    """Shape a failure for the sender's channel."""
    return {"type": "error", "payload": exc.to_payload()}


def _describe_validation_error(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "payload")
        message = error.get("msg", "invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages) or InvalidEvent.default_message


def decode_event(
    raw: Any,
    *,
    room_id: str,
    sender_identity: str,
    sender_role: Any = None,
    sender_display_name: Optional[str] = None,
) -> EventEnvelope:
    """Decode a raw ``{type, payload}`` message, rejecting unknown or malformed shapes."""
    if not isinstance(raw, dict):
        raise InvalidEvent("Events must be JSON objects.", room_id=room_id)

    event_type = raw.get("type")
    if not isinstance(event_type, str):
        raise InvalidEvent("Event type must be a string.", room_id=room_id)
    if event_type not in {member.value for member in EventType}:
        raise InvalidEvent(f"Unknown event type '{event_type}'.", room_id=room_id)

    payload = raw.get("payload")
    if payload is None:
        payload = {}
    try:
        event = inbound_event_adapter.validate_python(
            {"type": event_type, "payload": payload}
        )
    except ValidationError as exc:
        raise InvalidEvent(
            f"Malformed '{event_type}' event: {_describe_validation_error(exc)}",
            room_id=room_id,
        ) from exc

    return EventEnvelope(
        room_id=room_id,
        sender_identity=sender_identity,
        sender_role=sender_role,
        sender_display_name=sender_display_name,
        event=event,
    )
