from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

from app.schemas.rooms import (
    ConnectionState,
    ParticipantRole,
    RoomState,
    normalize_role,
)
from app.services.errors import NotFound, Unauthorized

logger = logging.getLogger(__name__)

JSONCompatibleDict = Dict[str, Any]
Clock = Callable[[], datetime]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Room:
    room_id: str
    instructor_identity: str
    state: RoomState = RoomState.OPEN
    created_at: datetime = field(default_factory=_now)
    ended_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    empty_since: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.state == RoomState.OPEN

    def to_payload(self) -> JSONCompatibleDict:
        return {
            "roomId": self.room_id,
            "state": self.state.value,
            "instructorIdentity": self.instructor_identity,
            "createdAt": self.created_at.isoformat(),
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
            "closedAt": self.closed_at.isoformat() if self.closed_at else None,
        }


@dataclass
class Participant:
    room_id: str
    identity: str
    display_name: str
    role: ParticipantRole
    connection_state: ConnectionState = ConnectionState.CONNECTED
    can_publish: bool = False
    can_subscribe: bool = True
    muted: bool = False
    hand_raised: bool = False
    joined_at: datetime = field(default_factory=_now)
    last_seen: datetime = field(default_factory=_now)

    @property
    def is_instructor(self) -> bool:
        return self.role == ParticipantRole.INSTRUCTOR

    def to_payload(self) -> JSONCompatibleDict:
        return {
            "identity": self.identity,
            "displayName": self.display_name,
            "role": self.role.value,
            "connectionState": self.connection_state.value,
            "canPublish": self.can_publish,
            "canSubscribe": self.can_subscribe,
            "muted": self.muted,
            "handRaised": self.hand_raised,
            "joinedAt": self.joined_at.isoformat(),
            "lastSeen": self.last_seen.isoformat(),
        }


class ParticipantSequence:
    """Restartable view over a room roster.

    Each iteration takes a fresh snapshot of the roster in join order, so a
    sequence obtained before a join or leave reflects it on the next pass.
    """

    def __init__(self, store: "RosterStore", room_id: str) -> None:
        self._store = store
        self._room_id = room_id

    def __iter__(self) -> Iterator[Participant]:
        yield from self._store._snapshot(self._room_id)

    def __len__(self) -> int:
        return len(self._store._snapshot(self._room_id))

    def identities(self) -> List[str]:
        return [participant.identity for participant in self]


class RosterStore:
    """Single source of truth for who is in which room, with what permissions.

    Every room owns one re-entrant lock. Callers that read-modify-write a
    room (the event router and the lifecycle manager) hold it for the whole
    sequence; the individual operations below also take it so they stay
    atomic when called on their own.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock: Clock = clock or _now
        self._rooms: Dict[str, Room] = {}
        self._participants: Dict[str, Dict[str, Participant]] = {}
        self._former_identities: Dict[str, Set[str]] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    def lock_for(self, room_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(room_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[room_id] = lock
            return lock

    # Rooms

    def create_room(self, room_id: str, instructor_identity: str) -> Room:
        with self.lock_for(room_id):
            room = Room(
                room_id=room_id,
                instructor_identity=instructor_identity,
                created_at=self.now(),
            )
            self._rooms[room_id] = room
            self._participants[room_id] = {}
            self._former_identities[room_id] = set()
            return room

    def get_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def require_room(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise NotFound(f"Room '{room_id}' not found.", room_id=room_id)
        return room

    def room_ids(self) -> List[str]:
        return list(self._rooms.keys())

    def purge_room(self, room_id: str) -> None:
        with self.lock_for(room_id):
            self._rooms.pop(room_id, None)
            self._participants.pop(room_id, None)
            self._former_identities.pop(room_id, None)
        with self._registry_lock:
            self._locks.pop(room_id, None)
        logger.debug("Purged roster for room_id=%s", room_id)

    # Participants

    def upsert_participant(
        self,
        room_id: str,
        identity: str,
        role: Any,
        display_name: Optional[str] = None,
    ) -> Participant:
        """Insert a participant, or renew last-seen for an existing one."""
        with self.lock_for(room_id):
            room = self.require_room(room_id)
            roster = self._participants[room_id]
            now = self.now()
            participant = roster.get(identity)
            if participant is not None:
                participant.last_seen = now
                participant.connection_state = ConnectionState.CONNECTED
                return participant

            resolved_role = self.role_for(room, identity, role)
            participant = Participant(
                room_id=room_id,
                identity=identity,
                display_name=(display_name or "").strip() or identity,
                role=resolved_role,
                can_publish=resolved_role == ParticipantRole.INSTRUCTOR,
                joined_at=now,
                last_seen=now,
            )
            roster[identity] = participant
            self._former_identities[room_id].add(identity)
            room.empty_since = None
            logger.debug(
                "Participant joined: room_id=%s identity=%s role=%s",
                room_id,
                identity,
                resolved_role.value,
            )
            return participant

    def remove_participant(self, room_id: str, identity: str) -> Participant:
        with self.lock_for(room_id):
            room = self.require_room(room_id)
            roster = self._participants[room_id]
            participant = roster.pop(identity, None)
            if participant is None:
                logger.debug(
                    "Remove of absent participant: room_id=%s identity=%s",
                    room_id,
                    identity,
                )
                raise NotFound(
                    f"Participant '{identity}' is not in room '{room_id}'.",
                    room_id=room_id,
                    identity=identity,
                )
            if not roster:
                room.empty_since = self.now()
            return participant

    def get_participant(self, room_id: str, identity: str) -> Optional[Participant]:
        return self._participants.get(room_id, {}).get(identity)

    def require_participant(self, room_id: str, identity: str) -> Participant:
        participant = self.get_participant(room_id, identity)
        if participant is None:
            raise NotFound(
                f"Participant '{identity}' is not in room '{room_id}'.",
                room_id=room_id,
                identity=identity,
            )
        return participant

    def list_participants(self, room_id: str) -> ParticipantSequence:
        self.require_room(room_id)
        return ParticipantSequence(self, room_id)

    def _snapshot(self, room_id: str) -> List[Participant]:
        with self.lock_for(room_id):
            return list(self._participants.get(room_id, {}).values())

    def was_participant(self, room_id: str, identity: str) -> bool:
        return identity in self._former_identities.get(room_id, set())

    def role_for(self, room: Room, identity: str, claimed_role: Any = None) -> ParticipantRole:
        """Role a new roster entry gets.

        The room's own instructor is always an instructor. Anyone else gets
        the role the identity collaborator vouched for; transport
        notifications carry no such claim, so those entries are students.
        """
        if identity == room.instructor_identity:
            return ParticipantRole.INSTRUCTOR
        return normalize_role(claimed_role)

    def _require_instructor(self, room_id: str, actor: str) -> None:
        caller = self.get_participant(room_id, actor)
        if caller is None or not caller.is_instructor:
            raise Unauthorized(room_id=room_id, identity=actor)

    def set_publish_permission(
        self,
        room_id: str,
        identity: str,
        can_publish: bool,
        *,
        actor: str,
    ) -> Participant:
        return self.set_permissions(room_id, identity, actor=actor, can_publish=can_publish)

    def set_permissions(
        self,
        room_id: str,
        identity: str,
        *,
        actor: str,
        can_publish: Optional[bool] = None,
        can_subscribe: Optional[bool] = None,
    ) -> Participant:
        """Instructor-only media permission change; ``None`` leaves a flag as is."""
        with self.lock_for(room_id):
            self.require_room(room_id)
            self._require_instructor(room_id, actor)
            target = self.require_participant(room_id, identity)
            if can_publish is not None:
                target.can_publish = bool(can_publish)
            if can_subscribe is not None:
                target.can_subscribe = bool(can_subscribe)
            return target

    def set_muted(
        self,
        room_id: str,
        identity: str,
        muted: bool,
        *,
        actor: str,
    ) -> Participant:
        with self.lock_for(room_id):
            self.require_room(room_id)
            self._require_instructor(room_id, actor)
            target = self.require_participant(room_id, identity)
            target.muted = bool(muted)
            return target

    def set_hand_raised(
        self,
        room_id: str,
        identity: str,
        raised: bool,
        *,
        actor: Optional[str] = None,
    ) -> Participant:
        with self.lock_for(room_id):
            self.require_room(room_id)
            if actor is not None and actor != identity:
                raise Unauthorized(
                    "You can only raise or lower your own hand.",
                    room_id=room_id,
                    identity=actor,
                )
            participant = self.require_participant(room_id, identity)
            participant.hand_raised = bool(raised)
            return participant

    def get_hand_raised(self, room_id: str, identity: str) -> bool:
        return self.require_participant(room_id, identity).hand_raised

    def touch_participant(
        self, room_id: str, identity: str, *, connected: bool = True
    ) -> Participant:
        with self.lock_for(room_id):
            participant = self.require_participant(room_id, identity)
            participant.last_seen = self.now()
            if connected:
                participant.connection_state = ConnectionState.CONNECTED
            return participant

    def mark_disconnected(self, room_id: str, identity: str) -> Optional[Participant]:
        with self.lock_for(room_id):
            participant = self.get_participant(room_id, identity)
            if participant is not None:
                participant.connection_state = ConnectionState.DISCONNECTED
            return participant

    def stale_identities(self, room_id: str, cutoff: datetime) -> List[str]:
        """Identities whose last-seen signal is older than ``cutoff``."""
        return [
            participant.identity
            for participant in self._snapshot(room_id)
            if participant.last_seen < cutoff
        ]
