from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional

from app.services.errors import InvalidEvent, NotFound, RoomClosed, Unauthorized
from app.services.event_router import SYSTEM_IDENTITY, DispatchResult, EventRouter
from app.services.poll_engine import PollEngine
from app.services.roster_store import (
    ParticipantRole,
    Room,
    RoomState,
    RosterStore,
    normalize_role,
)

logger = logging.getLogger(__name__)

DEFAULT_DISCONNECT_TIMEOUT_SECONDS = 30
DEFAULT_EMPTY_ROOM_GRACE_SECONDS = 60
DEFAULT_CLOSED_RETENTION_SECONDS = 120


class SessionLifecycleManager:
    """Room open/close semantics and reconciliation with the media transport.

    The manager is synchronous: each call either succeeds or raises a typed
    failure, and callers own any retry policy. Transport notifications are
    applied as if the system itself had sent them, so they skip the
    authority checks the event router performs for people.
    """

    def __init__(
        self,
        roster: RosterStore,
        polls: PollEngine,
        router: EventRouter,
        *,
        disconnect_timeout_seconds: int = DEFAULT_DISCONNECT_TIMEOUT_SECONDS,
        empty_room_grace_seconds: int = DEFAULT_EMPTY_ROOM_GRACE_SECONDS,
        closed_retention_seconds: int = DEFAULT_CLOSED_RETENTION_SECONDS,
    ) -> None:
        self.roster = roster
        self.polls = polls
        self.router = router
        self.disconnect_timeout = timedelta(seconds=disconnect_timeout_seconds)
        self.empty_room_grace = timedelta(seconds=empty_room_grace_seconds)
        self.closed_retention = timedelta(seconds=closed_retention_seconds)
        router.bind_lifecycle(self)

    # Creation and teardown

    def create_room(
        self,
        room_id: str,
        instructor_identity: str,
        display_name: Optional[str] = None,
        *,
        role: Any = ParticipantRole.INSTRUCTOR,
    ) -> Room:
        room_id = (room_id or "").strip()
        if not room_id:
            raise InvalidEvent("A room name is required.")
        if normalize_role(role) != ParticipantRole.INSTRUCTOR:
            raise Unauthorized(room_id=room_id, identity=instructor_identity)

        with self.roster.lock_for(room_id):
            room = self.roster.get_room(room_id)
            if room is not None:
                if room.state != RoomState.OPEN:
                    raise RoomClosed(room_id=room_id, identity=instructor_identity)
                if room.instructor_identity != instructor_identity:
                    raise Unauthorized(
                        "This room belongs to another instructor.",
                        room_id=room_id,
                        identity=instructor_identity,
                    )
                self.roster.upsert_participant(
                    room_id, instructor_identity, ParticipantRole.INSTRUCTOR, display_name
                )
                return room

            room = self.roster.create_room(room_id, instructor_identity)
            self.roster.upsert_participant(
                room_id, instructor_identity, ParticipantRole.INSTRUCTOR, display_name
            )
        logger.info(
            "Room opened: room_id=%s instructor=%s", room_id, instructor_identity
        )
        return room

    def begin_ending(
        self,
        room: Room,
        result: DispatchResult,
        *,
        requested_by: Optional[str] = None,
    ) -> None:
        """Move an open room to ``ending`` and announce it to everyone in it."""
        if room.state != RoomState.OPEN:
            return
        room.state = RoomState.ENDING
        room.ended_at = self.roster.now()
        for poll in self.polls.list_polls(room.room_id):
            if poll.active:
                self.polls.close_poll(room.room_id, poll.poll_id)
        self.router.queue(
            result,
            "room_ending",
            {"room": room.to_payload(), "requestedBy": requested_by},
        )
        logger.info("Room ending: room_id=%s requested_by=%s", room.room_id, requested_by)
        self.close_if_drained(room, result)

    def close_if_drained(
        self,
        room: Room,
        result: DispatchResult,
        *,
        notify: Iterable[str] = (),
    ) -> None:
        if room.state != RoomState.ENDING:
            return
        if len(self.roster.list_participants(room.room_id)) == 0:
            self.close_room(room, result, notify=notify)

    def close_room(
        self,
        room: Room,
        result: DispatchResult,
        *,
        notify: Iterable[str] = (),
    ) -> None:
        if room.state == RoomState.CLOSED:
            return
        now = self.roster.now()
        room.state = RoomState.CLOSED
        room.closed_at = now
        if room.ended_at is None:
            room.ended_at = now
        for poll in self.polls.list_polls(room.room_id):
            if poll.active:
                self.polls.close_poll(room.room_id, poll.poll_id)
        self.router.queue(
            result,
            "room_closed",
            {"room": room.to_payload()},
            extra_recipients=notify,
        )
        logger.info("Room closed: room_id=%s", room.room_id)

    # Transport reconciliation

    def transport_participant_joined(
        self,
        room_id: str,
        identity: str,
        display_name: Optional[str] = None,
    ) -> DispatchResult:
        result = DispatchResult(room_id=room_id, event_type="transportJoined")
        with self.roster.lock_for(room_id):
            room = self.roster.require_room(room_id)
            if room.state != RoomState.OPEN:
                raise RoomClosed(room_id=room_id, identity=identity)
            existing = self.roster.get_participant(room_id, identity)
            if existing is not None:
                participant = self.roster.touch_participant(room_id, identity)
            else:
                participant = self.roster.upsert_participant(
                    room_id, identity, self.roster.role_for(room, identity), display_name
                )
                self.router.queue(
                    result,
                    "participant_joined",
                    {
                        "participant": participant.to_payload(),
                        "participants": self.router.roster_payload(room_id),
                    },
                )
            result.response = {"participant": participant.to_payload()}
        self.router.deliver(result.deliveries)
        return result

    def transport_participant_left(
        self, room_id: str, identity: str
    ) -> Optional[DispatchResult]:
        """Apply a transport-reported departure; duplicates and late arrivals are no-ops."""
        result = DispatchResult(room_id=room_id, event_type="transportLeft")
        with self.roster.lock_for(room_id):
            room = self.roster.get_room(room_id)
            if room is None or room.state == RoomState.CLOSED:
                logger.debug(
                    "Ignoring transport leave for room_id=%s identity=%s (room gone)",
                    room_id,
                    identity,
                )
                return None
            if self.roster.get_participant(room_id, identity) is None:
                logger.debug(
                    "Ignoring duplicate transport leave for room_id=%s identity=%s",
                    room_id,
                    identity,
                )
                return None
            self.router.remove_and_queue(
                room,
                identity,
                result,
                reason="disconnected",
                removed_by=SYSTEM_IDENTITY,
            )
        logger.info(
            "Transport reported participant left: room_id=%s identity=%s",
            room_id,
            identity,
        )
        self.router.deliver(result.deliveries)
        return result

    def transport_heartbeat(self, room_id: str, identity: str) -> bool:
        """Renew a participant's last-seen signal. Returns False when nothing matched."""
        with self.roster.lock_for(room_id):
            room = self.roster.get_room(room_id)
            if room is None or room.state == RoomState.CLOSED:
                return False
            try:
                self.roster.touch_participant(room_id, identity)
            except NotFound:
                logger.debug(
                    "Heartbeat for unknown participant room_id=%s identity=%s",
                    room_id,
                    identity,
                )
                return False
            return True

    def connection_lost(self, room_id: str, identity: str) -> Optional[DispatchResult]:
        """Mark a participant disconnected; removal is left to the last-seen timeout."""
        result = DispatchResult(room_id=room_id, event_type="connectionLost")
        with self.roster.lock_for(room_id):
            room = self.roster.get_room(room_id)
            if room is None or room.state == RoomState.CLOSED:
                return None
            participant = self.roster.mark_disconnected(room_id, identity)
            if participant is None:
                return None
            self.router.queue(
                result,
                "participant_updated",
                {"participant": participant.to_payload(), "change": "connectionState"},
            )
        self.router.deliver(result.deliveries)
        return result

    # Timers

    def sweep(self, now: Optional[datetime] = None) -> List[DispatchResult]:
        """Expire stale participants, close abandoned rooms and purge closed ones."""
        now = now or self.roster.now()
        results: List[DispatchResult] = []
        purge: List[str] = []
        for room_id in self.roster.room_ids():
            result = DispatchResult(room_id=room_id, event_type="sweep")
            with self.roster.lock_for(room_id):
                room = self.roster.get_room(room_id)
                if room is None:
                    continue
                if room.state == RoomState.CLOSED:
                    if room.closed_at and room.closed_at + self.closed_retention <= now:
                        purge.append(room_id)
                    continue

                cutoff = now - self.disconnect_timeout
                for identity in self.roster.stale_identities(room_id, cutoff):
                    logger.info(
                        "Participant timed out: room_id=%s identity=%s",
                        room_id,
                        identity,
                    )
                    self.router.remove_and_queue(
                        room,
                        identity,
                        result,
                        reason="timeout",
                        removed_by=SYSTEM_IDENTITY,
                    )

                if (
                    room.state == RoomState.OPEN
                    and room.empty_since is not None
                    and len(self.roster.list_participants(room_id)) == 0
                    and room.empty_since + self.empty_room_grace <= now
                ):
                    self.close_room(room, result)

            if result.deliveries:
                self.router.deliver(result.deliveries)
                results.append(result)

        for room_id in purge:
            self.polls.drop_room(room_id)
            self.roster.purge_room(room_id)
        return results
