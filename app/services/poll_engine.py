from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from app.services.errors import (
    InvalidOption,
    InvalidPoll,
    NotAParticipant,
    PollInactive,
    PollNotFound,
)
from app.services.roster_store import JSONCompatibleDict, RosterStore

logger = logging.getLogger(__name__)

MIN_POLL_OPTIONS = 2


@dataclass
class Poll:
    room_id: str
    poll_id: str
    question: str
    options: List[str]
    created_at: datetime
    created_by: Optional[str] = None
    active: bool = True
    votes: Dict[str, int] = field(default_factory=dict)
    closed_at: Optional[datetime] = None

    def to_payload(self) -> JSONCompatibleDict:
        return {
            "roomId": self.room_id,
            "pollId": self.poll_id,
            "question": self.question,
            "options": list(self.options),
            "active": self.active,
            "createdBy": self.created_by,
            "createdAt": self.created_at.isoformat(),
            "closedAt": self.closed_at.isoformat() if self.closed_at else None,
        }


@dataclass(frozen=True)
class PollTally:
    poll_id: str
    question: str
    options: Sequence[str]
    counts: Sequence[int]
    active: bool

    @property
    def total_votes(self) -> int:
        return sum(self.counts)

    def as_dict(self) -> Dict[str, int]:
        """Counts keyed by option label (later duplicates collapse together)."""
        result: Dict[str, int] = {}
        for label, count in zip(self.options, self.counts):
            result[label] = result.get(label, 0) + count
        return result

    def to_payload(self) -> JSONCompatibleDict:
        return {
            "pollId": self.poll_id,
            "question": self.question,
            "active": self.active,
            "totalVotes": self.total_votes,
            "options": [
                {"index": index, "label": label, "votes": count}
                for index, (label, count) in enumerate(zip(self.options, self.counts))
            ],
        }


class PollEngine:
    """Poll lifecycle and tallying, scoped per room.

    Authority checks for creating and closing polls happen in the event
    router; this engine only enforces poll shape, vote validity and voter
    membership.
    """

    def __init__(self, roster: RosterStore) -> None:
        self._roster = roster
        # Key: room_id, Value: {poll_id: Poll} in creation order
        self._polls: Dict[str, Dict[str, Poll]] = {}

    @staticmethod
    def _normalize_options(options: Any) -> List[str]:
        if not isinstance(options, (list, tuple)):
            return []
        return [str(option).strip() for option in options if option is not None]

    def create_poll(
        self,
        room_id: str,
        question: str,
        options: Sequence[str],
        *,
        created_by: Optional[str] = None,
    ) -> Poll:
        cleaned_question = (question or "").strip()
        cleaned_options = self._normalize_options(options)
        if not cleaned_question:
            raise InvalidPoll("A poll needs a question.", room_id=room_id)
        if len(cleaned_options) < MIN_POLL_OPTIONS or not all(cleaned_options):
            raise InvalidPoll(
                "A poll needs at least two options and none of them may be empty.",
                room_id=room_id,
            )

        with self._roster.lock_for(room_id):
            self._roster.require_room(room_id)
            poll = Poll(
                room_id=room_id,
                poll_id=uuid4().hex,
                question=cleaned_question,
                options=cleaned_options,
                created_at=self._roster.now(),
                created_by=created_by,
            )
            self._polls.setdefault(room_id, {})[poll.poll_id] = poll
        logger.debug("Poll created: room_id=%s poll_id=%s", room_id, poll.poll_id)
        return poll

    def get_poll(self, room_id: str, poll_id: str) -> Poll:
        poll = self._polls.get(room_id, {}).get(poll_id)
        if poll is None:
            raise PollNotFound(room_id=room_id)
        return poll

    def list_polls(self, room_id: str) -> List[Poll]:
        return list(self._polls.get(room_id, {}).values())

    def cast_vote(
        self,
        room_id: str,
        poll_id: str,
        voter_identity: str,
        option_index: int,
    ) -> PollTally:
        """Record the voter's choice, replacing any earlier vote, and return the tally."""
        with self._roster.lock_for(room_id):
            poll = self.get_poll(room_id, poll_id)
            if not poll.active:
                raise PollInactive(room_id=room_id, identity=voter_identity)
            if isinstance(option_index, bool) or not isinstance(option_index, int):
                raise InvalidOption(room_id=room_id, identity=voter_identity)
            if option_index < 0 or option_index >= len(poll.options):
                raise InvalidOption(room_id=room_id, identity=voter_identity)
            if not self._roster.was_participant(room_id, voter_identity):
                raise NotAParticipant(room_id=room_id, identity=voter_identity)
            poll.votes[voter_identity] = option_index
            return self._tally(poll)

    def tally(self, room_id: str, poll_id: str) -> PollTally:
        with self._roster.lock_for(room_id):
            return self._tally(self.get_poll(room_id, poll_id))

    @staticmethod
    def _tally(poll: Poll) -> PollTally:
        counts = [0] * len(poll.options)
        for option_index in poll.votes.values():
            counts[option_index] += 1
        return PollTally(
            poll_id=poll.poll_id,
            question=poll.question,
            options=tuple(poll.options),
            counts=tuple(counts),
            active=poll.active,
        )

    def close_poll(self, room_id: str, poll_id: str) -> PollTally:
        with self._roster.lock_for(room_id):
            poll = self.get_poll(room_id, poll_id)
            if poll.active:
                poll.active = False
                poll.closed_at = self._roster.now()
            return self._tally(poll)

    def drop_room(self, room_id: str) -> None:
        self._polls.pop(room_id, None)
