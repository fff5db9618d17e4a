from concurrent.futures import ThreadPoolExecutor

import pytest

from app.schemas.events import EventType
from app.schemas.rooms import RoomState
from app.services import build_room_services
from app.services.errors import (
    NotAParticipant,
    NotFound,
    PollInactive,
    RoomClosed,
    Unauthorized,
)
from app.services.event_router import decode_event


def test_join_announces_new_participants_once(live_room, services, send_event, broadcaster):
    joined = broadcaster.messages("participant_joined")
    assert [m["payload"]["participant"]["identity"] for m in joined] == ["s1", "s2"]
    assert broadcaster.recipients_of("participant_joined")[-1] == ["inst", "s1", "s2"]

    result = send_event("room-1", "s1", "join", {"displayName": "Renamed"})

    assert len(broadcaster.messages("participant_joined")) == 2
    assert result.deliveries == []
    assert result.response["participant"]["displayName"] == "Sam"
    assert [p["identity"] for p in result.response["participants"]] == ["inst", "s1", "s2"]


def test_join_snapshot_includes_polls(live_room, send_event):
    send_event(
        "room-1", "inst", "createPoll",
        {"question": "Ready?", "options": ["Yes", "No"]}, role="instructor",
    )

    result = send_event("room-1", "late", "join", {"displayName": "Late Larry"})

    assert result.response["room"]["state"] == "open"
    assert len(result.response["polls"]) == 1
    assert result.response["polls"][0]["poll"]["question"] == "Ready?"
    assert result.response["polls"][0]["tally"]["totalVotes"] == 0


def test_raise_hand_is_broadcast_to_everyone(live_room, services, send_event, broadcaster):
    result = send_event("room-1", "s1", "raiseHand")

    assert services.roster.get_hand_raised("room-1", "s1") is True
    message = broadcaster.last("participant_updated")
    assert message["roomId"] == "room-1"
    assert message["payload"]["change"] == "handRaised"
    assert message["payload"]["participant"]["identity"] == "s1"
    assert message["payload"]["participant"]["handRaised"] is True
    assert broadcaster.recipients_of("participant_updated")[-1] == ["inst", "s1", "s2"]
    assert result.messages == [message]

    send_event("room-1", "s1", "lowerHand")
    assert services.roster.get_hand_raised("room-1", "s1") is False


def test_cannot_raise_someone_elses_hand(live_room, services, send_event, broadcaster):
    before = len(broadcaster.published)

    with pytest.raises(Unauthorized):
        send_event("room-1", "s2", "raiseHand", {"identity": "s1"})

    assert services.roster.get_hand_raised("room-1", "s1") is False
    assert len(broadcaster.published) == before


def test_poll_flow_with_last_vote_wins(live_room, services, send_event, broadcaster):
    created = send_event(
        "room-1", "inst", "createPoll",
        {"question": "Best structure?", "options": ["List", "Tree"]}, role="instructor",
    )
    poll_id = created.response["poll"]["pollId"]
    assert broadcaster.last("poll_created")["payload"]["poll"]["pollId"] == poll_id

    send_event("room-1", "s1", "castVote", {"pollId": poll_id, "optionIndex": 0})
    send_event("room-1", "s2", "castVote", {"pollId": poll_id, "optionIndex": 1})
    changed = send_event("room-1", "s1", "castVote", {"pollId": poll_id, "optionIndex": 1})

    assert [o["votes"] for o in changed.response["tally"]["options"]] == [0, 2]
    assert len(broadcaster.messages("poll_updated")) == 3
    assert broadcaster.last("poll_updated")["payload"]["tally"]["totalVotes"] == 2

    closed = send_event("room-1", "inst", "closePoll", {"pollId": poll_id}, role="instructor")
    assert closed.response["poll"]["active"] is False
    assert broadcaster.last("poll_closed")["payload"]["tally"]["active"] is False

    with pytest.raises(PollInactive):
        send_event("room-1", "s2", "castVote", {"pollId": poll_id, "optionIndex": 0})


@pytest.mark.parametrize(
    "event_type, payload",
    [
        ("createPoll", {"question": "Q?", "options": ["A", "B"]}),
        ("closePoll", {"pollId": "whatever"}),
        ("setPermission", {"identity": "s2", "canPublish": True}),
        ("removeParticipant", {"identity": "s2"}),
        ("muteParticipant", {"identity": "s2"}),
        ("endRoom", {}),
    ],
)
def test_students_cannot_use_instructor_controls(
    live_room, services, send_event, broadcaster, event_type, payload
):
    before = len(broadcaster.published)

    with pytest.raises(Unauthorized):
        send_event("room-1", "s1", event_type, payload)

    assert len(broadcaster.published) == before
    assert services.roster.get_participant("room-1", "s2") is not None
    assert live_room.state == RoomState.OPEN


def test_claimed_instructor_role_does_not_override_roster(live_room, send_event):
    # Authority comes from the roster entry made at join time.
    with pytest.raises(Unauthorized):
        send_event("room-1", "s1", "endRoom", role="instructor")


def test_instructor_removes_participant(live_room, services, send_event, broadcaster):
    send_event("room-1", "inst", "removeParticipant", {"identity": "s2"}, role="instructor")

    assert services.roster.get_participant("room-1", "s2") is None
    message = broadcaster.last("participant_left")
    assert message["payload"]["identity"] == "s2"
    assert message["payload"]["reason"] == "removed"
    assert message["payload"]["removedBy"] == "inst"
    assert [p["identity"] for p in message["payload"]["participants"]] == ["inst", "s1"]
    # The removed person is told as well.
    assert broadcaster.recipients_of("participant_left")[-1] == ["inst", "s1", "s2"]

    with pytest.raises(NotAParticipant):
        send_event("room-1", "s2", "raiseHand")
    with pytest.raises(NotFound):
        send_event("room-1", "inst", "removeParticipant", {"identity": "s2"}, role="instructor")


def test_non_participants_are_rejected(live_room, send_event):
    with pytest.raises(NotAParticipant):
        send_event("room-1", "outsider", "sendReaction", {"emoji": "👍"})
    with pytest.raises(NotAParticipant):
        send_event("room-1", "outsider", "leave")


def test_events_for_unknown_rooms_are_not_found(services, send_event):
    with pytest.raises(NotFound):
        send_event("nowhere", "s1", "join")


def test_permission_grant(live_room, services, send_event, broadcaster):
    send_event(
        "room-1", "inst", "setPermission",
        {"identity": "s1", "canPublish": True}, role="instructor",
    )

    assert services.roster.get_participant("room-1", "s1").can_publish is True
    message = broadcaster.last("participant_updated")
    assert message["payload"]["change"] == "canPublish"
    assert message["payload"]["participant"]["canPublish"] is True


def test_permission_change_can_revoke_subscribing(live_room, services, send_event, broadcaster):
    send_event(
        "room-1", "inst", "setPermission",
        {"identity": "s2", "canPublish": True, "canSubscribe": False}, role="instructor",
    )

    participant = services.roster.get_participant("room-1", "s2")
    assert participant.can_publish is True
    assert participant.can_subscribe is False
    message = broadcaster.last("participant_updated")
    assert message["payload"]["change"] == "permissions"
    assert message["payload"]["participant"]["canSubscribe"] is False

    send_event(
        "room-1", "inst", "setPermission",
        {"identity": "s2", "canPublish": False}, role="instructor",
    )
    # Omitted flags keep their current value.
    assert participant.can_subscribe is False
    assert broadcaster.last("participant_updated")["payload"]["change"] == "canPublish"


def test_instructor_mutes_and_unmutes_participant(live_room, services, send_event, broadcaster):
    muted = send_event(
        "room-1", "inst", "muteParticipant",
        {"identity": "s1", "trackSid": "TR_audio"}, role="instructor",
    )

    assert services.roster.get_participant("room-1", "s1").muted is True
    assert muted.response["participant"]["muted"] is True
    message = broadcaster.last("participant_updated")
    assert message["payload"]["change"] == "muted"
    assert message["payload"]["trackSid"] == "TR_audio"
    assert message["payload"]["participant"]["identity"] == "s1"
    assert broadcaster.recipients_of("participant_updated")[-1] == ["inst", "s1", "s2"]

    send_event(
        "room-1", "inst", "muteParticipant", {"identity": "s1", "muted": False}, role="instructor"
    )
    assert services.roster.get_participant("room-1", "s1").muted is False
    assert broadcaster.last("participant_updated")["payload"]["trackSid"] is None

    with pytest.raises(NotFound):
        send_event("room-1", "inst", "muteParticipant", {"identity": "ghost"}, role="instructor")


def test_reactions_and_chat_are_broadcast(live_room, send_event, broadcaster):
    reaction = send_event("room-1", "s1", "sendReaction", {"emoji": "🎉"})
    chat = send_event("room-1", "s2", "chatMessage", {"message": " question about slide 4 "})

    sent = broadcaster.last("reaction")["payload"]
    assert sent == reaction.response["reaction"]
    assert sent["emoji"] == "🎉"
    assert sent["senderIdentity"] == "s1"
    assert sent["displayName"] == "Sam"
    assert sent["ttlSeconds"] == 4

    said = broadcaster.last("chat_message")["payload"]
    assert said == chat.response["message"]
    assert said["message"] == "question about slide 4"
    assert said["displayName"] == "Ada"


def test_ending_room_drains_then_closes(live_room, services, send_event, broadcaster):
    created = send_event(
        "room-1", "inst", "createPoll",
        {"question": "Ready?", "options": ["Yes", "No"]}, role="instructor",
    )
    poll_id = created.response["poll"]["pollId"]

    ended = send_event("room-1", "inst", "endRoom", role="instructor")

    assert ended.response["room"]["state"] == "ending"
    assert live_room.state == RoomState.ENDING
    assert broadcaster.last("room_ending")["payload"]["requestedBy"] == "inst"
    assert services.polls.get_poll("room-1", poll_id).active is False

    with pytest.raises(RoomClosed):
        send_event("room-1", "s1", "raiseHand")
    with pytest.raises(RoomClosed):
        send_event("room-1", "newcomer", "join")

    send_event("room-1", "s1", "leave")
    send_event("room-1", "s2", "leave")
    assert live_room.state == RoomState.ENDING

    send_event("room-1", "inst", "leave", role="instructor")

    assert live_room.state == RoomState.CLOSED
    assert live_room.closed_at is not None
    assert broadcaster.last("room_closed")["payload"]["room"]["state"] == "closed"
    assert broadcaster.recipients_of("room_closed")[-1] == ["inst"]

    for event_type in ("join", "leave", "raiseHand"):
        with pytest.raises(RoomClosed):
            send_event("room-1", "inst", event_type, role="instructor")


class _ExplodingBroadcaster:
    def publish(self, room_id, recipients, message):
        raise RuntimeError("socket layer down")


def test_broadcast_failures_do_not_undo_state(clock):
    services = build_room_services(
        _ExplodingBroadcaster(),
        clock=clock,
        settings={
            "disconnect_timeout_seconds": 30,
            "empty_room_grace_seconds": 60,
            "closed_retention_seconds": 120,
            "reaction_ttl_seconds": 4,
            "sweep_interval_seconds": 5,
        },
    )
    services.lifecycle.create_room("room-1", "inst")
    envelope = decode_event(
        {"type": "join", "payload": {}},
        room_id="room-1",
        sender_identity="s1",
        sender_role="student",
    )

    result = services.router.dispatch(envelope)

    assert result.messages[0]["type"] == "participant_joined"
    assert services.roster.get_participant("room-1", "s1") is not None


VALID_EVENTS = [
    ("join", {}),
    ("leave", {}),
    ("raiseHand", {}),
    ("lowerHand", {}),
    ("sendReaction", {"emoji": "👍"}),
    ("chatMessage", {"message": "hello?"}),
    ("createPoll", {"question": "Still here?", "options": ["Yes", "No"]}),
    ("castVote", {"pollId": "poll-1", "optionIndex": 0}),
    ("closePoll", {"pollId": "poll-1"}),
    ("setPermission", {"identity": "s1", "canPublish": True}),
    ("removeParticipant", {"identity": "s1"}),
    ("muteParticipant", {"identity": "s1"}),
    ("endRoom", {}),
]


def test_every_event_type_is_covered():
    assert {event_type for event_type, _ in VALID_EVENTS} == {member.value for member in EventType}


def _roster_snapshot(services, room_id):
    return [participant.to_payload() for participant in services.roster.list_participants(room_id)]


@pytest.fixture
def closed_room(live_room, services, send_event):
    send_event("room-1", "inst", "endRoom", role="instructor")
    for identity in ("s1", "s2", "inst"):
        send_event("room-1", identity, "leave")
    assert live_room.state == RoomState.CLOSED
    return live_room


@pytest.mark.parametrize("event_type, payload", VALID_EVENTS)
@pytest.mark.parametrize("identity, role", [("inst", "instructor"), ("s1", "student")])
def test_closed_room_rejects_every_event_without_side_effects(
    closed_room, services, send_event, broadcaster, event_type, payload, identity, role
):
    published = len(broadcaster.published)
    roster = _roster_snapshot(services, "room-1")
    room = closed_room.to_payload()

    with pytest.raises(RoomClosed):
        send_event("room-1", identity, event_type, payload, role=role)

    assert len(broadcaster.published) == published
    assert _roster_snapshot(services, "room-1") == roster
    assert closed_room.to_payload() == room
    assert services.polls.list_polls("room-1") == []


@pytest.mark.parametrize(
    "event_type, payload", [item for item in VALID_EVENTS if item[0] != "leave"]
)
def test_ending_room_only_accepts_leave(
    live_room, services, send_event, broadcaster, event_type, payload
):
    send_event("room-1", "inst", "endRoom", role="instructor")
    published = len(broadcaster.published)
    roster = _roster_snapshot(services, "room-1")

    with pytest.raises(RoomClosed):
        send_event("room-1", "inst", event_type, payload, role="instructor")

    assert len(broadcaster.published) == published
    assert _roster_snapshot(services, "room-1") == roster
    assert live_room.state == RoomState.ENDING


def test_room_instructor_rejoins_as_instructor_whatever_the_claim(
    live_room, services, send_event
):
    send_event("room-1", "inst", "leave")
    assert services.roster.get_participant("room-1", "inst") is None

    rejoined = send_event("room-1", "inst", "join", role="student")

    assert rejoined.response["participant"]["role"] == "instructor"
    assert services.roster.get_participant("room-1", "inst").can_publish is True
    send_event("room-1", "inst", "muteParticipant", {"identity": "s1"}, role="student")
    assert services.roster.get_participant("room-1", "s1").muted is True


def test_concurrent_joins_and_votes_are_all_applied(services, send_event, broadcaster):
    services.lifecycle.create_room("room-1", "inst")
    students = [f"student-{index}" for index in range(50)]

    with ThreadPoolExecutor(max_workers=16) as pool:
        list(pool.map(lambda identity: send_event("room-1", identity, "join"), students))

    assert len(services.roster.list_participants("room-1")) == 51
    assert len(broadcaster.messages("participant_joined")) == 50

    created = send_event(
        "room-1", "inst", "createPoll",
        {"question": "Left or right?", "options": ["Left", "Right"]}, role="instructor",
    )
    poll_id = created.response["poll"]["pollId"]

    def vote(index):
        return send_event(
            "room-1", students[index], "castVote", {"pollId": poll_id, "optionIndex": index % 2}
        )

    with ThreadPoolExecutor(max_workers=16) as pool:
        list(pool.map(vote, range(50)))

    tally = services.polls.tally("room-1", poll_id)
    assert tally.total_votes == 50
    assert tuple(tally.counts) == (25, 25)
    assert len(broadcaster.messages("poll_updated")) == 50
