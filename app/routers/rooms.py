import logging
from typing import Any, Dict, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.auth.auth import CallerIdentity, get_current_caller
from app.schemas.rooms import (
    EventRequest,
    JoinTokenResponse,
    RoomCreateRequest,
    TransportNotification,
)
from app.services import RoomServices, get_room_services
from app.services.errors import NotAParticipant, RoomClosed, RoomSessionError
from app.services.event_router import decode_event
from app.services.media_tokens import issue_join_token, read_webhook_token

router = APIRouter(prefix="/api/rooms", tags=["rooms"])

logger = logging.getLogger(__name__)


def _raise_http(exc: RoomSessionError) -> NoReturn:
    raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


def _require_member(services: RoomServices, room_id: str, caller: CallerIdentity) -> None:
    """Only people in the room (or its instructor) may read its live state."""
    room = services.roster.require_room(room_id)
    if caller.identity == room.instructor_identity:
        return
    if services.roster.get_participant(room_id, caller.identity) is None:
        raise NotAParticipant(room_id=room_id, identity=caller.identity)


def _dispatch(
    services: RoomServices,
    room_id: str,
    caller: CallerIdentity,
    raw: Dict[str, Any],
) -> Dict[str, Any]:
    try:
        envelope = decode_event(
            raw,
            room_id=room_id,
            sender_identity=caller.identity,
            sender_role=caller.role,
            sender_display_name=caller.display_name,
        )
        result = services.router.dispatch(envelope)
    except RoomSessionError as exc:
        _raise_http(exc)
    return {"roomId": room_id, "type": result.event_type, "result": result.response}


async def verify_transport_request(request: Request) -> None:
    """Transport webhooks carry a bearer token signed with the webhook secret."""
    header = request.headers.get("Authorization") or ""
    token = header.split(" ", 1)[1] if header.startswith("Bearer ") else header
    try:
        read_webhook_token(token.strip())
    except ValueError as exc:
        logger.warning("Rejected transport notification: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Transport notification signature is invalid.",
        ) from exc


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_room(
    body: RoomCreateRequest,
    caller: CallerIdentity = Depends(get_current_caller),
    services: RoomServices = Depends(get_room_services),
):
    try:
        room = services.lifecycle.create_room(
            body.room_id,
            caller.identity,
            body.display_name or caller.display_name,
            role=caller.role,
        )
    except RoomSessionError as exc:
        _raise_http(exc)
    return {
        "room": room.to_payload(),
        "participants": services.router.roster_payload(room.room_id),
    }


@router.get("/{room_id}")
async def get_room(
    room_id: str,
    caller: CallerIdentity = Depends(get_current_caller),
    services: RoomServices = Depends(get_room_services),
):
    try:
        room = services.roster.require_room(room_id)
        participant_count = len(services.roster.list_participants(room_id))
    except RoomSessionError as exc:
        _raise_http(exc)
    return {
        "room": room.to_payload(),
        "participantCount": participant_count,
        "activePolls": sum(1 for poll in services.polls.list_polls(room_id) if poll.active),
    }


@router.get("/{room_id}/participants")
async def list_room_participants(
    room_id: str,
    caller: CallerIdentity = Depends(get_current_caller),
    services: RoomServices = Depends(get_room_services),
):
    try:
        _require_member(services, room_id, caller)
        participants = services.router.roster_payload(room_id)
    except RoomSessionError as exc:
        _raise_http(exc)
    return {"roomId": room_id, "participants": participants}


@router.post("/{room_id}/events")
async def submit_event(
    room_id: str,
    body: EventRequest,
    caller: CallerIdentity = Depends(get_current_caller),
    services: RoomServices = Depends(get_room_services),
):
    return _dispatch(services, room_id, caller, body.model_dump())


@router.post("/{room_id}/end")
async def end_room(
    room_id: str,
    caller: CallerIdentity = Depends(get_current_caller),
    services: RoomServices = Depends(get_room_services),
):
    return _dispatch(services, room_id, caller, {"type": "endRoom", "payload": {}})


@router.get("/{room_id}/polls")
async def list_polls(
    room_id: str,
    caller: CallerIdentity = Depends(get_current_caller),
    services: RoomServices = Depends(get_room_services),
):
    try:
        _require_member(services, room_id, caller)
        polls = [
            {
                "poll": poll.to_payload(),
                "tally": services.polls.tally(room_id, poll.poll_id).to_payload(),
            }
            for poll in services.polls.list_polls(room_id)
        ]
    except RoomSessionError as exc:
        _raise_http(exc)
    return {"roomId": room_id, "polls": polls}


@router.get("/{room_id}/polls/{poll_id}/tally")
async def get_poll_tally(
    room_id: str,
    poll_id: str,
    caller: CallerIdentity = Depends(get_current_caller),
    services: RoomServices = Depends(get_room_services),
):
    try:
        _require_member(services, room_id, caller)
        tally = services.polls.tally(room_id, poll_id)
    except RoomSessionError as exc:
        _raise_http(exc)
    return tally.to_payload()


@router.get("/{room_id}/join-token", response_model=JoinTokenResponse)
async def get_join_token(
    room_id: str,
    caller: CallerIdentity = Depends(get_current_caller),
    services: RoomServices = Depends(get_room_services),
):
    try:
        room = services.roster.require_room(room_id)
        if not room.is_open:
            raise RoomClosed(room_id=room_id, identity=caller.identity)
    except RoomSessionError as exc:
        _raise_http(exc)

    participant = services.roster.get_participant(room_id, caller.identity)
    join_token = issue_join_token(
        room_id,
        caller.identity,
        participant.role if participant else caller.role,
        display_name=caller.display_name,
        can_publish=participant.can_publish if participant else None,
        can_subscribe=participant.can_subscribe if participant else None,
    )
    return JoinTokenResponse(
        room_id=join_token.room_id,
        identity=join_token.identity,
        role=join_token.role,
        token=join_token.token,
        url=join_token.url,
        expires_in=join_token.expires_in,
    )


@router.post(
    "/{room_id}/transport",
    dependencies=[Depends(verify_transport_request)],
)
async def transport_notification(
    room_id: str,
    body: TransportNotification,
    services: RoomServices = Depends(get_room_services),
):
    lifecycle = services.lifecycle
    if body.event == "left":
        result = lifecycle.transport_participant_left(room_id, body.identity)
        return {"roomId": room_id, "applied": result is not None}
    if body.event == "heartbeat":
        return {
            "roomId": room_id,
            "applied": lifecycle.transport_heartbeat(room_id, body.identity),
        }
    try:
        result = lifecycle.transport_participant_joined(
            room_id, body.identity, body.display_name
        )
    except RoomSessionError as exc:
        _raise_http(exc)
    return {"roomId": room_id, "applied": True, "result": result.response}
