import json
import logging
from datetime import datetime, UTC

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from app.auth.auth import caller_from_websocket
from app.services import RoomServices, get_room_services
from app.services.errors import InvalidEvent, RoomSessionError
from app.services.event_router import decode_event, describe_failure
from app.utils.websocket_manager import websocket_manager

router = APIRouter(prefix="/ws", tags=["realtime"])

logger = logging.getLogger(__name__)


@router.websocket("/rooms/{room_id}")
async def room_socket(
    websocket: WebSocket,
    room_id: str,
    services: RoomServices = Depends(get_room_services),
) -> None:
    """
    Bidirectional channel for one participant in one room.

    Messages from a connection are handled one at a time, in the order they
    arrive. Failures go back to this connection only.
    """
    caller = caller_from_websocket(websocket)
    if caller is None:
        await websocket.close(code=1008, reason="Authentication required")
        return
    if services.roster.get_room(room_id) is None:
        logger.info("Room %s not found for WebSocket connection", room_id)
        await websocket.close(code=1008, reason="Room not found")
        return

    connection_id = await websocket_manager.connect(
        websocket, room_id, identity=caller.identity
    )

    def _envelope(raw):
        return decode_event(
            raw,
            room_id=room_id,
            sender_identity=caller.identity,
            sender_role=caller.role,
            sender_display_name=caller.display_name,
        )

    try:
        join = services.router.dispatch(_envelope({"type": "join", "payload": {}}))
    except RoomSessionError as exc:
        await websocket_manager.send_personal_message(
            room_id, connection_id, describe_failure(exc)
        )
        websocket_manager.disconnect(room_id, connection_id)
        await websocket.close(code=1008, reason=exc.message)
        return

    await websocket_manager.send_personal_message(
        room_id,
        connection_id,
        {
            "type": "connection_ack",
            "payload": {
                "roomId": room_id,
                "connectionId": connection_id,
                "identity": caller.identity,
                **join.response,
            },
        },
    )

    try:
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                await websocket_manager.send_personal_message(
                    room_id,
                    connection_id,
                    describe_failure(InvalidEvent("Messages must be JSON.", room_id=room_id)),
                )
                continue

            message_type = message.get("type") if isinstance(message, dict) else None
            if message_type == "ping":
                # Socket pings count as a liveness signal alongside transport heartbeats.
                services.lifecycle.transport_heartbeat(room_id, caller.identity)
                await websocket_manager.send_personal_message(
                    room_id,
                    connection_id,
                    {
                        "type": "pong",
                        "payload": {
                            "roomId": room_id,
                            "timestamp": datetime.now(UTC).isoformat(),
                        },
                    },
                )
                continue

            try:
                result = services.router.dispatch(_envelope(message))
            except RoomSessionError as exc:
                await websocket_manager.send_personal_message(
                    room_id, connection_id, describe_failure(exc)
                )
                continue

            await websocket_manager.send_personal_message(
                room_id,
                connection_id,
                {
                    "type": "event_result",
                    "payload": {"event": result.event_type, "result": result.response},
                },
            )
    except WebSocketDisconnect:
        logger.debug(
            "WebSocketDisconnect: room_id=%s connection_id=%s",
            room_id,
            connection_id,
        )
    finally:
        websocket_manager.disconnect(room_id, connection_id)
        if websocket_manager.connection_count(room_id, caller.identity) == 0:
            services.lifecycle.connection_lost(room_id, caller.identity)
