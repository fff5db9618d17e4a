from .events import EventEnvelope, EventType, InboundEvent
from .rooms import ConnectionState, ParticipantRole, RoomState, normalize_role

__all__ = [
    "EventEnvelope",
    "EventType",
    "InboundEvent",
    "ConnectionState",
    "ParticipantRole",
    "RoomState",
    "normalize_role",
]
