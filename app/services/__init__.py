"""Service layer for live room coordination."""

from .room_services import (
    RoomServices,
    build_room_services,
    get_room_services,
    room_services,
)  # noqa: F401

__all__ = [
    "RoomServices",
    "build_room_services",
    "get_room_services",
    "room_services",
]
