from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from app.config.loader import get_live_session_settings
from app.services.event_router import Broadcaster, EventRouter
from app.services.poll_engine import PollEngine
from app.services.roster_store import Clock, RosterStore
from app.services.session_lifecycle import SessionLifecycleManager
from app.utils.websocket_manager import websocket_manager


@dataclass
class RoomServices:
    roster: RosterStore
    polls: PollEngine
    router: EventRouter
    lifecycle: SessionLifecycleManager
    sweep_interval_seconds: int

    def stats(self) -> Dict[str, int]:
        counts = {"open": 0, "ending": 0, "closed": 0}
        for room_id in self.roster.room_ids():
            room = self.roster.get_room(room_id)
            if room is not None:
                counts[room.state.value] += 1
        return counts


def build_room_services(
    broadcaster: Optional[Broadcaster] = None,
    *,
    clock: Optional[Clock] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> RoomServices:
    """Wire a roster, poll engine, router and lifecycle manager together."""
    settings = settings or get_live_session_settings()
    roster = RosterStore(clock=clock)
    polls = PollEngine(roster)
    router = EventRouter(
        roster,
        polls,
        broadcaster,
        reaction_ttl_seconds=settings["reaction_ttl_seconds"],
    )
    lifecycle = SessionLifecycleManager(
        roster,
        polls,
        router,
        disconnect_timeout_seconds=settings["disconnect_timeout_seconds"],
        empty_room_grace_seconds=settings["empty_room_grace_seconds"],
        closed_retention_seconds=settings["closed_retention_seconds"],
    )
    return RoomServices(
        roster=roster,
        polls=polls,
        router=router,
        lifecycle=lifecycle,
        sweep_interval_seconds=settings["sweep_interval_seconds"],
    )


room_services = build_room_services(websocket_manager)


def get_room_services() -> RoomServices:
    return room_services
