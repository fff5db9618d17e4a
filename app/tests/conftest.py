import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

# Ensure tests always sign and read tokens with known secrets regardless of local config.yaml.
os.environ["LIVEROOM_JWT_SECRET"] = "test-identity-secret-0123456789abcdef"
os.environ["LIVEROOM_MEDIA_API_KEY"] = "test-media-key"
os.environ["LIVEROOM_MEDIA_API_SECRET"] = "test-media-secret-0123456789abcdef"
os.environ["LIVEROOM_MEDIA_WEBHOOK_SECRET"] = "test-webhook-secret-0123456789abcdef"
os.environ["LIVEROOM_MEDIA_URL"] = "ws://media.test:7880"
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="liveroom-logs-"))

from app.auth.auth import create_identity_token
from app.main import app
from app.services import build_room_services, get_room_services
from app.services.event_router import decode_event
from app.utils.websocket_manager import websocket_manager

TEST_SESSION_SETTINGS = {
    "disconnect_timeout_seconds": 30,
    "empty_room_grace_seconds": 60,
    "closed_retention_seconds": 120,
    "reaction_ttl_seconds": 4,
    "sweep_interval_seconds": 5,
}


class FakeClock:
    """Manually advanced clock so timeouts can be exercised without sleeping."""

    def __init__(self, start=None):
        self.current = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)
        return self.current


class RecordingBroadcaster:
    """Records every publish and optionally forwards it to a real broadcaster."""

    def __init__(self, forward_to=None):
        self.published = []
        self._forward_to = forward_to

    def publish(self, room_id, recipients, message):
        self.published.append((room_id, list(recipients), message))
        if self._forward_to is not None:
            self._forward_to.publish(room_id, recipients, message)

    def messages(self, message_type=None):
        return [
            message
            for _, _, message in self.published
            if message_type is None or message["type"] == message_type
        ]

    def recipients_of(self, message_type):
        return [
            recipients
            for _, recipients, message in self.published
            if message["type"] == message_type
        ]

    def last(self, message_type=None):
        matching = self.messages(message_type)
        return matching[-1] if matching else None


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def services(broadcaster, clock):
    """Fresh, isolated room services driven by the fake clock."""
    return build_room_services(
        broadcaster, clock=clock, settings=dict(TEST_SESSION_SETTINGS)
    )


@pytest.fixture
def send_event(services):
    """Decode and dispatch a raw event the way the transports do."""

    def _send(room_id, identity, event_type, payload=None, *, role="student", name=None):
        envelope = decode_event(
            {"type": event_type, "payload": payload or {}},
            room_id=room_id,
            sender_identity=identity,
            sender_role=role,
            sender_display_name=name,
        )
        return services.router.dispatch(envelope)

    return _send


@pytest.fixture
def live_room(services, send_event):
    """An open room with an instructor and two students."""
    services.lifecycle.create_room("room-1", "inst", "Ms. Rivera")
    send_event("room-1", "s1", "join", {"displayName": "Sam"})
    send_event("room-1", "s2", "join", {"displayName": "Ada"})
    return services.roster.require_room("room-1")


@pytest.fixture
def api_services():
    """Room services for the HTTP and socket surfaces, wired to the real socket manager."""
    return build_room_services(
        RecordingBroadcaster(forward_to=websocket_manager),
        settings=dict(TEST_SESSION_SETTINGS),
    )


@pytest.fixture
def client(api_services):
    """Provides a TestClient instance bound to isolated room services."""
    app.dependency_overrides[get_room_services] = lambda: api_services
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_room_services, None)


@pytest.fixture
def auth_headers():
    def _headers(identity, role="student", name=None):
        token = create_identity_token(identity, role, display_name=name)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def identity_token():
    def _token(identity, role="student", name=None):
        return create_identity_token(identity, role, display_name=name)

    return _token
