from .auth import (
    CallerIdentity,
    caller_from_websocket,
    create_identity_token,
    get_current_caller,
    read_identity_token,
)

__all__ = [
    "CallerIdentity",
    "caller_from_websocket",
    "create_identity_token",
    "get_current_caller",
    "read_identity_token",
]
