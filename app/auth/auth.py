from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, Optional
import logging

from fastapi import HTTPException, Request, WebSocket, status
from jose import JWTError, jwt

from app.config.loader import get_auth_settings
from app.schemas.rooms import ParticipantRole, normalize_role

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY_TOKEN_MINUTES = 60


@dataclass(frozen=True)
class CallerIdentity:
    """The (identity, role) fact supplied by the identity collaborator."""

    identity: str
    role: ParticipantRole
    display_name: Optional[str] = None

    @property
    def is_instructor(self) -> bool:
        return self.role == ParticipantRole.INSTRUCTOR


# --- Token Utilities ---


def create_identity_token(
    identity: str,
    role: str,
    *,
    display_name: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
    settings: Optional[Dict[str, str]] = None,
) -> str:
    """
    Mint an identity token the way the identity collaborator does.
    Used by local tooling and tests; production tokens come from the auth service.
    """
    settings = settings or get_auth_settings()
    expire = datetime.now(UTC) + (
        expires_delta or timedelta(minutes=DEFAULT_IDENTITY_TOKEN_MINUTES)
    )
    claims: Dict[str, Any] = {"sub": identity, "role": role, "exp": expire}
    if display_name:
        claims["name"] = display_name
    return jwt.encode(claims, settings["jwt_secret"], algorithm=settings["jwt_algorithm"])


def read_identity_token(
    token: str, settings: Optional[Dict[str, str]] = None
) -> Optional[CallerIdentity]:
    """Decode an identity token, returning None when it does not verify."""
    settings = settings or get_auth_settings()
    try:
        payload = jwt.decode(
            token,
            settings["jwt_secret"],
            algorithms=[settings["jwt_algorithm"]],
            options={"verify_aud": False},
        )
    except JWTError as exc:
        logger.warning("Identity token rejected: %s", exc)
        return None

    # The classroom backend signs `id`; newer tokens carry `sub`.
    identity = payload.get("sub") or payload.get("id")
    if not identity:
        logger.warning("Identity token has no subject claim.")
        return None
    return CallerIdentity(
        identity=str(identity),
        role=normalize_role(payload.get("role")),
        display_name=payload.get("name"),
    )


def _strip_bearer(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    if value.startswith("Bearer "):
        return value.split(" ", 1)[1].strip() or None
    return value.strip() or None


# --- Caller Dependencies ---


async def get_current_caller(request: Request) -> CallerIdentity:
    """
    FastAPI dependency resolving the caller from an `Authorization: Bearer` header.
    Raises 401 when the header is missing or the token does not verify.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials. Invalid or expired token.",
        headers={"WWW-Authenticate": "Bearer"},
    )
    token = _strip_bearer(request.headers.get("Authorization"))
    if token is None:
        logger.debug("No bearer token on request to %s", request.url.path)
        raise credentials_exception
    caller = read_identity_token(token)
    if caller is None:
        raise credentials_exception
    return caller


def caller_from_websocket(websocket: WebSocket) -> Optional[CallerIdentity]:
    """Resolve the caller for a socket from its `token` query parameter or header."""
    token = _strip_bearer(websocket.query_params.get("token")) or _strip_bearer(
        websocket.headers.get("authorization")
    )
    if token is None:
        return None
    return read_identity_token(token)
