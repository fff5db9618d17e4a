from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from app.config.loader import get_media_settings
from app.schemas.rooms import ParticipantRole, normalize_role

logger = logging.getLogger(__name__)

MEDIA_TOKEN_ALGORITHM = "HS256"


@dataclass(frozen=True)
class JoinToken:
    token: str
    identity: str
    room_id: str
    role: ParticipantRole
    url: str
    expires_in: int


def build_video_grant(
    room_id: str,
    role: Any,
    *,
    can_publish: Optional[bool] = None,
    can_subscribe: Optional[bool] = None,
) -> Dict[str, Any]:
    """Role-based media grant; explicit flags override the role default."""
    if normalize_role(role) == ParticipantRole.INSTRUCTOR:
        grant = {
            "roomJoin": True,
            "room": room_id,
            "canPublish": True,
            "canSubscribe": True,
            "canPublishData": True,
            "roomAdmin": True,
            "roomRecord": True,
            "roomList": True,
            "canUpdateOwnMetadata": True,
        }
    else:
        # Students stay listen-only until an instructor grants publishing.
        grant = {
            "roomJoin": True,
            "room": room_id,
            "canPublish": False,
            "canSubscribe": True,
            "canPublishData": True,
            "canUpdateOwnMetadata": True,
        }
    if can_publish is not None:
        grant["canPublish"] = bool(can_publish)
    if can_subscribe is not None:
        grant["canSubscribe"] = bool(can_subscribe)
    return grant


def issue_join_token(
    room_id: str,
    identity: str,
    role: Any,
    *,
    display_name: Optional[str] = None,
    can_publish: Optional[bool] = None,
    can_subscribe: Optional[bool] = None,
    settings: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> JoinToken:
    """Sign a media server access token for one identity in one room."""
    settings = settings or get_media_settings()
    issued_at = now or datetime.now(timezone.utc)
    ttl = int(settings["token_ttl_seconds"])
    resolved_role = normalize_role(role)
    claims = {
        "iss": settings["api_key"],
        "sub": identity,
        "jti": identity,
        "nbf": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(seconds=ttl)).timestamp()),
        "video": build_video_grant(
            room_id, resolved_role, can_publish=can_publish, can_subscribe=can_subscribe
        ),
    }
    if display_name:
        claims["name"] = display_name

    token = jwt.encode(claims, settings["api_secret"], algorithm=MEDIA_TOKEN_ALGORITHM)
    logger.info(
        "Issued media token: room_id=%s identity=%s role=%s",
        room_id,
        identity,
        resolved_role.value,
    )
    return JoinToken(
        token=token,
        identity=identity,
        room_id=room_id,
        role=resolved_role,
        url=settings["url"],
        expires_in=ttl,
    )


def read_join_token(token: str, settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Verify and decode a media token; raises ``ValueError`` when it does not verify."""
    settings = settings or get_media_settings()
    try:
        return jwt.decode(
            token,
            settings["api_secret"],
            algorithms=[MEDIA_TOKEN_ALGORITHM],
            issuer=settings["api_key"],
        )
    except JWTError as exc:
        raise ValueError(f"Invalid media token: {exc}") from exc


WEBHOOK_SUBJECT = "media-server"


def issue_webhook_token(
    settings: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    *,
    ttl_seconds: int = 300,
) -> str:
    """Sign the bearer token the media server sends with transport notifications."""
    settings = settings or get_media_settings()
    issued_at = now or datetime.now(timezone.utc)
    claims = {
        "iss": settings["api_key"],
        "sub": WEBHOOK_SUBJECT,
        "webhook": True,
        "nbf": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(seconds=ttl_seconds)).timestamp()),
    }
    return jwt.encode(claims, settings["webhook_secret"], algorithm=MEDIA_TOKEN_ALGORITHM)


def read_webhook_token(token: str, settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Verify a transport notification credential.

    Participant join tokens are signed with a different secret and carry no
    ``webhook`` claim, so they never pass here.
    """
    settings = settings or get_media_settings()
    try:
        claims = jwt.decode(
            token,
            settings["webhook_secret"],
            algorithms=[MEDIA_TOKEN_ALGORITHM],
            issuer=settings["api_key"],
        )
    except JWTError as exc:
        raise ValueError(f"Invalid webhook token: {exc}") from exc
    if claims.get("webhook") is not True:
        raise ValueError("Token is not a transport notification credential.")
    return claims
