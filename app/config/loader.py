from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

_CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

_DEFAULT_LIVE_SESSION = {
    "disconnect_timeout_seconds": 30,
    "empty_room_grace_seconds": 60,
    "closed_retention_seconds": 120,
    "reaction_ttl_seconds": 4,
    "sweep_interval_seconds": 5,
}
_DEFAULT_MEDIA = {
    "api_key": "devkey",
    "api_secret": "devsecret-change-me-devsecret-change-me",
    "webhook_secret": "devwebhook-change-me-devwebhook-change-me",
    "url": "ws://localhost:7880",
    "token_ttl_seconds": 3600,
}
_DEFAULT_AUTH = {
    "jwt_secret": "dev-only-identity-secret-change-me-0000",
    "jwt_algorithm": "HS256",
}
_TRUTHY = {"1", "true", "yes", "on"}


def load_config() -> Dict[str, Any]:
    """Load the application config from YAML, returning an empty mapping on error."""
    try:
        with _CONFIG_PATH.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
            if isinstance(data, dict):
                return data
            logging.warning(
                "Config file %s is not a mapping; using defaults.", _CONFIG_PATH
            )
            return {}
    except FileNotFoundError:
        logging.warning(
            "Configuration file %s not found; using defaults.", _CONFIG_PATH
        )
        return {}
    except Exception as exc:  # noqa: BLE001
        logging.error("Failed to load configuration from %s: %s", _CONFIG_PATH, exc)
        return {}


def _coerce_positive_int(value: Any, fallback: int) -> int:
    try:
        candidate = int(value)
        return candidate if candidate > 0 else fallback
    except Exception:  # noqa: BLE001
        return fallback


def _coerce_bool(value: Any, fallback: bool) -> bool:
    if value is None:
        return fallback
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return bool(value)


def _coerce_text(value: Any, fallback: str) -> str:
    if value is None:
        return fallback
    text = str(value).strip()
    return text or fallback


def get_live_session_settings() -> Dict[str, int]:
    """Return room timers sourced from config with safe defaults."""
    config = load_config()
    section = config.get("live_session") or {}
    defaults = dict(_DEFAULT_LIVE_SESSION)
    return {
        key: _coerce_positive_int(section.get(key), fallback)
        for key, fallback in defaults.items()
    }


def get_media_settings() -> Dict[str, Any]:
    """
    Return media server credentials used to sign join tokens and to verify
    transport notifications.

    Priority per key:
    1) LIVEROOM_MEDIA_* env vars
    2) config.yaml media section
    3) development defaults
    """
    config = load_config()
    section = config.get("media") or {}
    defaults = dict(_DEFAULT_MEDIA)
    return {
        "api_key": _coerce_text(
            os.getenv("LIVEROOM_MEDIA_API_KEY") or section.get("api_key"),
            defaults["api_key"],
        ),
        "api_secret": _coerce_text(
            os.getenv("LIVEROOM_MEDIA_API_SECRET") or section.get("api_secret"),
            defaults["api_secret"],
        ),
        "webhook_secret": _coerce_text(
            os.getenv("LIVEROOM_MEDIA_WEBHOOK_SECRET") or section.get("webhook_secret"),
            defaults["webhook_secret"],
        ),
        "url": _coerce_text(
            os.getenv("LIVEROOM_MEDIA_URL") or section.get("url"),
            defaults["url"],
        ),
        "token_ttl_seconds": _coerce_positive_int(
            section.get("token_ttl_seconds"), defaults["token_ttl_seconds"]
        ),
    }


def get_auth_settings() -> Dict[str, str]:
    """Return the shared secret used to read identity tokens."""
    config = load_config()
    section = config.get("auth") or {}
    defaults = dict(_DEFAULT_AUTH)
    secret = os.getenv("LIVEROOM_JWT_SECRET") or section.get("jwt_secret")
    if not secret:
        logging.warning(
            "No identity token secret configured; using the development default."
        )
    return {
        "jwt_secret": _coerce_text(secret, defaults["jwt_secret"]),
        "jwt_algorithm": _coerce_text(
            section.get("jwt_algorithm"), defaults["jwt_algorithm"]
        ),
    }


def get_debug_logging_enabled() -> bool:
    """Return whether room services should log at DEBUG level."""
    env_value = os.getenv("LIVEROOM_DEBUG")
    if env_value is not None:
        return env_value.strip().lower() in _TRUTHY
    config = load_config()
    return _coerce_bool((config.get("logging") or {}).get("debug"), False)
