"""
Client configuration.

Every key is resolved from secrets.toml first, then the environment, then
the default below. SECRETS_FILE points at a different secrets file.
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import toml

DEFAULT_SECRETS_FILE = "secrets.toml"

_secrets_cache: Dict[str, Dict[str, Any]] = {}


def _load_secrets(path: str) -> Dict[str, Any]:
    if path not in _secrets_cache:
        try:
            _secrets_cache[path] = toml.load(path)
        except FileNotFoundError:
            _secrets_cache[path] = {}
    return _secrets_cache[path]


def reset_secrets_cache():
    _secrets_cache.clear()


def get_secret(key: str) -> Optional[Any]:
    path = os.getenv("SECRETS_FILE", DEFAULT_SECRETS_FILE)
    return _load_secrets(path).get(key)


def _get(key: str, default: Any) -> Any:
    value = get_secret(key)
    if value is None:
        value = os.getenv(key)
    return default if value is None or value == "" else value


def _get_float(key: str, default: float) -> float:
    value = _get(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be a number, got {value!r}")


def _get_int(key: str, default: int) -> int:
    value = _get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be an integer, got {value!r}")


def _get_bool(key: str, default: bool) -> bool:
    value = _get(key, default)
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    api_base_url: str = "http://localhost:5000/api"
    request_timeout: float = 30.0
    refresh_timeout: float = 10.0
    session_db: str = "session.db"
    audit_db: str = "audit.db"
    backend_db: str = "backend.db"
    ban_retention_days: int = 30
    token_renewal_ratio: float = 0.85
    background_renewal: bool = True
    identity_refresh_throttle: float = 10.0
    rejection_appeal_outcome: str = "PENDING"


def load_settings() -> Settings:
    defaults = Settings()
    settings = Settings(
        api_base_url=str(_get("API_BASE_URL", defaults.api_base_url)),
        request_timeout=_get_float("REQUEST_TIMEOUT", defaults.request_timeout),
        refresh_timeout=_get_float("REFRESH_TIMEOUT", defaults.refresh_timeout),
        session_db=str(_get("SESSION_DB", defaults.session_db)),
        audit_db=str(_get("AUDIT_DB", defaults.audit_db)),
        backend_db=str(_get("BACKEND_DB", defaults.backend_db)),
        ban_retention_days=_get_int("BAN_RETENTION_DAYS", defaults.ban_retention_days),
        token_renewal_ratio=_get_float("TOKEN_RENEWAL_RATIO", defaults.token_renewal_ratio),
        background_renewal=_get_bool("BACKGROUND_RENEWAL", defaults.background_renewal),
        identity_refresh_throttle=_get_float("IDENTITY_REFRESH_THROTTLE", defaults.identity_refresh_throttle),
        rejection_appeal_outcome=str(_get("REJECTION_APPEAL_OUTCOME", defaults.rejection_appeal_outcome)).upper(),
    )
    if settings.request_timeout <= 0 or settings.refresh_timeout <= 0:
        raise ValueError("REQUEST_TIMEOUT and REFRESH_TIMEOUT must be positive")
    if not 0 < settings.token_renewal_ratio < 1:
        raise ValueError("TOKEN_RENEWAL_RATIO must be between 0 and 1")
    if settings.rejection_appeal_outcome not in ("PENDING", "APPROVED"):
        raise ValueError("REJECTION_APPEAL_OUTCOME must be PENDING or APPROVED")
    return settings
