"""
Centralized Observability Infrastructure.
Logging setup and Sentry SDK initialization, governed by environment variables.
"""

import os
import logging
import re
from typing import Any, Dict

import sentry_sdk

log = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Keys whose values are always dropped, compared case-insensitively
SENSITIVE_KEYS = {"authorization", "accesstoken", "refreshtoken", "access_token", "refresh_token", "password"}

# Patterns to scrub in free-form strings
SENSITIVE_PATTERNS = [
    re.compile(r"(Bearer\s+)[A-Za-z0-9_\-\.=]+", re.IGNORECASE),
    re.compile(r"eyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+"),  # JWTs
    re.compile(r"([a-zA-Z0-9_\-]{30,})"),  # Other long opaque strings
]


def _mask_string(val: str) -> str:
    val = SENSITIVE_PATTERNS[0].sub(r"\1" + REDACTED, val)
    for pattern in SENSITIVE_PATTERNS[1:]:
        val = pattern.sub(REDACTED, val)
    return val


def _recursive_scrub(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_KEYS else _recursive_scrub(v)
            for k, v in obj.items()
        }
    elif isinstance(obj, (list, tuple)):
        return [_recursive_scrub(i) for i in obj]
    elif isinstance(obj, str):
        return _mask_string(obj)
    return obj


def _scrub_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Dict[str, Any]:
    """
    Sentry before_send hook. Scrubs bearer tokens, refresh tokens and
    passwords from frame variables, request data and breadcrumbs before
    the event leaves the process.
    """
    for exc in (event.get("exception") or {}).get("values") or []:
        for frame in (exc.get("stacktrace") or {}).get("frames") or []:
            if "vars" in frame:
                frame["vars"] = _recursive_scrub(frame["vars"])

    request = event.get("request")
    if isinstance(request, dict):
        for key in ("headers", "data", "query_string", "cookies"):
            if key in request:
                request[key] = _recursive_scrub(request[key])

    breadcrumbs = event.get("breadcrumbs")
    if isinstance(breadcrumbs, dict) and "values" in breadcrumbs:
        breadcrumbs["values"] = _recursive_scrub(breadcrumbs["values"])

    if "extra" in event:
        event["extra"] = _recursive_scrub(event["extra"])
    return event


def setup_observability() -> None:
    """
    Initializes global system logging and Sentry (if DSN is present).
    Should be called once at application startup.
    """
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    # [2026-02-27 15:00:00] | INFO    | module.name | The message
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    sentry_dsn = os.getenv("SENTRY_DSN")
    if sentry_dsn:
        sentry_env = os.getenv("SENTRY_ENV", "development")
        sentry_sdk.init(
            dsn=sentry_dsn,
            environment=sentry_env,
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
            send_default_pii=False,
            before_send=_scrub_sensitive_data
        )
        log.info(f"Sentry SDK initialized (env: {sentry_env})")
    else:
        log.info("SENTRY_DSN not provided. Running without Sentry.")

    # Quiet noisy third-party loggers
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
