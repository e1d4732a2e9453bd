"""Startup orchestration: observability, session context and session restore."""

from dataclasses import dataclass
from typing import Literal, Optional, Tuple

import requests

import auth
from infrastructure.observability import setup_observability
from settings import Settings, load_settings
from use_cases.appeal_flow import AppealGateway
from utils.session_manager import SessionContext

StartupStatus = Literal["CONTINUE", "STOP"]


@dataclass(frozen=True)
class StartupResult:
    """Result contract for startup/bootstrap orchestration."""

    status: StartupStatus
    planned_steps: Tuple[str, ...]
    context: Optional[SessionContext] = None


def run_startup(
    settings: Optional[Settings] = None,
    http_session: Optional[requests.Session] = None,
    appeal_gateway: Optional[AppealGateway] = None,
) -> StartupResult:
    """Build and initialize the session context, then try to restore a persisted session."""
    executed_steps = []

    setup_observability()
    executed_steps.append("setup_observability")

    if settings is None:
        settings = load_settings()
        executed_steps.append("load_settings")

    context = SessionContext(settings, http_session=http_session, appeal_gateway=appeal_gateway)
    context.init()
    executed_steps.append("init_session_context")

    if context.is_authenticated:
        if auth.restore_session(context) is not None:
            executed_steps.append("restore_session")
        else:
            executed_steps.append("restore_session_failed")

    return StartupResult(status="CONTINUE", planned_steps=tuple(executed_steps), context=context)
