"""Authentication flow orchestration (application layer)."""

from dataclasses import dataclass
from typing import Literal, Optional

import auth
from use_cases.status_gate import ApplicationMode, compute_mode
from utils.session_manager import SessionContext

AuthFlowStatus = Literal["CONTINUE", "STOP"]


@dataclass(frozen=True)
class AuthFlowResult:
    """Result contract for auth flow orchestration."""

    status: AuthFlowStatus
    reason: str
    user_id: Optional[str] = None
    mode: ApplicationMode = ApplicationMode.UNAUTHENTICATED


def ensure_authenticated_session(context: SessionContext) -> AuthFlowResult:
    """
    Run the auth gate and return a control-flow status.

    A restricted account still gets CONTINUE: the consumer routes it by `mode`.
    """
    if not context.is_authenticated:
        return AuthFlowResult(status="STOP", reason="auth_required")

    identity = auth.refresh_identity(context)
    if identity is None:
        return AuthFlowResult(status="STOP", reason="session_expired")

    mode = compute_mode(identity)
    return AuthFlowResult(status="CONTINUE", reason="authenticated", user_id=identity.id, mode=mode)
