"""
Session entry points.

login / logout / restore_session / refresh_identity all take the
SessionContext explicitly. Together with the token lifecycle manager they
are the only code that writes to the token store.
"""

import logging
import time
from typing import Optional

from infrastructure.api.errors import (
    ApiError,
    SessionExpiredError,
    StaleSessionError,
    TransportError,
    UnauthenticatedError,
)
from infrastructure.repositories.sqlite_audit_repository import AuditAction
from use_cases.session_models import IdentitySnapshot
from use_cases.status_gate import compute_mode
from utils.session_manager import SessionContext

log = logging.getLogger(__name__)


class InvalidCredentialsError(Exception):
    pass


def login(context: SessionContext, email: str, password: str) -> IdentitySnapshot:
    email = (email or "").strip()
    if not email or not password:
        raise InvalidCredentialsError("Email and password are required.")

    try:
        tokens, identity = context.auth_api.login(email, password)
    except TransportError:
        raise
    except ApiError as e:
        if e.status_code in (400, 401, 403):
            context.audit_repo.log_action(
                AuditAction.LOGIN_FAIL,
                target_type="session",
                metadata={"reason": f"http_{e.status_code}"},
                result="fail",
            )
            raise InvalidCredentialsError(e.message or "Invalid email or password.") from e
        raise

    # A previous session, if any, is replaced; its in-flight calls become stale.
    context.store.start_session(tokens, identity)
    context.last_identity_refresh = time.monotonic()
    mode = compute_mode(identity)
    log.info(f"Signed in as user {identity.id} ({mode.value})")
    context.audit_repo.log_action(
        AuditAction.LOGIN_SUCCESS,
        target_type="session",
        actor_user_id=identity.id,
        actor_role=identity.role,
        metadata={"mode": mode.value},
    )
    return identity


def logout(context: SessionContext, reason: str = "logout") -> bool:
    """Clear the local session. Server-side revocation is attempted first but never required."""
    snap = context.store.snapshot()
    if snap.tokens is None and snap.identity is None:
        return False

    context.auth_api.logout(snap.refresh_token)
    cleared = context.store.clear(reason=reason)
    if cleared:
        identity = snap.identity
        context.audit_repo.log_action(
            AuditAction.LOGOUT,
            target_type="session",
            actor_user_id=identity.id if identity else None,
            actor_role=identity.role if identity else None,
            metadata={"reason": reason},
        )
    return cleared


def refresh_identity(context: SessionContext, force: bool = False) -> Optional[IdentitySnapshot]:
    """
    Re-read the identity snapshot from GET /users/me.

    Calls are throttled by settings.identity_refresh_throttle unless `force`.
    Returns the current identity, or None when the session is gone. A network
    failure keeps the last known snapshot.
    """
    if context.store.access_token is None:
        return None

    now = time.monotonic()
    last = context.last_identity_refresh
    if not force and last is not None and now - last < context.settings.identity_refresh_throttle:
        return context.store.identity

    try:
        identity, epoch = context.auth_api.get_me()
    except (SessionExpiredError, UnauthenticatedError):
        # The lifecycle manager already cleared the store.
        return None
    except StaleSessionError:
        log.info("Session changed while refreshing identity; result discarded")
        return context.store.identity
    except TransportError as e:
        log.warning(f"Identity refresh failed, keeping last snapshot: {e}")
        return context.store.identity

    context.last_identity_refresh = now
    try:
        context.store.set_identity(identity, expected_epoch=epoch)
    except RuntimeError:
        # Logged out, or another account logged in, between the response and the write.
        return None
    return identity


def restore_session(context: SessionContext) -> Optional[IdentitySnapshot]:
    """Validate a persisted session against the backend. Returns the fresh identity or None."""
    if context.store.access_token is None:
        context.store.load()
    if context.store.access_token is None:
        return None
    identity = refresh_identity(context, force=True)
    if identity is None:
        log.info("Persisted session could not be restored")
    return identity
