"""Centralized Role-Based Access Control logic."""

from typing import Optional

from infrastructure.repositories.sqlite_audit_repository import AuditAction
from use_cases.session_models import IdentitySnapshot

OPERATOR_ACTIONS = {"LIST_APPEALS", "VIEW_APPEAL", "REVIEW_APPEAL"}
SUBJECT_ACTIONS = {"CREATE_APPEAL", "VIEW_OWN_APPEALS"}


class AccessDeniedError(Exception):
    def __init__(self, action: str):
        super().__init__(f"Not allowed to perform {action}")
        self.action = action


def enforce(user: Optional[IdentitySnapshot], action: str, audit_repo=None) -> bool:
    """
    Evaluates if the user is authorized to perform the action.
    Returns True if authorized, False otherwise. Denials are audited.
    """
    authorized = False

    if user is not None:
        # Admins get overarching rights to everything
        if user.role == "ADMIN":
            authorized = True
        # Any signed-in subject, restricted or not, may appeal and read its own appeals
        elif action in SUBJECT_ACTIONS:
            authorized = True

    if not authorized and audit_repo is not None:
        audit_repo.log_action(
            AuditAction.RBAC_DENIED,
            target_type="rbac",
            actor_user_id=user.id if user else None,
            actor_role=user.role if user else None,
            metadata={"target_action": action, "reason": "insufficient_rights"},
            result="deny"
        )

    return authorized


def require(user: Optional[IdentitySnapshot], action: str, audit_repo=None) -> IdentitySnapshot:
    if not enforce(user, action, audit_repo=audit_repo):
        raise AccessDeniedError(action)
    return user
