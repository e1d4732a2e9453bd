"""
Appeal workflow (application layer).

Subject side: create an appeal and read one's own appeals. Operator side:
list, inspect and resolve appeals. Inputs are validated before anything is
sent, and the appeal state machine is checked before a resolution is
submitted. The authoritative status flip on approval belongs to the
backend; the gate sees it on the subject's next identity refresh.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Literal, Optional, Protocol

from infrastructure.api.errors import TransportError
from infrastructure.repositories.sqlite_audit_repository import AuditAction
from use_cases import rbac_policy
from use_cases.appeal_models import (
    Appeal,
    AppealFilter,
    AppealNotAllowedError,
    DuplicatePendingAppealError,
    PagedAppeals,
    ensure_transition,
    newest_first,
    validate_new_appeal,
    validate_review,
)
from use_cases.session_models import IdentitySnapshot
from use_cases.status_gate import allowed_appeal_types, compute_mode
from utils.event_channel import EventChannel

log = logging.getLogger(__name__)


class AppealGateway(Protocol):
    def create_appeal(self, subject: IdentitySnapshot, appeal_type: str, reason: str,
                      details: Optional[str] = None) -> Appeal: ...

    def get_my_appeals(self, subject: IdentitySnapshot) -> List[Appeal]: ...

    def list_appeals(self, appeal_filter: AppealFilter) -> PagedAppeals: ...

    def get_appeal(self, appeal_id: str) -> Appeal: ...

    def review_appeal(self, appeal_id: str, status: str, admin_notes: Optional[str],
                      reviewer: IdentitySnapshot) -> Appeal: ...


class AppealWorkflow:
    def __init__(
        self,
        gateway: AppealGateway,
        identity_provider: Callable[[], Optional[IdentitySnapshot]],
        audit_repo=None,
        events: Optional[EventChannel] = None,
    ):
        self.gateway = gateway
        self.identity_provider = identity_provider
        self.audit_repo = audit_repo
        self.events = events
        self._create_lock = threading.Lock()
        self._cache_lock = threading.Lock()
        self._cached_subject_id: Optional[str] = None
        self._cached_appeals: List[Appeal] = []

    def _current_subject(self) -> IdentitySnapshot:
        identity = self.identity_provider()
        if identity is None:
            raise AppealNotAllowedError("Sign in to manage appeals")
        return identity

    # --- subject side ---

    def create_appeal(self, appeal_type: str, reason: str, details: Optional[str] = None) -> Appeal:
        reason, details = validate_new_appeal(appeal_type, reason, details)
        subject = rbac_policy.require(self._current_subject(), "CREATE_APPEAL", audit_repo=self.audit_repo)

        mode = compute_mode(subject)
        if appeal_type not in allowed_appeal_types(mode):
            raise AppealNotAllowedError(f"{appeal_type} is not allowed while {mode.value}")

        # Double submits from this process queue up here; the gateway holds the real invariant.
        with self._create_lock:
            try:
                appeal = self.gateway.create_appeal(subject, appeal_type, reason, details)
            except DuplicatePendingAppealError:
                self._audit(AuditAction.APPEAL_DUPLICATE, subject, None, {"appeal_type": appeal_type}, result="conflict")
                raise

        with self._cache_lock:
            if self._cached_subject_id == subject.id:
                self._cached_appeals = [appeal] + [a for a in self._cached_appeals if a.id != appeal.id]
            else:
                self._cached_subject_id, self._cached_appeals = subject.id, [appeal]

        log.info(f"Appeal {appeal.id} submitted ({appeal_type})")
        self._audit(AuditAction.APPEAL_CREATE, subject, appeal.id, {"appeal_type": appeal_type, "mode": mode.value})
        self._publish("appeal_created", appeal=appeal)
        return appeal

    def get_my_appeals(self) -> List[Appeal]:
        """All of the caller's appeals, any status, newest first."""
        subject = rbac_policy.require(self._current_subject(), "VIEW_OWN_APPEALS", audit_repo=self.audit_repo)
        appeals = newest_first(self.gateway.get_my_appeals(subject))
        with self._cache_lock:
            self._cached_subject_id, self._cached_appeals = subject.id, list(appeals)
        return appeals

    def cached_appeals(self) -> Optional[List[Appeal]]:
        """Last successfully fetched appeals of the current subject, or None."""
        identity = self.identity_provider()
        with self._cache_lock:
            if identity is None or identity.id != self._cached_subject_id:
                return None
            return list(self._cached_appeals)

    def has_pending_appeal(self, appeals: Optional[List[Appeal]] = None) -> bool:
        if appeals is None:
            appeals = self.get_my_appeals()
        return any(a.is_open for a in appeals)

    def forget(self):
        with self._cache_lock:
            self._cached_subject_id, self._cached_appeals = None, []

    # --- operator side ---

    def list_appeals(self, appeal_filter: Optional[AppealFilter] = None) -> PagedAppeals:
        rbac_policy.require(self.identity_provider(), "LIST_APPEALS", audit_repo=self.audit_repo)
        return self.gateway.list_appeals((appeal_filter or AppealFilter()).validate())

    def get_appeal(self, appeal_id: str) -> Appeal:
        rbac_policy.require(self.identity_provider(), "VIEW_APPEAL", audit_repo=self.audit_repo)
        return self.gateway.get_appeal(appeal_id)

    def resolve_appeal(self, appeal_id: str, status: str, admin_notes: Optional[str] = None) -> Appeal:
        admin_notes = validate_review(status, admin_notes)
        reviewer = rbac_policy.require(self.identity_provider(), "REVIEW_APPEAL", audit_repo=self.audit_repo)

        current = self.gateway.get_appeal(appeal_id)
        ensure_transition(current.status, status)

        appeal = self.gateway.review_appeal(appeal_id, status, admin_notes, reviewer)
        log.info(f"Appeal {appeal_id} resolved: {current.status} -> {appeal.status}")
        self._audit(
            AuditAction.APPEAL_REVIEW, reviewer, appeal_id,
            {"old_status": current.status, "new_status": appeal.status, "appeal_type": appeal.type},
        )
        self._publish("appeal_resolved", appeal=appeal, subject_user_id=appeal.subject_user_id)
        return appeal

    # --- helpers ---

    def _audit(self, action, actor: IdentitySnapshot, target_id, metadata, result="success"):
        if self.audit_repo is None:
            return
        self.audit_repo.log_action(
            action,
            target_type="appeal",
            actor_user_id=actor.id,
            actor_role=actor.role,
            target_id=target_id,
            metadata=metadata,
            result=result,
        )

    def _publish(self, event: str, **payload):
        if self.events is not None:
            self.events.publish(event, **payload)


AppealSubmitStatus = Literal["SUBMITTED", "ALREADY_UNDER_REVIEW"]


@dataclass(frozen=True)
class AppealSubmitResult:
    """Result contract for appeal submission; a duplicate is informational, not a failure."""

    status: AppealSubmitStatus
    appeal: Optional[Appeal] = None
    message: str = ""


def _known_appeals(workflow: AppealWorkflow) -> List[Appeal]:
    cached = workflow.cached_appeals()
    if cached and any(a.is_open for a in cached):
        return cached
    try:
        return workflow.get_my_appeals()
    except TransportError as e:
        log.warning(f"Could not load the open appeal: {e}")
        return cached or []


def submit_appeal(workflow: AppealWorkflow, appeal_type: str, reason: str,
                  details: Optional[str] = None) -> AppealSubmitResult:
    try:
        appeal = workflow.create_appeal(appeal_type, reason, details)
    except DuplicatePendingAppealError:
        existing = next((a for a in _known_appeals(workflow) if a.is_open), None)
        return AppealSubmitResult(
            status="ALREADY_UNDER_REVIEW",
            appeal=existing,
            message="You already have an appeal under review.",
        )
    return AppealSubmitResult(status="SUBMITTED", appeal=appeal, message="Appeal submitted successfully.")
