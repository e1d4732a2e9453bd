"""Appeal DTOs and the appeal error taxonomy."""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from use_cases.session_models import format_timestamp, parse_timestamp

AppealType = Literal["UNBAN_REQUEST", "SUSPENSION_APPEAL", "REJECTION_APPEAL", "OTHER"]
AppealStatus = Literal["PENDING", "UNDER_REVIEW", "APPROVED", "REJECTED"]
ReviewStatus = Literal["APPROVED", "REJECTED", "UNDER_REVIEW"]

APPEAL_TYPES = ("UNBAN_REQUEST", "SUSPENSION_APPEAL", "REJECTION_APPEAL", "OTHER")
APPEAL_STATUSES = ("PENDING", "UNDER_REVIEW", "APPROVED", "REJECTED")
REVIEW_STATUSES = ("APPROVED", "REJECTED", "UNDER_REVIEW")
OPEN_STATUSES = ("PENDING", "UNDER_REVIEW")
TERMINAL_STATUSES = ("APPROVED", "REJECTED")

# Reason categories offered to a banned subject.
APPEAL_REASONS = ("Mistake", "Compromised", "Apology", "Other")

MAX_REASON_LENGTH = 200
MAX_PAGE_LIMIT = 100

_TRANSITIONS = {
    "PENDING": ("UNDER_REVIEW", "APPROVED", "REJECTED"),
    "UNDER_REVIEW": ("APPROVED", "REJECTED"),
    "APPROVED": (),
    "REJECTED": (),
}


class AppealError(Exception):
    pass


class AppealValidationError(AppealError, ValueError):
    """Missing or malformed input, raised before anything is sent or stored."""


class AppealNotAllowedError(AppealError):
    """The subject's current status does not permit this appeal."""


class AppealNotFoundError(AppealError):
    pass


class AppealConflictError(AppealError):
    """Informational conflicts: the UI should degrade, not block."""


class DuplicatePendingAppealError(AppealConflictError):
    pass


class AppealAlreadyResolvedError(AppealConflictError):
    pass


class InvalidAppealTransitionError(AppealConflictError):
    pass


def validate_new_appeal(appeal_type: str, reason: Optional[str], details: Optional[str] = None) -> Tuple[str, Optional[str]]:
    """Returns the normalized (reason, details) or raises AppealValidationError."""
    if appeal_type not in APPEAL_TYPES:
        raise AppealValidationError(f"Unknown appeal type: {appeal_type}")
    reason = (reason or "").strip()
    if not reason:
        raise AppealValidationError("reason is required")
    if len(reason) > MAX_REASON_LENGTH:
        raise AppealValidationError(f"reason must be at most {MAX_REASON_LENGTH} characters")
    details = (details or "").strip() or None
    return reason, details


def validate_review(status: str, admin_notes: Optional[str]) -> Optional[str]:
    """Returns the normalized admin notes or raises AppealValidationError."""
    if status not in REVIEW_STATUSES:
        raise AppealValidationError(f"Invalid review status: {status}")
    admin_notes = (admin_notes or "").strip() or None
    if status == "REJECTED" and admin_notes is None:
        raise AppealValidationError("adminNotes is required when rejecting an appeal")
    return admin_notes


def can_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, ())


def ensure_transition(current: str, target: str) -> None:
    if current in TERMINAL_STATUSES:
        raise AppealAlreadyResolvedError(f"Appeal is already {current}")
    if not can_transition(current, target):
        raise InvalidAppealTransitionError(f"Cannot move appeal from {current} to {target}")


@dataclass(frozen=True)
class Appeal:
    id: str
    subject_user_id: str
    type: AppealType
    reason: str
    status: AppealStatus
    created_at: datetime
    subject_provider_id: Optional[str] = None
    details: Optional[str] = None
    admin_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Appeal":
        provider = payload.get("provider") or {}
        subject_user_id = (
            payload.get("subjectUserId")
            or payload.get("userId")
            or (provider.get("user") or {}).get("id")
        )
        subject_provider_id = payload.get("subjectProviderId") or payload.get("providerId")
        reviewed_by = payload.get("reviewedBy") or (payload.get("reviewer") or {}).get("id")
        return cls(
            id=str(payload["id"]),
            subject_user_id=str(subject_user_id) if subject_user_id is not None else "",
            subject_provider_id=str(subject_provider_id) if subject_provider_id is not None else None,
            type=payload.get("type") or "OTHER",
            reason=payload.get("reason") or "",
            details=payload.get("details"),
            status=payload.get("status") or "PENDING",
            admin_notes=payload.get("adminNotes"),
            reviewed_by=str(reviewed_by) if reviewed_by is not None else None,
            reviewed_at=parse_timestamp(payload.get("reviewedAt")),
            created_at=parse_timestamp(payload.get("createdAt")),
            updated_at=parse_timestamp(payload.get("updatedAt")),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subjectUserId": self.subject_user_id,
            "subjectProviderId": self.subject_provider_id,
            "type": self.type,
            "reason": self.reason,
            "details": self.details,
            "status": self.status,
            "adminNotes": self.admin_notes,
            "reviewedBy": self.reviewed_by,
            "reviewedAt": format_timestamp(self.reviewed_at),
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }


@dataclass(frozen=True)
class AppealFilter:
    status: Optional[AppealStatus] = None
    type: Optional[AppealType] = None
    page: int = 1
    limit: int = 20

    def validate(self) -> "AppealFilter":
        if self.status is not None and self.status not in APPEAL_STATUSES:
            raise AppealValidationError(f"Unknown appeal status filter: {self.status}")
        if self.type is not None and self.type not in APPEAL_TYPES:
            raise AppealValidationError(f"Unknown appeal type filter: {self.type}")
        if self.page < 1:
            raise AppealValidationError("page must be >= 1")
        if not 1 <= self.limit <= MAX_PAGE_LIMIT:
            raise AppealValidationError(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
        return self

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"page": self.page, "limit": self.limit}
        if self.status:
            params["status"] = self.status
        if self.type:
            params["type"] = self.type
        return params


@dataclass(frozen=True)
class PagedAppeals:
    data: Tuple[Appeal, ...] = field(default_factory=tuple)
    page: int = 1
    limit: int = 20
    total: int = 0

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PagedAppeals":
        pagination = payload.get("pagination") or {}
        items = [Appeal.from_payload(item) for item in payload.get("data") or []]
        return cls(
            data=tuple(items),
            page=int(pagination.get("page", 1)),
            limit=int(pagination.get("limit", 20)),
            total=int(pagination.get("total", len(items))),
        )


def newest_first(appeals: List[Appeal]) -> List[Appeal]:
    return sorted(appeals, key=lambda a: a.created_at.timestamp() if a.created_at else 0.0, reverse=True)
