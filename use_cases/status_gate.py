"""
Account status gate.

Classifies an identity snapshot into exactly one application mode and
projects the data-deletion countdown of a banned account. Everything here
is a pure function of its inputs: nothing is mutated and no navigation is
triggered, consumers act on the returned values.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Tuple

from use_cases.appeal_models import AppealType
from use_cases.session_models import IdentitySnapshot

BAN_RETENTION_DAYS = 30


class ApplicationMode(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    ACTIVE_SESSION = "ACTIVE_SESSION"
    BANNED = "BANNED"
    PROVIDER_PENDING = "PROVIDER_PENDING"
    PROVIDER_REJECTED = "PROVIDER_REJECTED"
    PROVIDER_SUSPENDED = "PROVIDER_SUSPENDED"


_PROVIDER_MODES = {
    "PENDING": ApplicationMode.PROVIDER_PENDING,
    "REJECTED": ApplicationMode.PROVIDER_REJECTED,
    "SUSPENDED": ApplicationMode.PROVIDER_SUSPENDED,
}

_APPEAL_TYPES_BY_MODE = {
    ApplicationMode.BANNED: ("UNBAN_REQUEST", "OTHER"),
    ApplicationMode.PROVIDER_SUSPENDED: ("SUSPENSION_APPEAL", "OTHER"),
    ApplicationMode.PROVIDER_REJECTED: ("REJECTION_APPEAL", "OTHER"),
    ApplicationMode.PROVIDER_PENDING: ("OTHER",),
}


def compute_mode(identity: Optional[IdentitySnapshot]) -> ApplicationMode:
    """First match wins: no identity, account ban, provider status, active."""
    if identity is None:
        return ApplicationMode.UNAUTHENTICATED
    # Account-level ban dominates any provider-level status, admins included.
    if identity.account_status == "BANNED":
        return ApplicationMode.BANNED
    if identity.role == "PROVIDER" and identity.provider_status in _PROVIDER_MODES:
        return _PROVIDER_MODES[identity.provider_status]
    return ApplicationMode.ACTIVE_SESSION


def is_restricted(mode: ApplicationMode) -> bool:
    return mode not in (ApplicationMode.UNAUTHENTICATED, ApplicationMode.ACTIVE_SESSION)


def allowed_appeal_types(mode: ApplicationMode) -> Tuple[AppealType, ...]:
    return _APPEAL_TYPES_BY_MODE.get(mode, ())


def default_appeal_type(mode: ApplicationMode) -> Optional[AppealType]:
    allowed = allowed_appeal_types(mode)
    return allowed[0] if allowed else None


@dataclass(frozen=True)
class DeletionCountdown:
    deadline: datetime
    remaining_seconds: int
    days: int
    hours: int
    minutes: int
    seconds: int
    expired: bool


def compute_deletion_countdown(
    banned_at: Optional[datetime],
    now: Optional[datetime] = None,
    retention_days: int = BAN_RETENTION_DAYS,
) -> Optional[DeletionCountdown]:
    """
    Remaining time until a banned account is purged, derived from bannedAt.
    Recomputing at any moment gives the exact value, there is no accumulated state.
    """
    if banned_at is None:
        return None
    if banned_at.tzinfo is None:
        banned_at = banned_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    deadline = banned_at + timedelta(days=retention_days)
    remaining = max(0, int((deadline - now) // timedelta(seconds=1)))

    days, rest = divmod(remaining, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)
    return DeletionCountdown(
        deadline=deadline,
        remaining_seconds=remaining,
        days=days,
        hours=hours,
        minutes=minutes,
        seconds=seconds,
        expired=remaining == 0,
    )


def countdown_for(
    identity: Optional[IdentitySnapshot],
    now: Optional[datetime] = None,
    retention_days: int = BAN_RETENTION_DAYS,
) -> Optional[DeletionCountdown]:
    if compute_mode(identity) is not ApplicationMode.BANNED:
        return None
    return compute_deletion_countdown(identity.banned_at, now=now, retention_days=retention_days)
