"""Application layer contracts for orchestrating high-level flows."""

from .appeal_models import (
    Appeal,
    AppealFilter,
    AppealStatus,
    AppealType,
    PagedAppeals,
    can_transition,
)
from .session_models import AccountStatus, IdentitySnapshot, ProviderStatus, Role, TokenPair, is_admin, is_banned
from .status_gate import ApplicationMode, DeletionCountdown, compute_deletion_countdown, compute_mode

__all__ = [
    "AccountStatus",
    "Appeal",
    "AppealFilter",
    "AppealStatus",
    "AppealType",
    "ApplicationMode",
    "DeletionCountdown",
    "IdentitySnapshot",
    "PagedAppeals",
    "ProviderStatus",
    "Role",
    "TokenPair",
    "can_transition",
    "compute_deletion_countdown",
    "compute_mode",
    "is_admin",
    "is_banned",
]
