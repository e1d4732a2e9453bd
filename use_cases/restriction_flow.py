"""Restricted-account view model: mode, deletion countdown and the subject's appeals."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

from infrastructure.api.errors import TransportError
from use_cases.appeal_models import Appeal, AppealType
from use_cases.status_gate import (
    ApplicationMode,
    DeletionCountdown,
    allowed_appeal_types,
    compute_mode,
    is_restricted,
)
from utils.session_manager import SessionContext

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestrictionContext:
    mode: ApplicationMode
    countdown: Optional[DeletionCountdown] = None
    appeals: Tuple[Appeal, ...] = field(default_factory=tuple)
    has_pending_appeal: bool = False
    allowed_appeal_types: Tuple[AppealType, ...] = field(default_factory=tuple)
    # True when appeals come from the last successful fetch.
    stale: bool = False

    @property
    def can_appeal(self) -> bool:
        return bool(self.allowed_appeal_types) and not self.has_pending_appeal


def build_restriction_context(context: SessionContext, now: Optional[datetime] = None) -> RestrictionContext:
    identity = context.identity
    mode = compute_mode(identity)
    if not is_restricted(mode):
        return RestrictionContext(mode=mode)

    stale = False
    try:
        appeals = context.appeals.get_my_appeals()
    except TransportError as e:
        log.warning(f"Could not load appeals, showing last known list: {e}")
        appeals = context.appeals.cached_appeals() or []
        stale = True

    return RestrictionContext(
        mode=mode,
        countdown=context.countdown(now=now),
        appeals=tuple(appeals),
        has_pending_appeal=context.appeals.has_pending_appeal(appeals),
        allowed_appeal_types=allowed_appeal_types(mode),
        stale=stale,
    )
