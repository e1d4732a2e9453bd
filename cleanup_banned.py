"""Purge accounts whose ban retention window has elapsed from the embedded backend."""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from infrastructure.observability import setup_observability
from infrastructure.repositories.sqlite_appeal_repository import SQLiteAppealRepository
from infrastructure.repositories.sqlite_audit_repository import AuditAction, SQLiteAuditRepository
from settings import Settings, load_settings

log = logging.getLogger(__name__)


def cleanup_banned(settings: Settings, now: Optional[datetime] = None) -> List[str]:
    repo = SQLiteAppealRepository(settings.backend_db, rejection_appeal_outcome=settings.rejection_appeal_outcome)
    repo.init_db()
    audit_repo = SQLiteAuditRepository(settings.audit_db)
    audit_repo.init_db()

    now = now or datetime.now(timezone.utc)
    log.info(f"Purging accounts banned for more than {settings.ban_retention_days} days")
    deleted = repo.delete_expired_bans(now=now, retention_days=settings.ban_retention_days)

    for user_id in deleted:
        audit_repo.log_action(
            AuditAction.BANNED_ACCOUNT_PURGE,
            target_type="account",
            target_id=user_id,
            metadata={"reason": "ban_retention_elapsed"},
        )
    log.info(f"Purged {len(deleted)} account(s)")
    return deleted


if __name__ == "__main__":
    setup_observability()
    cleanup_banned(load_settings())
