import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from infrastructure.repositories.sqlite_appeal_repository import SQLiteAppealRepository
from use_cases.appeal_models import (
    AppealAlreadyResolvedError,
    AppealFilter,
    AppealNotAllowedError,
    AppealNotFoundError,
    AppealValidationError,
    DuplicatePendingAppealError,
    InvalidAppealTransitionError,
)

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def repo(tmp_path, clock):
    repository = SQLiteAppealRepository(str(tmp_path / "backend.db"), clock=clock)
    repository.init_db()
    return repository


@pytest.fixture
def admin(repo, make_identity):
    identity = make_identity(id="admin", email="admin@example.com", role="ADMIN")
    repo.upsert_account(identity)
    return identity


@pytest.fixture
def banned_user(repo, make_identity):
    repo.upsert_account(make_identity())
    repo.ban_account("u1", reason="Spam", banned_at=T0)
    return repo.get_identity("u1")


def _provider(repo, make_identity, status):
    identity = make_identity(id="p1", email="p1@example.com", role="PROVIDER", provider_id="prov-1",
                             provider_status=status)
    repo.upsert_account(identity)
    return identity


def test_ban_account_sets_status_and_timestamp(banned_user):
    assert banned_user.account_status == "BANNED"
    assert banned_user.ban_reason == "Spam"
    assert banned_user.banned_at == T0


def test_ban_unknown_account(repo):
    with pytest.raises(KeyError):
        repo.ban_account("nobody")


def test_create_appeal(repo, banned_user, clock):
    clock.advance(hours=1)
    appeal = repo.create_appeal(banned_user, "UNBAN_REQUEST", "  Mistake  ", details="Not me")

    assert appeal.status == "PENDING"
    assert appeal.reason == "Mistake"
    assert appeal.subject_user_id == "u1"
    assert appeal.subject_provider_id is None
    assert appeal.created_at == T0 + timedelta(hours=1)


def test_second_open_appeal_is_rejected(repo, banned_user):
    repo.create_appeal(banned_user, "UNBAN_REQUEST", "Mistake")

    with pytest.raises(DuplicatePendingAppealError):
        repo.create_appeal(banned_user, "UNBAN_REQUEST", "Mistake again")
    with pytest.raises(DuplicatePendingAppealError):
        repo.create_appeal(banned_user, "OTHER", "Different type, same subject")


def test_under_review_appeal_still_blocks_new_ones(repo, banned_user, admin):
    appeal = repo.create_appeal(banned_user, "UNBAN_REQUEST", "Mistake")
    repo.review_appeal(appeal.id, "UNDER_REVIEW", None, admin)

    with pytest.raises(DuplicatePendingAppealError):
        repo.create_appeal(banned_user, "UNBAN_REQUEST", "Mistake")


def test_new_appeal_allowed_after_rejection(repo, banned_user, admin, clock):
    first = repo.create_appeal(banned_user, "UNBAN_REQUEST", "Mistake")
    repo.review_appeal(first.id, "REJECTED", "Evidence is clear", admin)

    clock.advance(hours=1)
    second = repo.create_appeal(banned_user, "UNBAN_REQUEST", "Apology")
    assert second.id != first.id
    assert [a.id for a in repo.get_my_appeals(banned_user)] == [second.id, first.id]


def test_unique_index_backs_the_invariant(repo, banned_user):
    repo.create_appeal(banned_user, "UNBAN_REQUEST", "Mistake")
    with sqlite3.connect(repo.db_path) as conn:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("""
                INSERT INTO appeals (id, subject_user_id, type, reason, status, created_at, updated_at)
                VALUES ('x', 'u1', 'OTHER', 'r', 'PENDING', 'now', 'now')
            """)


def test_appeal_type_must_match_status(repo, banned_user, make_identity):
    with pytest.raises(AppealNotAllowedError):
        repo.create_appeal(banned_user, "SUSPENSION_APPEAL", "Mistake")

    active = make_identity(id="u2", email="u2@example.com")
    repo.upsert_account(active)
    with pytest.raises(AppealNotAllowedError):
        repo.create_appeal(active, "OTHER", "Just because")


def test_backend_uses_its_own_status_not_the_callers(repo, make_identity):
    stale = make_identity(account_status="BANNED")
    repo.upsert_account(make_identity())
    with pytest.raises(AppealNotAllowedError):
        repo.create_appeal(stale, "UNBAN_REQUEST", "Mistake")


def test_reason_is_required(repo, banned_user):
    with pytest.raises(AppealValidationError):
        repo.create_appeal(banned_user, "UNBAN_REQUEST", "   ")


def test_approving_unban_reactivates_account(repo, banned_user, admin, clock):
    appeal = repo.create_appeal(banned_user, "UNBAN_REQUEST", "Mistake")
    clock.advance(hours=2)

    resolved = repo.review_appeal(appeal.id, "APPROVED", None, admin)

    assert resolved.status == "APPROVED"
    assert resolved.reviewed_by == "admin"
    assert resolved.reviewed_at == T0 + timedelta(hours=2)
    identity = repo.get_identity("u1")
    assert identity.account_status == "ACTIVE"
    assert identity.banned_at is None


def test_resolution_is_one_way(repo, banned_user, admin):
    appeal = repo.create_appeal(banned_user, "UNBAN_REQUEST", "Mistake")
    repo.review_appeal(appeal.id, "APPROVED", None, admin)

    with pytest.raises(AppealAlreadyResolvedError):
        repo.review_appeal(appeal.id, "REJECTED", "Changed my mind", admin)
    assert repo.get_appeal(appeal.id).status == "APPROVED"


def test_under_review_cannot_repeat(repo, banned_user, admin):
    appeal = repo.create_appeal(banned_user, "UNBAN_REQUEST", "Mistake")
    repo.review_appeal(appeal.id, "UNDER_REVIEW", None, admin)
    with pytest.raises(InvalidAppealTransitionError):
        repo.review_appeal(appeal.id, "UNDER_REVIEW", None, admin)


def test_rejection_requires_notes_and_keeps_ban(repo, banned_user, admin):
    appeal = repo.create_appeal(banned_user, "UNBAN_REQUEST", "Mistake")

    with pytest.raises(AppealValidationError):
        repo.review_appeal(appeal.id, "REJECTED", "  ", admin)
    assert repo.get_appeal(appeal.id).status == "PENDING"

    repo.review_appeal(appeal.id, "REJECTED", "Confirmed spam", admin)
    assert repo.get_identity("u1").account_status == "BANNED"


def test_approving_suspension_appeal(repo, admin, make_identity):
    provider = _provider(repo, make_identity, "SUSPENDED")
    appeal = repo.create_appeal(provider, "SUSPENSION_APPEAL", "Fixed the issue")
    assert appeal.subject_provider_id == "prov-1"

    repo.review_appeal(appeal.id, "APPROVED", None, admin)
    assert repo.get_identity("p1").provider_status == "APPROVED"


@pytest.mark.parametrize("outcome", ["PENDING", "APPROVED"])
def test_approving_rejection_appeal_follows_policy(tmp_path, make_identity, outcome):
    repo = SQLiteAppealRepository(str(tmp_path / "backend.db"), rejection_appeal_outcome=outcome)
    repo.init_db()
    admin = make_identity(id="admin", email="admin@example.com", role="ADMIN")
    repo.upsert_account(admin)
    provider = _provider(repo, make_identity, "REJECTED")

    appeal = repo.create_appeal(provider, "REJECTION_APPEAL", "Documents uploaded")
    repo.review_appeal(appeal.id, "APPROVED", None, admin)

    identity = repo.get_identity("p1")
    assert identity.provider_status == outcome
    assert identity.rejection_reason is None


def test_approving_other_appeal_changes_no_status(repo, admin, make_identity):
    provider = _provider(repo, make_identity, "PENDING")
    appeal = repo.create_appeal(provider, "OTHER", "Please hurry")
    repo.review_appeal(appeal.id, "APPROVED", None, admin)
    assert repo.get_identity("p1").provider_status == "PENDING"


def test_invalid_rejection_outcome(tmp_path):
    with pytest.raises(ValueError):
        SQLiteAppealRepository(str(tmp_path / "backend.db"), rejection_appeal_outcome="BANNED")


def test_get_unknown_appeal(repo, admin):
    with pytest.raises(AppealNotFoundError):
        repo.get_appeal("missing")
    with pytest.raises(AppealNotFoundError):
        repo.review_appeal("missing", "APPROVED", None, admin)


def test_list_appeals_filters_and_pages(repo, clock, make_identity):
    for i in range(5):
        user = make_identity(id=f"u{i}", email=f"u{i}@example.com")
        repo.upsert_account(user)
        repo.ban_account(user.id, banned_at=T0)
        clock.advance(minutes=1)
        repo.create_appeal(repo.get_identity(user.id), "UNBAN_REQUEST" if i % 2 else "OTHER", "Mistake")

    page = repo.list_appeals(AppealFilter(page=1, limit=2))
    assert page.total == 5
    assert page.total_pages == 3
    assert [a.subject_user_id for a in page.data] == ["u4", "u3"]

    last = repo.list_appeals(AppealFilter(page=3, limit=2))
    assert [a.subject_user_id for a in last.data] == ["u0"]

    unban = repo.list_appeals(AppealFilter(type="UNBAN_REQUEST"))
    assert {a.subject_user_id for a in unban.data} == {"u1", "u3"}

    with pytest.raises(AppealValidationError):
        repo.list_appeals(AppealFilter(limit=1000))


def test_delete_expired_bans(repo, banned_user, make_identity):
    recent = make_identity(id="u2", email="u2@example.com")
    repo.upsert_account(recent)
    repo.ban_account("u2", banned_at=T0 + timedelta(days=10))
    appeal = repo.create_appeal(banned_user, "UNBAN_REQUEST", "Mistake")

    assert repo.delete_expired_bans(now=T0 + timedelta(days=30) - timedelta(seconds=1)) == []
    assert repo.delete_expired_bans(now=T0 + timedelta(days=30)) == ["u1"]
    assert repo.get_identity("u1") is None
    assert repo.get_identity("u2") is not None
    # Appeals stay as the audit trail.
    assert repo.get_appeal(appeal.id).subject_user_id == "u1"
