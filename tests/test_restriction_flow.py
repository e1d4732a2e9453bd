from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from infrastructure.api.errors import TransportError
from use_cases.appeal_models import Appeal
from use_cases.restriction_flow import build_restriction_context
from use_cases.status_gate import ApplicationMode
from utils.session_manager import SessionContext

BANNED_AT = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _appeal(appeal_id, status, created_at):
    return Appeal(id=appeal_id, subject_user_id="u1", type="UNBAN_REQUEST", reason="Mistake",
                  status=status, created_at=created_at)


@pytest.fixture
def gateway():
    return MagicMock()


@pytest.fixture
def context(test_settings, gateway):
    ctx = SessionContext(test_settings, http_session=MagicMock(), appeal_gateway=gateway).init()
    yield ctx
    ctx.teardown()


def test_active_session_has_no_restriction(context, gateway, token_pair, make_identity):
    context.store.start_session(token_pair, make_identity())

    result = build_restriction_context(context)

    assert result.mode is ApplicationMode.ACTIVE_SESSION
    assert result.countdown is None
    assert result.appeals == ()
    gateway.get_my_appeals.assert_not_called()


def test_banned_subject_with_pending_appeal(context, gateway, token_pair, make_identity):
    context.store.start_session(token_pair, make_identity(account_status="BANNED", banned_at=BANNED_AT))
    gateway.get_my_appeals.return_value = [
        _appeal("a0", "REJECTED", BANNED_AT + timedelta(hours=1)),
        _appeal("a1", "PENDING", BANNED_AT + timedelta(hours=5)),
    ]

    result = build_restriction_context(context, now=BANNED_AT + timedelta(days=1))

    assert result.mode is ApplicationMode.BANNED
    assert result.countdown.days == 29
    assert [a.id for a in result.appeals] == ["a1", "a0"]
    assert result.has_pending_appeal is True
    assert result.allowed_appeal_types == ("UNBAN_REQUEST", "OTHER")
    assert result.can_appeal is False
    assert result.stale is False


def test_banned_subject_can_appeal_after_rejection(context, gateway, token_pair, make_identity):
    context.store.start_session(token_pair, make_identity(account_status="BANNED", banned_at=BANNED_AT))
    gateway.get_my_appeals.return_value = [_appeal("a0", "REJECTED", BANNED_AT)]

    result = build_restriction_context(context, now=BANNED_AT)

    assert result.has_pending_appeal is False
    assert result.can_appeal is True


def test_network_failure_falls_back_to_last_known_appeals(context, gateway, token_pair, make_identity):
    context.store.start_session(token_pair, make_identity(role="PROVIDER", provider_status="SUSPENDED"))
    pending = _appeal("a1", "PENDING", BANNED_AT)
    gateway.get_my_appeals.return_value = [pending]
    build_restriction_context(context)

    gateway.get_my_appeals.side_effect = TransportError("network down")
    result = build_restriction_context(context)

    assert result.mode is ApplicationMode.PROVIDER_SUSPENDED
    assert result.stale is True
    assert result.appeals == (pending,)
    assert result.has_pending_appeal is True


def test_logout_drops_cached_appeals(context, gateway, token_pair, make_identity):
    context.store.start_session(token_pair, make_identity(account_status="BANNED", banned_at=BANNED_AT))
    gateway.get_my_appeals.return_value = [_appeal("a1", "PENDING", BANNED_AT)]
    build_restriction_context(context)

    context.store.clear("logout")
    context.store.start_session(token_pair, make_identity(account_status="BANNED", banned_at=BANNED_AT))
    gateway.get_my_appeals.side_effect = TransportError("network down")

    result = build_restriction_context(context)
    assert result.stale is True
    assert result.appeals == ()
