from unittest.mock import MagicMock

import pytest
import requests

import auth
from utils.session_manager import SessionContext

USER = {"id": "u1", "email": "u1@example.com", "name": "User One", "accountRole": "CUSTOMER", "accountStatus": "ACTIVE"}
TOKENS = {"accessToken": "access-1", "refreshToken": "refresh-1", "expiresIn": "15m"}


def _router(make_response, routes):
    """routes: {(method, path suffix): response or exception}"""
    def handler(method, url, json=None, params=None, headers=None, timeout=None):
        for (route_method, suffix), result in routes.items():
            if method == route_method and url.endswith(suffix):
                if isinstance(result, Exception):
                    raise result
                return result
        return make_response(404, {"error": "Not found"})
    return handler


def _actions(context):
    return [row[4] for row in context.audit_repo.get_logs()]


@pytest.fixture
def http():
    return MagicMock()


@pytest.fixture
def context(test_settings, http):
    ctx = SessionContext(test_settings, http_session=http).init()
    yield ctx
    ctx.teardown()


def _login(context, http, make_response):
    http.request.side_effect = _router(make_response, {
        ("POST", "/auth/login"): make_response(200, {"user": USER, "tokens": TOKENS}),
    })
    return auth.login(context, "u1@example.com", "secret")


def test_successful_login(context, http, make_response):
    identity = _login(context, http, make_response)

    assert identity.id == "u1"
    assert context.is_authenticated
    assert context.store.refresh_token == "refresh-1"
    assert context.store.snapshot().tokens.expires_in == 900
    assert "LOGIN_SUCCESS" in _actions(context)
    _, kwargs = http.request.call_args
    assert "Authorization" not in kwargs["headers"]


def test_invalid_credentials(context, http, make_response):
    http.request.side_effect = _router(make_response, {
        ("POST", "/auth/login"): make_response(401, {"error": "Invalid email or password"}),
    })

    with pytest.raises(auth.InvalidCredentialsError) as excinfo:
        auth.login(context, "u1@example.com", "wrong")

    assert "Invalid email or password" in str(excinfo.value)
    assert not context.is_authenticated
    assert "LOGIN_FAIL" in _actions(context)


def test_login_requires_email_and_password(context, http):
    with pytest.raises(auth.InvalidCredentialsError):
        auth.login(context, "  ", "secret")
    http.request.assert_not_called()


def test_logout_clears_session_and_revokes_refresh_token(context, http, make_response):
    _login(context, http, make_response)
    seen = []
    context.subscribe("logged_out", lambda event, payload: seen.append(payload["reason"]))
    http.request.side_effect = _router(make_response, {("POST", "/auth/logout"): make_response(204)})

    assert auth.logout(context) is True

    _, kwargs = http.request.call_args
    assert kwargs["json"] == {"refreshToken": "refresh-1"}
    assert not context.is_authenticated
    assert context.identity is None
    assert context.token_repo.load() == (None, None)
    assert seen == ["logout"]
    assert "LOGOUT" in _actions(context)
    assert auth.logout(context) is False


def test_logout_survives_server_failure(context, http, make_response):
    _login(context, http, make_response)
    http.request.side_effect = _router(make_response, {
        ("POST", "/auth/logout"): requests.ConnectionError("network down"),
    })

    assert auth.logout(context) is True
    assert not context.is_authenticated


def test_refresh_identity_is_throttled(context, http, make_response):
    _login(context, http, make_response)
    http.request.reset_mock()
    http.request.side_effect = _router(make_response, {("GET", "/users/me"): make_response(200, USER)})

    auth.refresh_identity(context)
    auth.refresh_identity(context)
    assert http.request.call_count == 0

    auth.refresh_identity(context, force=True)
    assert http.request.call_count == 1


def test_refresh_identity_picks_up_ban(context, http, make_response):
    _login(context, http, make_response)
    changed = []
    context.subscribe("identity_changed", lambda event, payload: changed.append(payload["identity"]))
    banned = dict(USER, accountStatus="BANNED", bannedAt="2026-01-01T00:00:00Z", banReason="Spam")
    http.request.side_effect = _router(make_response, {("GET", "/users/me"): make_response(200, banned)})

    identity = auth.refresh_identity(context, force=True)

    assert identity.account_status == "BANNED"
    assert context.mode.value == "BANNED"
    assert changed and changed[0].ban_reason == "Spam"


def test_refresh_identity_keeps_snapshot_on_network_error(context, http, make_response):
    _login(context, http, make_response)
    http.request.side_effect = requests.Timeout("slow")

    identity = auth.refresh_identity(context, force=True)

    assert identity is not None and identity.id == "u1"
    assert context.is_authenticated


def test_refresh_identity_returns_none_when_session_expired(context, http, make_response):
    _login(context, http, make_response)
    http.request.side_effect = _router(make_response, {
        ("GET", "/users/me"): make_response(401, {"error": "Token expired"}),
    })
    http.post.return_value = make_response(401, {"error": "Invalid refresh token"})

    assert auth.refresh_identity(context, force=True) is None
    assert not context.is_authenticated


def test_restore_session_from_disk(test_settings, http, make_response):
    first = SessionContext(test_settings, http_session=http).init()
    _login(first, http, make_response)
    first.teardown()

    second = SessionContext(test_settings, http_session=http).init()
    http.request.side_effect = _router(make_response, {("GET", "/users/me"): make_response(200, USER)})
    try:
        identity = auth.restore_session(second)
        assert identity.id == "u1"
        _, kwargs = http.request.call_args
        assert kwargs["headers"]["Authorization"] == "Bearer access-1"
    finally:
        second.teardown()


def test_restore_session_without_persisted_tokens(context, http):
    assert auth.restore_session(context) is None
    http.request.assert_not_called()


def test_identity_fetched_for_previous_session_is_discarded(context, http, make_response, make_identity, token_pair):
    _login(context, http, make_response)
    fetched_epoch = context.store.epoch
    context.auth_api = MagicMock()

    def get_me_then_switch():
        context.store.clear("logout")
        context.store.start_session(token_pair, make_identity(id="u2", email="u2@example.com"))
        return make_identity(account_status="BANNED"), fetched_epoch

    context.auth_api.get_me.side_effect = get_me_then_switch

    assert auth.refresh_identity(context, force=True) is None
    assert context.store.identity.id == "u2"
    assert context.mode.value != "BANNED"
