import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from settings import Settings
from use_cases.session_models import IdentitySnapshot, TokenPair


def _response(status_code, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = b"" if payload is None else json.dumps(payload).encode("utf-8")
    resp.json.return_value = payload
    resp.text = resp.content.decode("utf-8")
    return resp


def _identity(**overrides):
    values = dict(id="u1", email="u1@example.com", name="User One", role="CUSTOMER")
    values.update(overrides)
    return IdentitySnapshot(**values)


@pytest.fixture
def make_response():
    return _response


@pytest.fixture
def make_identity():
    return _identity


@pytest.fixture
def token_pair():
    return TokenPair(
        access_token="access-1",
        refresh_token="refresh-1",
        expires_in=900,
        issued_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        api_base_url="http://api.test/api",
        session_db=str(tmp_path / "session.db"),
        audit_db=str(tmp_path / "audit.db"),
        backend_db=str(tmp_path / "backend.db"),
        background_renewal=False,
        identity_refresh_throttle=10.0,
    )
