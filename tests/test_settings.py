import pytest

import settings


@pytest.fixture(autouse=True)
def isolated_secrets(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRETS_FILE", str(tmp_path / "secrets.toml"))
    for key in ("API_BASE_URL", "REQUEST_TIMEOUT", "REFRESH_TIMEOUT", "SESSION_DB", "AUDIT_DB", "BACKEND_DB",
                "BAN_RETENTION_DAYS", "TOKEN_RENEWAL_RATIO", "BACKGROUND_RENEWAL",
                "IDENTITY_REFRESH_THROTTLE", "REJECTION_APPEAL_OUTCOME"):
        monkeypatch.delenv(key, raising=False)
    settings.reset_secrets_cache()
    yield
    settings.reset_secrets_cache()


def test_defaults_without_secrets_file():
    loaded = settings.load_settings()
    assert loaded == settings.Settings()
    assert settings.get_secret("API_BASE_URL") is None


def test_secret_wins_over_environment(tmp_path, monkeypatch):
    (tmp_path / "secrets.toml").write_text('API_BASE_URL = "https://secrets.example/api"\nREQUEST_TIMEOUT = 5\n')
    monkeypatch.setenv("API_BASE_URL", "https://env.example/api")
    monkeypatch.setenv("BAN_RETENTION_DAYS", "14")

    loaded = settings.load_settings()
    assert loaded.api_base_url == "https://secrets.example/api"
    assert loaded.request_timeout == 5.0
    assert loaded.ban_retention_days == 14


def test_boolean_and_outcome_parsing(monkeypatch):
    monkeypatch.setenv("BACKGROUND_RENEWAL", "false")
    monkeypatch.setenv("REJECTION_APPEAL_OUTCOME", "approved")
    loaded = settings.load_settings()
    assert loaded.background_renewal is False
    assert loaded.rejection_appeal_outcome == "APPROVED"


@pytest.mark.parametrize("key, value", [
    ("REQUEST_TIMEOUT", "fast"),
    ("BAN_RETENTION_DAYS", "a month"),
    ("TOKEN_RENEWAL_RATIO", "1.5"),
    ("REJECTION_APPEAL_OUTCOME", "MAYBE"),
])
def test_invalid_values_raise(monkeypatch, key, value):
    monkeypatch.setenv(key, value)
    with pytest.raises(ValueError) as excinfo:
        settings.load_settings()
    assert key in str(excinfo.value)
