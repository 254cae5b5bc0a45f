import pytest
from pydantic import ValidationError

from bookingauth.config import MIN_JWT_SECRET_LENGTH, Settings, get_settings, reset_settings_cache

GOOD_SECRET = "s" * MIN_JWT_SECRET_LENGTH


def test_defaults():
    settings = Settings(jwt_secret=GOOD_SECRET)

    assert settings.access_token_ttl_minutes == 60
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
    assert settings.session_ttl_seconds == 7 * 24 * 60 * 60
    assert settings.otp_ttl_minutes == 15
    assert settings.otp_length == 6
    assert settings.jwt_leeway_seconds == 30
    assert settings.cache_operation_timeout_seconds == 5.0
    assert settings.revoke_sessions_on_password_reset is True


def test_missing_secret_is_fatal():
    with pytest.raises(ValidationError):
        Settings()


def test_short_secret_is_fatal():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="s" * (MIN_JWT_SECRET_LENGTH - 1))


def test_from_env_reads_process_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JWT_SECRET", GOOD_SECRET)
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "15")
    monkeypatch.setenv("REVOKE_SESSIONS_ON_PASSWORD_RESET", "false")

    settings = Settings.from_env()

    assert settings.jwt_secret == GOOD_SECRET
    assert settings.access_token_ttl_minutes == 15
    assert settings.revoke_sessions_on_password_reset is False


def test_from_env_reads_dotenv_file(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("OTP_LENGTH", raising=False)
    (tmp_path / ".env").write_text("OTP_LENGTH=8\n")

    assert Settings.from_env().otp_length == 8


def test_environment_overrides_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("OTP_TTL_MINUTES=30\n")
    monkeypatch.setenv("OTP_TTL_MINUTES", "5")

    assert Settings.from_env().otp_ttl_minutes == 5


def test_from_env_without_secret_fails(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("JWT_SECRET", raising=False)

    with pytest.raises(ValidationError):
        Settings.from_env()


@pytest.mark.parametrize(
    "field,value",
    [
        ("access_token_ttl_minutes", 0),
        ("otp_length", 3),
        ("jwt_leeway_seconds", -1),
        ("cache_operation_timeout_seconds", 0),
    ],
)
def test_bounds(field, value):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=GOOD_SECRET, **{field: value})


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    reset_settings_cache()
    assert get_settings() is not first
