import pytest
from pydantic import ValidationError

from shopauth.config import Settings, get_settings, reset_settings_cache

ACCESS_SECRET = "a" * 40
REFRESH_SECRET = "r" * 40
SESSION_SECRET = "s" * 40


def _settings(**overrides):
    values = {
        "jwt_secret": ACCESS_SECRET,
        "jwt_refresh_secret": REFRESH_SECRET,
        "session_secret": SESSION_SECRET,
    }
    values.update(overrides)
    return Settings(**values)


class TestSettingsDefaults:
    def test_documented_defaults(self):
        settings = _settings()
        assert settings.access_token_ttl_seconds == 15 * 60
        assert settings.refresh_token_ttl_seconds == 7 * 24 * 3600
        assert settings.lockout_threshold == 5
        assert settings.lockout_duration_minutes == 30
        assert settings.jwt_leeway_seconds == 0
        assert settings.rotate_refresh_tokens is False
        assert settings.revocation_fail_open is True
        assert settings.session_cookie_name == "session_id"
        assert settings.jwt_issuer == "ecommerce-api"

    def test_missing_secrets_are_generated(self):
        settings = Settings()
        assert len(settings.jwt_secret) >= 32
        assert settings.jwt_secret != settings.jwt_refresh_secret
        assert settings.session_secret


class TestSettingsValidation:
    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            _settings(jwt_secret="too-short")

    def test_shared_access_and_refresh_secret_rejected(self):
        with pytest.raises(ValidationError):
            _settings(jwt_refresh_secret=ACCESS_SECRET)

    @pytest.mark.parametrize(
        "field", ["access_token_ttl_minutes", "lockout_threshold", "lockout_duration_minutes", "session_ttl_hours"]
    )
    def test_non_positive_values_rejected(self, field):
        with pytest.raises(ValidationError):
            _settings(**{field: 0})

    def test_timeouts_must_be_positive(self):
        with pytest.raises(ValidationError):
            _settings(cache_operation_timeout_seconds=0)


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "3")
        monkeypatch.setenv("ROTATE_REFRESH_TOKENS", "true")
        monkeypatch.setenv("REVOCATION_FAIL_OPEN", "false")
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        settings = Settings.from_env()
        assert settings.lockout_threshold == 3
        assert settings.rotate_refresh_tokens is True
        assert settings.revocation_fail_open is False
        assert settings.access_token_ttl_seconds == 300

    def test_reads_dotenv_file(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("LOCKOUT_DURATION_MINUTES", raising=False)
        (tmp_path / ".env").write_text("LOCKOUT_DURATION_MINUTES=45\n")
        assert Settings.from_env().lockout_duration_minutes == 45

    def test_environment_beats_dotenv(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("LOCKOUT_DURATION_MINUTES=45\n")
        monkeypatch.setenv("LOCKOUT_DURATION_MINUTES", "10")
        assert Settings.from_env().lockout_duration_minutes == 10

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")
        assert get_settings().lockout_threshold == first.lockout_threshold
        reset_settings_cache()
        assert get_settings().lockout_threshold == 7
