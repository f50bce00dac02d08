"""Tests for settings loading and the password policy."""

import pytest
from pydantic import ValidationError

from authflow.config import MailTransport, PasswordPolicy, Settings


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret="x" * 40)

        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_days == 7
        assert settings.otp_digits == 4
        assert settings.otp_max_attempts == 5
        assert settings.otp_ttl_minutes == 30
        assert settings.registration_ttl_minutes == 30
        assert settings.otp_request_limit == 5
        assert settings.otp_request_window_seconds == 900
        assert settings.global_rate_limit_capacity == 10
        assert settings.global_rate_limit_window_seconds == 1
        assert settings.cleanup_interval_minutes == 30

    def test_from_env_reads_declared_names(self, monkeypatch):
        monkeypatch.setenv("OTP_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("MAIL_TRANSPORT", "SMTP")
        monkeypatch.setenv("REVOKE_ON_REFRESH_REUSE", "false")

        settings = Settings.from_env()

        assert settings.otp_max_attempts == 3
        assert settings.mail_transport is MailTransport.SMTP
        assert settings.revoke_on_refresh_reuse is False

    def test_mail_transport_is_inferred(self):
        assert Settings(jwt_secret="x" * 40).resolved_mail_transport is MailTransport.LOG
        assert (
            Settings(jwt_secret="x" * 40, smtp_host="smtp.example.test").resolved_mail_transport
            is MailTransport.SMTP
        )
        assert (
            Settings(jwt_secret="x" * 40, mail_api_key="k").resolved_mail_transport
            is MailTransport.HTTP
        )

    def test_missing_secret_is_generated_and_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text().strip() == first.jwt_secret

    def test_otp_digits_lower_bound(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, otp_digits=3)

    def test_password_bounds_are_checked(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, password_min_length=20, password_max_length=10)


class TestPasswordPolicy:
    def test_default_policy(self):
        policy = PasswordPolicy()

        assert policy.violations("Str0ng!Pass") == []
        assert len(policy.violations("weakpass")) == 3
        assert policy.violations("Sh0rt!") == ["password must be at least 8 characters"]

    def test_legacy_profile(self):
        policy = PasswordPolicy(
            min_length=6, max_length=12, min_uppercase=1, min_digits=3, min_symbols=1
        )

        assert policy.violations("Ab123!") == []
        assert policy.violations("Ab12!x") == ["password must contain at least 3 digit(s)"]
        assert "at most 12" in policy.violations("Abc123!abcdefgh")[0]

    def test_settings_build_policy(self):
        settings = Settings(jwt_secret="x" * 40, password_min_digits=2)

        assert settings.password_policy().min_digits == 2
        assert "2 number(s)" in settings.password_policy().describe()
