"""Tests for outgoing mail transports."""

from unittest.mock import MagicMock, patch

import httpx

from authflow.config import MailTransport
from authflow.service.email import EmailService


def _http_service():
    return EmailService(
        transport=MailTransport.HTTP,
        api_url="https://mail.example.test/emails",
        api_key="key-123",
        from_email="no-reply@example.com",
    )


def _response(status):
    return httpx.Response(status, request=httpx.Request("POST", "https://mail.example.test/emails"))


class TestLogTransport:
    def test_unconfigured_service_logs_instead_of_sending(self):
        service = EmailService()

        assert service.is_configured is False
        with patch("authflow.service.email.smtplib.SMTP") as smtp, patch(
            "authflow.service.email.httpx.post"
        ) as post:
            assert service.send_otp("mia@example.com", "1234") is True
        smtp.assert_not_called()
        post.assert_not_called()

    def test_selected_transport_without_settings_fails_delivery(self):
        smtp_without_host = EmailService(transport=MailTransport.SMTP, smtp_host=None)
        http_without_key = EmailService(
            transport=MailTransport.HTTP,
            api_url="https://mail.example.test/emails",
            from_email="no-reply@example.com",
        )

        with patch("authflow.service.email.smtplib.SMTP") as smtp, patch(
            "authflow.service.email.httpx.post"
        ) as post:
            assert smtp_without_host.send_otp("mia@example.com", "4821") is False
            assert http_without_key.send_otp("mia@example.com", "4821") is False
        smtp.assert_not_called()
        post.assert_not_called()


class TestHttpTransport:
    def test_posts_message_with_bearer_key(self):
        service = _http_service()

        with patch("authflow.service.email.httpx.post", return_value=_response(200)) as post:
            assert service.send_otp("mia@example.com", "4821", expires_minutes=30) is True

        _, kwargs = post.call_args
        assert kwargs["headers"]["Authorization"] == "Bearer key-123"
        assert kwargs["json"]["to"] == ["mia@example.com"]
        assert "4821" in kwargs["json"]["text"]
        assert "4821" in kwargs["json"]["html"]

    def test_rejected_request_returns_false(self):
        service = _http_service()

        with patch("authflow.service.email.httpx.post", return_value=_response(422)):
            assert service.send_otp("mia@example.com", "4821") is False

    def test_timeout_returns_false(self):
        service = _http_service()

        with patch(
            "authflow.service.email.httpx.post", side_effect=httpx.ConnectTimeout("slow")
        ):
            assert service.send_otp("mia@example.com", "4821") is False


class TestSmtpTransport:
    def test_starttls_login_and_send(self):
        service = EmailService(
            transport=MailTransport.SMTP,
            smtp_host="smtp.example.test",
            smtp_user="mailer",
            smtp_password="secret",
            from_email="no-reply@example.com",
        )
        server = MagicMock()

        with patch("authflow.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            assert service.send_welcome("mia@example.com", "Mia") is True

        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")
        assert server.sendmail.call_args.args[:2] == ("no-reply@example.com", "mia@example.com")

    def test_connection_refused_returns_false(self):
        service = EmailService(
            transport=MailTransport.SMTP,
            smtp_host="smtp.example.test",
            from_email="no-reply@example.com",
        )

        with patch(
            "authflow.service.email.smtplib.SMTP", side_effect=ConnectionRefusedError("refused")
        ):
            assert service.send_otp("mia@example.com", "4821") is False
