from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import httpx

from authflow.config import MailTransport
from authflow.logging import get_logger

logger = get_logger(__name__)

_BASE_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .code { font-size: 32px; letter-spacing: 8px; font-weight: 700; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """Email service for sending transactional emails.

    Supports:
    - SMTP with TLS/SSL
    - HTTP mail APIs that accept ``{from, to, subject, html, text}`` JSON
    - Fallback to logging when not configured (dev mode)
    """

    def __init__(
        self,
        *,
        transport: MailTransport = MailTransport.LOG,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: str = "Authflow",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.transport = transport
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.api_url = api_url
        self.api_key = api_key
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        """Check if the selected transport has everything it needs."""
        if self.transport == MailTransport.SMTP:
            return bool(self.smtp_host and self.from_email)
        if self.transport == MailTransport.HTTP:
            return bool(self.api_url and self.api_key and self.from_email)
        return False

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    @property
    def _sender(self) -> str:
        return f"{self.from_name} <{self.from_email}>"

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message through the configured transport.

        Returns True if sent successfully, False otherwise. Blocking; call it
        from a worker thread inside request handlers.
        """
        if self.transport == MailTransport.LOG:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True
        if not self.is_configured:
            logger.error(
                "email_transport_unconfigured",
                transport=self.transport.value,
                to=self._redact_email(to_email),
            )
            return False
        if self.transport == MailTransport.HTTP:
            return self._send_http(to_email, subject, html_body, text_body)
        return self._send_smtp(to_email, subject, html_body, text_body)

    def _send_http(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str],
    ) -> bool:
        payload = {
            "from": self._sender,
            "to": [to_email],
            "subject": subject,
            "html": html_body,
        }
        if text_body:
            payload["text"] = text_body
        try:
            response = httpx.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=httpx.Timeout(self.timeout, connect=10.0),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "email_api_rejected",
                to=self._redact_email(to_email),
                status_code=e.response.status_code,
                error=e.response.text[:200],
            )
            return False
        except httpx.TimeoutException as e:
            logger.error(
                "email_timeout",
                to=self._redact_email(to_email),
                url=self.api_url,
                error=str(e),
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "email_api_error",
                to=self._redact_email(to_email),
                url=self.api_url,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("email_sent", to=self._redact_email(to_email), subject=subject, transport="http")
        return True

    def _send_smtp(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str],
    ) -> bool:
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = self._sender
            msg["To"] = to_email

            # Add text and HTML parts
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject, transport="smtp")
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_otp(
        self,
        to_email: str,
        code: str,
        *,
        recipient_name: Optional[str] = None,
        expires_minutes: int = 30,
    ) -> bool:
        """Send a one-time verification code."""
        subject = "Your verification code"
        greeting = f"Hi {recipient_name}," if recipient_name else "Hi,"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_BASE_STYLE}</style>
</head>
<body>
    <div class="container">
        <p>{html.escape(greeting)}</p>
        <p>Use this code to finish creating your account:</p>
        <p class="code">{code}</p>
        <p>The code expires in {expires_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>{html.escape(self.from_name)}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""{greeting}

Use this code to finish creating your account:

    {code}

The code expires in {expires_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""

        return self.send(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, name: Optional[str] = None) -> bool:
        """Send the post-verification welcome message."""
        subject = f"Welcome to {self.from_name}"
        greeting = f"Welcome, {name}!" if name else "Welcome!"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_BASE_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>{html.escape(greeting)}</h1>
        <p>Your email address is verified and your account is ready.</p>
        <p><a href="{self.base_url}">Sign in</a></p>
        <div class="footer">
            <p>{html.escape(self.from_name)}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""{greeting}

Your email address is verified and your account is ready.

Sign in: {self.base_url}

---
{self.from_name}
"""

        return self.send(to_email, subject, html_body, text_body)
