from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import urlencode

from authcore.logging import get_logger, redact_email

logger = get_logger(__name__)

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .code { font-size: 28px; letter-spacing: 6px; font-weight: 700; }
        .button { display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """SMTP transport plus the transactional messages the auth flows send.

    When SMTP is not configured the message is logged instead (dev mode) and
    the send counts as delivered.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "AuthManagement",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _layout(self, heading: str, paragraphs: list[str]) -> str:
        body = "\n".join(f"        {p}" for p in paragraphs)
        return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}    </style>
</head>
<body>
    <div class="container">
        <h1>{html.escape(heading)}</h1>
{body}
        <div class="footer">
            <p>{html.escape(self.from_name)}</p>
        </div>
    </div>
</body>
</html>
"""

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message. Returns False on any transport failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    # two-factor

    def send_two_factor_code(self, to_email: str, code: str, *, ttl_minutes: int = 5) -> bool:
        subject = "Your Two-Factor Authentication Code"
        html_body = self._layout(
            "Your security code",
            [
                "<p>Use the code below to finish signing in:</p>",
                f'<p class="code">{html.escape(code)}</p>',
                f"<p>This code will expire in {ttl_minutes} minutes.</p>",
                "<p>If you did not try to sign in, change your password.</p>",
            ],
        )
        text_body = (
            f"Your security code is: {code}. "
            f"This code will expire in {ttl_minutes} minutes."
        )
        return self.send(to_email, subject, html_body, text_body)

    def send_two_factor_enabled(self, to_email: str) -> bool:
        subject = "Two-Factor Authentication Enabled"
        message = (
            "Two-factor authentication is now on for your account. "
            "A security code will be emailed to you each time you sign in."
        )
        html_body = self._layout(
            "Two-factor authentication enabled",
            [f"<p>{message}</p>", "<p>If this wasn't you, contact support immediately.</p>"],
        )
        return self.send(to_email, subject, html_body, message)

    def send_two_factor_disabled(self, to_email: str) -> bool:
        subject = "Two-Factor Authentication Disabled - Security Alert"
        message = (
            "Two-factor authentication was turned off for your account. "
            "Signing in now only requires your password."
        )
        html_body = self._layout(
            "Two-factor authentication disabled",
            [f"<p>{message}</p>", "<p>If this wasn't you, change your password now.</p>"],
        )
        return self.send(to_email, subject, html_body, message)

    def send_authenticator_setup_started(self, to_email: str) -> bool:
        subject = "Authenticator App Setup Started"
        message = (
            "An authenticator app setup was started for your account. "
            "It becomes active once you confirm a code from the app."
        )
        html_body = self._layout(
            "Authenticator setup started",
            [f"<p>{message}</p>", "<p>If this wasn't you, change your password.</p>"],
        )
        return self.send(to_email, subject, html_body, message)

    def send_authenticator_enabled(self, to_email: str) -> bool:
        subject = "Authenticator App Connected to Your Account"
        message = (
            "An authenticator app is now connected to your account. "
            "You will be asked for a code from the app when signing in."
        )
        html_body = self._layout(
            "Authenticator app connected",
            [f"<p>{message}</p>", "<p>If this wasn't you, contact support immediately.</p>"],
        )
        return self.send(to_email, subject, html_body, message)

    def send_authenticator_disabled(self, to_email: str) -> bool:
        subject = "Authenticator App Removed from Your Account - Security Alert"
        message = (
            "The authenticator app was removed from your account and two-factor "
            "sign-in is now off. Existing sessions were signed out."
        )
        html_body = self._layout(
            "Authenticator app removed",
            [f"<p>{message}</p>", "<p>If this wasn't you, contact support immediately.</p>"],
        )
        return self.send(to_email, subject, html_body, message)

    # account

    def send_email_confirmation(
        self, to_email: str, token: str, *, ttl_hours: int = 24
    ) -> bool:
        query = urlencode({"email": to_email, "token": token})
        confirm_url = f"{self.base_url}/confirm-email?{query}"
        subject = "Confirm your email address"
        html_body = self._layout(
            "Confirm your email",
            [
                "<p>Please confirm your email address by clicking the button below:</p>",
                f'<p style="margin: 30px 0;"><a href="{html.escape(confirm_url)}" class="button">Confirm Email</a></p>',
                f"<p>This link will expire in {ttl_hours} hours.</p>",
                f"<p>If the button doesn't work, copy and paste this URL: {html.escape(confirm_url)}</p>",
            ],
        )
        text_body = f"""Confirm your email address

Visit the link below to confirm your email address:

{confirm_url}

This link will expire in {ttl_hours} hours.
"""
        return self.send(to_email, subject, html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        subject = "Your password was changed"
        message = (
            "The password for your account was just changed and all sessions "
            "were signed out."
        )
        html_body = self._layout(
            "Password changed",
            [f"<p>{message}</p>", "<p>If this wasn't you, contact support immediately.</p>"],
        )
        return self.send(to_email, subject, html_body, message)

    def send_password_reset(
        self, to_email: str, token: str, *, ttl_minutes: int = 60
    ) -> bool:
        query = urlencode({"email": to_email, "token": token})
        reset_url = f"{self.base_url}/reset-password?{query}"
        subject = "Reset your password"
        html_body = self._layout(
            "Reset your password",
            [
                "<p>We received a request to reset the password for your account.</p>",
                f'<p style="margin: 30px 0;"><a href="{html.escape(reset_url)}" class="button">Reset Password</a></p>',
                f"<p>This link will expire in {ttl_minutes} minutes.</p>",
                "<p>If you did not ask for a reset, you can ignore this email.</p>",
            ],
        )
        text_body = f"""Reset your password

Visit the link below to choose a new password:

{reset_url}

This link will expire in {ttl_minutes} minutes.
"""
        return self.send(to_email, subject, html_body, text_body)
