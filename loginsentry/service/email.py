from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from loginsentry.logging import get_logger
from loginsentry.service.audit import SecurityAlert

logger = get_logger(__name__)

_STYLE = """
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .alert {{ background: #fff4e5; border-left: 4px solid #f59e0b; padding: 12px 16px; }}
        .button {{ display: inline-block; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; margin-right: 8px; }}
        .confirm {{ background: #10a37f; }}
        .report {{ background: #dc2626; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
"""


class EmailService:
    """Outbound email for security notifications.

    Without SMTP settings the service runs in dev mode: messages are logged
    instead of sent and every send reports success.
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
        from_name: str = "LoginSentry Security",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _deliver(self, to_email: str, message: MIMEMultipart) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, message.as_string())
        else:
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, message.as_string())

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", to=recipient, subject=subject, body_preview=text_body[:200])
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            self._deliver(to_email, msg)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=recipient, host=self.smtp_host, error=str(exc))
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=recipient, error=str(exc))
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except ssl.SSLError as exc:
            logger.error("email_ssl_error", to=recipient, host=self.smtp_host, port=self.smtp_port, error=str(exc))
            return False
        except (TimeoutError, OSError) as exc:
            logger.error(
                "email_connect_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_security_alert(self, alert: SecurityAlert) -> bool:
        """Tell the account owner about a flagged sign-in, with confirm/report links."""
        subject = "Security alert: unusual sign-in to your account"
        when = alert.occurred_at.strftime("%Y-%m-%d %H:%M UTC")
        reason_items = "".join(f"<li>{escape(reason)}</li>" for reason in alert.reasons)
        reason_lines = "\n".join(f"  - {reason}" for reason in alert.reasons)

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE.format()}</style>
</head>
<body>
    <div class="container">
        <h1>Unusual sign-in detected</h1>
        <div class="alert">
            <p>We noticed a sign-in to your account that looks different from usual:</p>
            <ul>{reason_items}</ul>
        </div>
        <p><strong>Time:</strong> {escape(when)}<br>
           <strong>IP address:</strong> {escape(alert.ip_addr)}<br>
           <strong>Location:</strong> {escape(alert.location_label)}<br>
           <strong>Device:</strong> {escape(alert.device_label)}</p>
        <p style="margin: 30px 0;">
            <a href="{escape(alert.confirm_url)}" class="button confirm">Yes, this was me</a>
            <a href="{escape(alert.report_url)}" class="button report">No, secure my account</a>
        </p>
        <p>If this wasn't you, reporting it will lock your account, sign out every
        session and send you instructions to choose a new password.</p>
        <div class="footer">
            <p>{escape(self.from_name)}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Unusual sign-in detected

We noticed a sign-in to your account that looks different from usual:
{reason_lines}

Time: {when}
IP address: {alert.ip_addr}
Location: {alert.location_label}
Device: {alert.device_label}

Was this you? Confirm this device:
{alert.confirm_url}

Not you? Secure your account (locks the account and signs out all sessions):
{alert.report_url}

---
{self.from_name}
"""

        return self._send_email(alert.email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, reset_url: str) -> bool:
        """Send the reset link that follows a fraud report."""
        subject = "Your account has been locked"
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE.format()}</style>
</head>
<body>
    <div class="container">
        <h1>Your account has been secured</h1>
        <p>Thanks for reporting the sign-in. We locked your account and signed out
        every active session.</p>
        <p>Choose a new password to unlock it:</p>
        <p style="margin: 30px 0;">
            <a href="{escape(reset_url)}" class="button confirm">Choose a new password</a>
        </p>
        <div class="footer">
            <p>{escape(self.from_name)}</p>
            <p>If the button doesn't work, copy and paste this URL: {escape(reset_url)}</p>
        </div>
    </div>
</body>
</html>
"""
        text_body = f"""Your account has been secured

Thanks for reporting the sign-in. We locked your account and signed out every
active session.

Choose a new password to unlock it:
{reset_url}

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_mfa_enabled(self, to_email: str) -> bool:
        subject = "Two-factor authentication enabled"
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE.format()}</style>
</head>
<body>
    <div class="container">
        <h1>Two-factor authentication enabled</h1>
        <p>Sign-ins to your account now require a code from your authenticator app.
        Keep your backup codes somewhere safe; each one works only once.</p>
        <p>If you didn't make this change, report it immediately.</p>
        <div class="footer">
            <p>{escape(self.from_name)}</p>
        </div>
    </div>
</body>
</html>
"""
        text_body = f"""Two-factor authentication enabled

Sign-ins to your account now require a code from your authenticator app.
Keep your backup codes somewhere safe; each one works only once.

If you didn't make this change, report it immediately.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)
