from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import urlencode

from medhub.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1d2a36; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #0b6fa4; color: white; padding: 12px 24px; border-radius: 6px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{greeting}</p>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{link}" class="button">{action}</a>
        </p>
        <p>This link will expire in {validity}.</p>
        <p>{outro}</p>
        <div class="footer">
            <p>{sender}</p>
            <p>If the button doesn't work, copy and paste this URL: {link}</p>
        </div>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{greeting}

{intro}

{link}

This link will expire in {validity}.

{outro}

---
{sender}
"""


def _describe_minutes(minutes: int) -> str:
    if minutes % 60 == 0:
        hours = minutes // 60
        return "1 hour" if hours == 1 else f"{hours} hours"
    return "1 minute" if minutes == 1 else f"{minutes} minutes"


class EmailService:
    """Transactional mail for account verification and password reset.

    Sends over SMTP (STARTTLS or implicit TLS). When no SMTP host is
    configured the rendered message is logged instead of sent, which is the
    normal mode for local development and tests.
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
        from_name: str = "MedHub",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def link_for(self, path: str, token: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}?{urlencode({'token': token})}"

    def _deliver(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
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

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message. Returns ``False`` on any transport failure."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=recipient,
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        try:
            self._deliver(to_email, subject, html_body, text_body)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=recipient,
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=recipient)
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=recipient,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error("email_ssl_error", to=recipient, host=self.smtp_host, error=str(e))
            return False
        except OSError as e:
            # socket timeouts and refused connections
            logger.error(
                "email_transport_error",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def _render(self, **parts: str) -> tuple[str, str]:
        parts.setdefault("sender", self.from_name)
        return _HTML_TEMPLATE.format(**parts), _TEXT_TEMPLATE.format(**parts)

    def send_email_verification(
        self,
        to_email: str,
        token: str,
        *,
        first_name: str = "",
        ttl_minutes: int = 24 * 60,
    ) -> bool:
        link = self.link_for("verify-email", token)
        html_body, text_body = self._render(
            heading="Verify your email address",
            greeting=f"Hello {first_name}," if first_name else "Hello,",
            intro=f"Please confirm the email address for your {self.from_name} account.",
            action="Verify Email",
            link=link,
            validity=_describe_minutes(ttl_minutes),
            outro="If you did not create an account, you can ignore this message.",
        )
        return self._send_email(
            to_email, f"Verify your {self.from_name} email", html_body, text_body
        )

    def send_password_reset(
        self,
        to_email: str,
        token: str,
        *,
        first_name: str = "",
        ttl_minutes: int = 60,
    ) -> bool:
        link = self.link_for("reset-password", token)
        html_body, text_body = self._render(
            heading="Reset your password",
            greeting=f"Hello {first_name}," if first_name else "Hello,",
            intro="We received a request to reset your password. Use the link below to choose a new one.",
            action="Reset Password",
            link=link,
            validity=_describe_minutes(ttl_minutes),
            outro="If you did not request this, your password has not been changed and you can ignore this message.",
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )
