from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from micropost.logging import get_logger

logger = get_logger(__name__)

_HTML_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Helvetica, Arial, sans-serif; line-height: 1.5; color: #222; }}
        .wrap {{ max-width: 560px; margin: 0 auto; padding: 32px 16px; }}
        .cta {{ display: inline-block; background: #1d72b8; color: #fff; padding: 10px 20px; border-radius: 4px; text-decoration: none; }}
        .muted {{ margin-top: 32px; font-size: 12px; color: #666; }}
    </style>
</head>
<body>
    <div class="wrap">
        <h2>{title}</h2>
        {content}
        <p class="muted">{signature}</p>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for the auth flows.

    Delivery is best-effort: every ``send_*`` method returns a bool and logs
    failures instead of raising. Without an SMTP host the message is logged
    rather than sent, which is what local development relies on.
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
        from_name: str = "Micropost",
        base_url: Optional[str] = None,
        reset_ttl_seconds: int = 3600,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.reset_ttl_seconds = reset_ttl_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(self, title: str, paragraphs: list[str], cta: tuple[str, str] | None = None) -> tuple[str, str]:
        blocks = [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        text_lines = [title, "", *paragraphs]
        if cta:
            label, url = cta
            blocks.append(f'<p><a class="cta" href="{html.escape(url, quote=True)}">{html.escape(label)}</a></p>')
            blocks.append(f"<p>{html.escape(url)}</p>")
            text_lines += ["", url]
        text_lines += ["", "---", self.from_name]
        html_body = _HTML_LAYOUT.format(
            title=html.escape(title),
            content="\n        ".join(blocks),
            signature=html.escape(self.from_name),
        )
        return html_body, "\n".join(text_lines) + "\n"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent (or logged in dev mode), False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=to_email,
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=to_email,
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=to_email,
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            # OSError covers refused connections and timeouts
            logger.error(
                "email_send_failed",
                to=to_email,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=to_email, subject=subject)
        return True

    def send_password_reset_email(self, to_email: str, token: str, name: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        minutes = max(self.reset_ttl_seconds // 60, 1)
        html_body, text_body = self._render(
            "Reset your password",
            [
                f"Hello {name},",
                "We received a request to reset your password. Use the link below to choose a new one.",
                f"The link expires in {minutes} minutes and can be used once.",
                "If you did not request this, you can ignore this email.",
            ],
            cta=("Reset password", reset_url),
        )
        return self._send_email(to_email, f"Reset your {self.from_name} password", html_body, text_body)

    def send_password_change_confirmation(self, to_email: str, name: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                f"Hello {name},",
                "The password for your account was just changed.",
                "If you did not make this change, reset your password immediately and contact support.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)

    def send_welcome_email(self, to_email: str, name: str) -> bool:
        html_body, text_body = self._render(
            f"Welcome to {self.from_name}",
            [
                f"Hello {name},",
                "Your account is ready. Sign in any time to start posting.",
            ],
            cta=("Open the app", self.base_url),
        )
        return self._send_email(to_email, f"Welcome to {self.from_name}", html_body, text_body)
