"""
FieldOps Service Workflow
Email Service — the mail transport behind every alert.

When SMTP is not configured, messages are logged but not sent (dev/test
mode) and the call reports success. The service never retries: a failed
send raises TransportError and the caller decides what to do.

Configuration (env vars):
    MAIL_SERVER           SMTP host (default: None → log-only mode)
    MAIL_PORT             SMTP port (default: 587)
    MAIL_USE_TLS          Use TLS (default: true)
    MAIL_USERNAME         SMTP username
    MAIL_PASSWORD         SMTP password
    MAIL_DEFAULT_SENDER   Default from address
    MAIL_TIMEOUT_SECONDS  Socket timeout for connect + send (default: 20)
"""

from __future__ import annotations

import logging
import smtplib
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app

from fieldops.core.exceptions import TransportError

logger = logging.getLogger(__name__)


class EmailService:
    """SMTP mail transport: ``send(to, subject, text, html) -> message id``."""

    @staticmethod
    def is_configured() -> bool:
        """Check if SMTP is configured."""
        return bool(current_app.config.get("MAIL_SERVER"))

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: str | None = None,
        to_name: str | None = None,
    ) -> str:
        """
        Deliver one message.

        Returns:
            A message id (``dev-<hex>`` in log-only mode).

        Raises:
            TransportError: SMTP refused, timed out or the connection failed.
        """
        if not cls.is_configured():
            logger.info(
                "Email (dev mode): to=%s subject='%s'", to_email, subject,
            )
            return f"dev-{uuid.uuid4().hex[:12]}"

        try:
            message_id = cls._send_smtp(
                to_email=to_email, to_name=to_name, subject=subject,
                text_body=text_body, html_body=html_body,
            )
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email failed: to=%s error=%s", to_email, exc)
            raise TransportError(to_email, str(exc)[:500]) from exc

        logger.info("Email sent: to=%s subject='%s'", to_email, subject)
        return message_id

    @staticmethod
    def _send_smtp(*, to_email: str, to_name: str | None, subject: str,
                   text_body: str, html_body: str | None) -> str:
        """Actually send via SMTP."""
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER", f"noreply@{server}")
        timeout = cfg.get("MAIL_TIMEOUT_SECONDS", 20)

        message_id = f"<{uuid.uuid4().hex}@fieldops>"
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        if html_body:
            msg.attach(MIMEText(html_body, "html", "utf-8"))

        with smtplib.SMTP(server, port, timeout=timeout) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)
        return message_id
