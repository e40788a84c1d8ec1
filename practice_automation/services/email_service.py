"""
Practice Automation Engine
Email Service.

The send_email action talks to an *email sender* collaborator with one
method, ``send(to, subject, body) -> EmailSendResult``. Two senders ship:

    SmtpEmailSender     real delivery through smtplib
    LogOnlyEmailSender  dev/test mode, logs and returns a synthetic message id

Senders never touch the database: the executor calls them on a worker
thread under the action timeout. The EmailLog audit row is written by
EmailService.log_attempt on the calling thread.

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
"""

from __future__ import annotations

import logging
import re
import smtplib
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from practice_automation.models import db
from practice_automation.models.scheduling import EmailLog
from practice_automation.services.condition_evaluator import MISSING, resolve_path

logger = logging.getLogger(__name__)


@dataclass
class EmailSendResult:
    ok: bool
    message_id: str | None = None
    error: str | None = None


class SmtpEmailSender:
    """Deliver via SMTP. Settings are captured at construction, not read per send."""

    def __init__(self, *, server, port=587, use_tls=True, username=None,
                 password=None, default_sender=None, timeout=30):
        self.server = server
        self.port = port
        self.use_tls = use_tls
        self.username = username
        self.password = password
        self.default_sender = default_sender or f"noreply@{server}"
        self.timeout = timeout

    def send(self, to, subject, body) -> EmailSendResult:
        message_id = f"<{uuid.uuid4().hex}@{self.server}>"
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.default_sender
        msg["To"] = to
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(body, "html" if "<" in body else "plain"))

        try:
            with smtplib.SMTP(self.server, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email failed: to=%s error=%s", to, exc)
            return EmailSendResult(ok=False, error=str(exc)[:1000])

        logger.info("Email sent: to=%s subject='%s'", to, subject)
        return EmailSendResult(ok=True, message_id=message_id)


class LogOnlyEmailSender:
    """Dev/test mode: nothing leaves the process."""

    def send(self, to, subject, body) -> EmailSendResult:
        logger.info("Email (dev mode): to=%s subject='%s'", to, subject)
        return EmailSendResult(ok=True, message_id=f"dev-{uuid.uuid4().hex[:12]}")


class EmailService:
    """Sender factory plus the EmailLog audit trail."""

    @staticmethod
    def sender_from_config(config):
        """SMTP when MAIL_SERVER is set, log-only otherwise."""
        if not config.get("MAIL_SERVER"):
            return LogOnlyEmailSender()
        return SmtpEmailSender(
            server=config["MAIL_SERVER"],
            port=config.get("MAIL_PORT", 587),
            use_tls=config.get("MAIL_USE_TLS", True),
            username=config.get("MAIL_USERNAME"),
            password=config.get("MAIL_PASSWORD"),
            default_sender=config.get("MAIL_DEFAULT_SENDER"),
        )

    @staticmethod
    def log_attempt(*, organization_id, to_email, subject, result,
                    trigger_config_id=None, entity_type=None, entity_id=None):
        """Record one delivery attempt. Flushes, does not commit."""
        log = EmailLog(
            organization_id=organization_id,
            recipient_email=to_email,
            subject=subject[:500],
            status="sent" if result.ok else "failed",
            message_id=result.message_id,
            error_message=result.error,
            trigger_config_id=trigger_config_id,
            entity_type=entity_type,
            entity_id=entity_id,
            sent_at=datetime.now(timezone.utc) if result.ok else None,
        )
        db.session.add(log)
        db.session.flush()
        return log


_PLACEHOLDER = re.compile(r"\{([A-Za-z_][\w.]*)\}")


def render(template, context):
    """Interpolate ``{client.name}``-style placeholders from the snapshot.

    Unknown or null placeholders are left as-is, so a half-filled template
    still reads sensibly in the inbox.
    """
    if not template:
        return ""

    def _sub(match):
        value = resolve_path(context, match.group(1))
        if value is None or isinstance(value, (dict, list)) or value is MISSING:
            return match.group(0)
        return str(value)

    return _PLACEHOLDER.sub(_sub, template)
