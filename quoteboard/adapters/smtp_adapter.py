"""Email reminders over SMTP.

Environment variables (see quoteboard.config):
  SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASS, SMTP_SECURE, SMTP_FROM

``SMTP_SECURE=true`` opens an implicit-TLS connection (port 465 style);
otherwise the connection is upgraded with STARTTLS when the server offers it.
smtplib blocks, so every exchange runs in a worker thread.
"""

import asyncio
import logging
import smtplib
from email.message import EmailMessage

from quoteboard.config import SMTPConfig
from quoteboard.errors import NotificationError
from quoteboard.schemas import ReminderMessage

logger = logging.getLogger(__name__)


class SMTPAdapter:
    """SMTP adapter for quote reminders."""

    channel_name = "smtp"

    def __init__(self, config: SMTPConfig):
        self.config = config

    @property
    def is_enabled(self) -> bool:
        return bool(self.config.host)

    @property
    def sender(self) -> str:
        return self.config.from_address or self.config.username or "quoteboard@localhost"

    def build_message(self, message: ReminderMessage) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = message.to
        msg["Subject"] = message.subject
        msg.set_content(message.body)
        return msg

    def _connect(self) -> smtplib.SMTP:
        if self.config.secure:
            server = smtplib.SMTP_SSL(
                self.config.host, self.config.port, timeout=self.config.timeout_seconds
            )
        else:
            server = smtplib.SMTP(
                self.config.host, self.config.port, timeout=self.config.timeout_seconds
            )
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls()
                server.ehlo()
        if self.config.username:
            server.login(self.config.username, self.config.password)
        return server

    def _deliver(self, msg: EmailMessage) -> None:
        with self._connect() as server:
            server.send_message(msg)

    async def send(self, message: ReminderMessage) -> bool:
        msg = self.build_message(message)
        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send to {message.to} failed for quote {message.quote_id}: {e}")
            raise NotificationError(f"SMTP delivery failed: {e}") from e
        logger.info(f"Reminder email sent to {message.to} (quote {message.quote_id})")
        return True

    async def health_check(self) -> bool:
        def _noop() -> bool:
            with self._connect() as server:
                return server.noop()[0] == 250

        try:
            return await asyncio.to_thread(_noop)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"SMTP health check failed: {e}")
            return False
