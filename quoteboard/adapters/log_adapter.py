"""Log-only notifier used when no SMTP host is configured."""

import logging

from quoteboard.schemas import ReminderMessage

logger = logging.getLogger(__name__)


class LogAdapter:
    """Writes would-be reminders to the log. Every send succeeds."""

    channel_name = "log"

    @property
    def is_enabled(self) -> bool:
        return True

    async def send(self, message: ReminderMessage) -> bool:
        logger.info(
            f"[reminder:log] to={message.to} quote={message.quote_id} "
            f"subject='{message.subject}'"
        )
        logger.debug(f"[reminder:log] body:\n{message.body}")
        return True

    async def health_check(self) -> bool:
        return True
