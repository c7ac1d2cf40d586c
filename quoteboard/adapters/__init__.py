"""Notifier protocol and the factory that picks a channel from config."""

from typing import Protocol, runtime_checkable

from quoteboard.config import ServiceConfig
from quoteboard.schemas import ReminderMessage


@runtime_checkable
class Notifier(Protocol):
    """Protocol for reminder delivery channels."""

    @property
    def channel_name(self) -> str:
        """Human-readable channel name."""
        ...

    @property
    def is_enabled(self) -> bool:
        """Whether this channel is configured and enabled."""
        ...

    async def send(self, message: ReminderMessage) -> bool:
        """Deliver the message. Returns True on success, raises NotificationError on transport failure."""
        ...

    async def health_check(self) -> bool:
        """Verify channel connectivity. Returns True if healthy."""
        ...


def create_notifier(config: ServiceConfig) -> Notifier:
    """SMTP when a host is configured, otherwise log-only."""
    from quoteboard.adapters.log_adapter import LogAdapter
    from quoteboard.adapters.smtp_adapter import SMTPAdapter

    if config.smtp.host:
        return SMTPAdapter(config.smtp)
    return LogAdapter()


__all__ = ["Notifier", "create_notifier"]
