"""Reminder engine: polls for due chase dates and sends one reminder per due occurrence.

Per quote state (derived, never stored):
    idle → due (reminder_email set, next_chase_at <= now) → sent
    sent clears next_chase_at and stamps last_chased_at
    a failed send leaves next_chase_at as is, so the next tick retries

Each quote is handled in isolation: one failed send never blocks the rest
of the batch. A tick that starts while another is still running is skipped.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Optional

from jinja2 import Environment, FileSystemLoader
from pydantic import BaseModel, Field

from quoteboard.adapters import Notifier
from quoteboard.db.models import Stage, utcnow
from quoteboard.errors import NotificationError
from quoteboard.pipeline import PipelineStore
from quoteboard.schemas import QuoteRead, ReminderMessage

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"

_jinja = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=False,
    keep_trailing_newline=True,
)


class TickResult(BaseModel):
    """Outcome of one polling tick."""

    due: int = 0
    sent: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    rescheduled: list[str] = Field(default_factory=list)  # chase date moved during send
    skipped: bool = False
    error: Optional[str] = None


def format_value(value: Optional[Decimal]) -> str:
    return "N/A" if value is None else f"{value:,.2f}"


def format_last_chased(at: Optional[datetime]) -> str:
    return "Never" if at is None else at.strftime("%Y-%m-%d %H:%M UTC")


def render_reminder(quote: QuoteRead) -> ReminderMessage:
    """Build the reminder email for a due quote."""
    stage = Stage(quote.stage)
    body = _jinja.get_template("quote_reminder.txt").render(
        title=quote.title,
        client_name=quote.client_name,
        stage=stage.label,
        value=format_value(quote.value),
        so_number=quote.so_number,
        last_chased=format_last_chased(quote.last_chased_at),
        notes=quote.notes,
    )
    return ReminderMessage(
        quote_id=quote.id,
        to=quote.reminder_email,
        subject=f"Quote follow-up: {quote.title} for {quote.client_name}",
        body=body,
    )


class ReminderEngine:
    """Periodic reminder dispatcher bound to a store and a notifier."""

    def __init__(
        self,
        store: PipelineStore,
        notifier: Notifier,
        interval_seconds: float = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self, now: Optional[datetime] = None) -> TickResult:
        """Run one polling pass. Returns ``skipped=True`` if a pass is already running."""
        if self._tick_lock.locked():
            logger.warning("Previous reminder tick still running; skipping this one")
            return TickResult(skipped=True)

        async with self._tick_lock:
            return await self._process(now or self.clock())

    async def _process(self, now: datetime) -> TickResult:
        result = TickResult()
        try:
            due = await self.store.due_reminders(now)
        except Exception as e:
            logger.error(f"Could not load due reminders: {e}")
            result.error = str(e)
            return result

        result.due = len(due)
        if due:
            logger.info(f"{len(due)} reminder(s) due via {self.notifier.channel_name}")

        for quote in due:
            try:
                delivered = await self.notifier.send(render_reminder(quote))
                if delivered is False:
                    raise NotificationError(f"{self.notifier.channel_name} reported failure")
                marked = await self.store.mark_reminder_sent(
                    quote.id, self.clock(), due_at=quote.next_chase_at
                )
            except Exception as e:
                logger.error(
                    f"Reminder for quote {quote.id} to {quote.reminder_email} failed, "
                    f"will retry next tick: {e}"
                )
                result.failed.append(quote.id)
                continue

            if marked:
                logger.info(f"Reminder sent for quote {quote.id} to {quote.reminder_email}")
                result.sent.append(quote.id)
            else:
                logger.info(
                    f"Reminder sent for quote {quote.id}, but its chase date changed "
                    f"meanwhile; keeping the new date"
                )
                result.rescheduled.append(quote.id)

        return result

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Reminder tick crashed: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        """Start the background polling task on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="quoteboard-reminders")
        logger.info(
            f"Reminder engine started (every {self.interval_seconds}s, "
            f"channel={self.notifier.channel_name})"
        )

    async def stop(self) -> None:
        """Cancel the polling task and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reminder engine stopped")
