"""Durable scheduler for deferred reminders."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sage.db import Database
from sage.models import ScheduledReminder

LOGGER = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_reminder(message: str, fired_at: datetime) -> str:
    stamp = fired_at.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return f"⏰ Reminder: {message} (triggered at {stamp})"


class ReminderScheduler:
    """Persists reminders and fires them once they are due.

    Reminders live in SQLite, so they survive restarts and fire whether or not
    the conversation is active. Delivery is at-least-once; applying a fired
    reminder to conversation state is once-only.
    """

    def __init__(
        self,
        db: Database,
        poll_interval_seconds: float = 1.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._db = db
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._stop_event = asyncio.Event()

    def schedule(self, conversation_id: str, delay_seconds: int, message: str) -> dict[str, Any]:
        """Persist a reminder to fire ``delay_seconds`` from now."""

        run_at = self._clock() + timedelta(seconds=delay_seconds)
        reminder_id = self._db.create_scheduled_reminder(conversation_id, message, run_at)
        LOGGER.info(
            "Scheduled reminder %d for %s at %s", reminder_id, conversation_id, run_at.isoformat()
        )
        return {"scheduled": True, "message": message, "inSeconds": delay_seconds}

    async def fire_due(self, now: datetime | None = None) -> int:
        """Fire every pending reminder due at ``now``. Returns how many were applied."""

        now = now or self._clock()
        applied = 0
        for reminder in self._db.get_due_reminders(now):
            try:
                if self.on_fire(reminder, now):
                    applied += 1
            except Exception:  # noqa: BLE001
                LOGGER.exception("Reminder %d failed to fire", reminder.id)
                self._db.mark_reminder_status(reminder.id, "failed")
        return applied

    def on_fire(self, reminder: ScheduledReminder, fired_at: datetime) -> bool:
        text = format_reminder(reminder.message, fired_at)
        applied = self._db.fire_scheduled_reminder(reminder.id, reminder.conversation_id, text)
        if applied:
            LOGGER.info("Reminder %d fired for %s", reminder.id, reminder.conversation_id)
        else:
            LOGGER.info("Reminder %d already applied, skipping duplicate", reminder.id)
        return applied

    async def run_forever(self) -> None:
        """Run scheduler loop until stop() is called."""

        while not self._stop_event.is_set():
            await self.fire_due()
            await asyncio.sleep(self._poll_interval_seconds)

    def stop(self) -> None:
        """Signal the loop to stop."""

        self._stop_event.set()
