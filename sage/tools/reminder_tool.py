"""Reminder scheduling tool."""

from __future__ import annotations

from typing import Any

from sage.scheduler import ReminderScheduler
from sage.tools.base import Tool


class SetReminderTool(Tool):
    """Schedule a reminder that surfaces in a later turn."""

    name = "setReminder"
    description = (
        "Schedule a reminder for the user at a specified delay. "
        "Requires user approval before it is set."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "message": {"type": "string", "description": "The reminder message to show the user"},
            "delaySeconds": {
                "type": "integer",
                "description": "How many seconds from now to trigger the reminder",
            },
        },
        "required": ["message", "delaySeconds"],
        "additionalProperties": False,
    }
    requires_approval = True

    def __init__(self, scheduler: ReminderScheduler) -> None:
        self._scheduler = scheduler

    async def run(self, conversation_id: str, **kwargs: Any) -> dict[str, Any]:
        message = str(kwargs["message"]).strip()
        delay_seconds = int(kwargs["delaySeconds"])
        if delay_seconds <= 0:
            return {"scheduled": False, "error": "delaySeconds must be a positive integer."}
        if not message:
            return {"scheduled": False, "error": "message must not be empty."}
        return self._scheduler.schedule(conversation_id, delay_seconds, message)
