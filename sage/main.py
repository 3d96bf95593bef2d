"""Application entrypoint: a console client wired to the agent."""

from __future__ import annotations

import asyncio
import locale
import logging
from datetime import datetime
from typing import Any

from sage.agent import ChatAgent
from sage.config import load_settings
from sage.db import Database
from sage.emitter import StreamEmitter
from sage.llm.workers_ai import WorkersAIProvider
from sage.models import TurnOutcome, TurnResult
from sage.orchestrator import TurnOrchestrator
from sage.scheduler import ReminderScheduler
from sage.tools.registry import ToolRegistry
from sage.tools.reminder_tool import SetReminderTool
from sage.tools.search_tool import WebSearchTool
from sage.tools.user_info_tool import GetUserInfoTool

logging.basicConfig(level=logging.INFO)
LOGGER = logging.getLogger(__name__)


def local_user_info() -> dict[str, Any]:
    """What a browser would report for getUserInfo, taken from this machine."""

    now = datetime.now().astimezone()
    return {
        "timezone": now.tzname(),
        "locale": locale.getlocale()[0] or "en_US",
        "localTime": now.isoformat(timespec="seconds"),
    }


async def _print_events(emitter: StreamEmitter) -> None:
    async for event in emitter.stream():
        if event["type"] == "text-delta":
            print(f"sage> {event['delta']}")
        elif event["type"] == "tool-input-available":
            print(f"[tool] {event['toolName']}({event['input']})")
        elif event["type"] == "tool-output-available":
            print(f"[tool] -> {event['output']}")


async def _answer(agent: ChatAgent, conversation_id: str, text: str) -> None:
    emitter = StreamEmitter()
    printer = asyncio.create_task(_print_events(emitter))
    result: TurnResult = await agent.handle_message(conversation_id, text, emitter)
    await printer

    # The console is the client, so it answers client-side tools itself,
    # each tool at most once per user message.
    answered: set[str] = set()
    while result.outcome is TurnOutcome.AWAITING_CLIENT and result.pending_call is not None:
        pending = result.pending_call
        if pending.tool_name in answered:
            LOGGER.warning("Model asked for %s again; leaving call %s unanswered", pending.tool_name, pending.call_id)
            break
        answered.add(pending.tool_name)
        emitter = StreamEmitter()
        printer = asyncio.create_task(_print_events(emitter))
        result = await agent.resolve_tool_call(
            conversation_id, result.pending_call.call_id, emitter, output=local_user_info()
        )
        await printer


async def run() -> None:
    """Initialize app layers and start the console loop."""

    settings = load_settings()

    db = Database(settings.database_path)
    db.initialize()

    scheduler = ReminderScheduler(db=db, poll_interval_seconds=settings.scheduler_poll_interval_seconds)
    tools = ToolRegistry(db)
    tools.register(WebSearchTool(timeout_seconds=settings.search_timeout_seconds))
    tools.register(GetUserInfoTool())
    tools.register(SetReminderTool(scheduler))

    orchestrator = TurnOrchestrator(
        llm=WorkersAIProvider(settings),
        tool_registry=tools,
        max_passes=settings.max_passes,
        max_tokens=settings.max_tokens,
        request_timeout_seconds=settings.request_timeout_seconds,
    )
    agent = ChatAgent(
        db=db,
        orchestrator=orchestrator,
        history_window_messages=settings.history_window_messages,
    )

    scheduler_task = asyncio.create_task(scheduler.run_forever(), name="reminder-scheduler")

    try:
        while True:
            try:
                text = await asyncio.to_thread(input, "you> ")
            except EOFError:
                break
            if not text.strip():
                continue
            await _answer(agent, settings.conversation_id, text.strip())
    finally:
        scheduler.stop()
        scheduler_task.cancel()
        LOGGER.info("Sage shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
