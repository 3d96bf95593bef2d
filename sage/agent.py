"""Conversation agent: serializes turns and owns durable turn state."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, AsyncIterator, Callable

from sage.db import Database
from sage.emitter import StreamEmitter
from sage.models import ChatMessage, Role, ToolCallRecord, ToolCallState, TurnOutcome, TurnResult
from sage.orchestrator import TurnOrchestrator

LOGGER = logging.getLogger(__name__)

PERSONA = (
    "You are Sage, a brilliant and friendly AI research assistant.\n"
    "You can search the web for current information, learn about the user's browser context, "
    "and schedule reminders.\n"
    "Be concise, insightful, and always reference your tools when relevant.\n"
    "Format responses with clear structure using markdown when helpful."
)


def build_system_prompt(reminders: list[str], today: date) -> str:
    prompt = f"{PERSONA}\nToday's date: {today:%A, %B} {today.day}, {today.year}."
    if reminders:
        prompt += (
            "\n\n--- ACTIVE REMINDERS ---\n"
            + "\n".join(reminders)
            + "\n--- END REMINDERS ---\nInform the user about these reminders."
        )
    return prompt


class ChatAgent:
    """Runs turns for many conversations, one turn at a time per conversation."""

    def __init__(
        self,
        db: Database,
        orchestrator: TurnOrchestrator,
        history_window_messages: int = 50,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._db = db
        self._orchestrator = orchestrator
        self._history_window_messages = history_window_messages
        self._today = today
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def handle_message(self, conversation_id: str, text: str, emitter: StreamEmitter) -> TurnResult:
        """Record one inbound user message and answer it."""

        try:
            async with self._conversation_lock(conversation_id):
                self._db.upsert_conversation(conversation_id)
                self._db.add_message(conversation_id, ChatMessage.from_text(Role.USER, text))
                return await self._run_turn(conversation_id, emitter)
        finally:
            emitter.close()

    async def resolve_tool_call(
        self,
        conversation_id: str,
        call_id: str,
        emitter: StreamEmitter,
        output: Any = None,
        rejected: bool = False,
    ) -> TurnResult:
        """Record the client's answer to a pending tool call and continue the conversation.

        Raises:
            KeyError: no stored assistant message carries ``call_id``.
            ValueError: the call already has an output or was rejected.
        """

        try:
            async with self._conversation_lock(conversation_id):
                message, record = self._find_tool_call(conversation_id, call_id)
                if record.state in (ToolCallState.OUTPUT_AVAILABLE, ToolCallState.REJECTED):
                    raise ValueError(f"Tool call {call_id} is already resolved ({record.state.value})")
                if rejected:
                    record.state = ToolCallState.REJECTED
                    record.output = None
                else:
                    record.state = ToolCallState.OUTPUT_AVAILABLE
                    record.output = output
                self._db.update_message(conversation_id, message)
                return await self._run_turn(conversation_id, emitter)
        finally:
            emitter.close()

    @asynccontextmanager
    async def _conversation_lock(self, conversation_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        if lock.locked():
            LOGGER.warning("Turn already in progress for %s; queueing this one", conversation_id)
        self._lock_users[conversation_id] = self._lock_users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Drop the lock once no turn holds or waits on it.
            self._lock_users[conversation_id] -= 1
            if not self._lock_users[conversation_id]:
                del self._lock_users[conversation_id]
                del self._locks[conversation_id]

    async def _run_turn(self, conversation_id: str, emitter: StreamEmitter) -> TurnResult:
        reminders = self._db.get_pending_reminders(conversation_id)
        system_prompt = build_system_prompt(reminders, self._today())
        history = self._db.get_messages(conversation_id, limit=self._history_window_messages)

        result = await self._orchestrator.run(conversation_id, system_prompt, history, emitter)
        LOGGER.info(
            "Turn for %s ended %s after %d pass(es)",
            conversation_id,
            result.outcome.value,
            result.passes,
        )
        if result.outcome is TurnOutcome.FAILED:
            return result

        if result.parts:
            self._db.add_message(conversation_id, ChatMessage(role=Role.ASSISTANT, parts=result.parts))
        if reminders:
            self._db.consume_reminders(conversation_id, reminders)
        return result

    def _find_tool_call(self, conversation_id: str, call_id: str) -> tuple[ChatMessage, ToolCallRecord]:
        for message in reversed(self._db.get_messages(conversation_id)):
            if message.role is not Role.ASSISTANT:
                continue
            for record in message.tool_calls:
                if record.call_id == call_id:
                    return message, record
        raise KeyError(f"Unknown tool call: {call_id}")
