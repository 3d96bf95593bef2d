"""Bounded multi-pass turn orchestration."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sage.emitter import StreamEmitter
from sage.llm.base import LLMProvider
from sage.models import (
    ChatMessage,
    LLMToolCall,
    MessagePart,
    Role,
    TextPart,
    ToolCallRecord,
    ToolCallState,
    TurnOutcome,
    TurnResult,
)
from sage.tools.registry import ToolRegistry
from sage.translator import to_model_messages, tool_call_entry, tool_result_message

LOGGER = logging.getLogger(__name__)

APOLOGY_TEXT = "Sorry, I ran into a problem generating a response. Please try again."
CLIENT_PENDING_OUTPUT = {"status": "fetching"}


@dataclass(slots=True)
class _TurnState:
    """Everything one turn mutates. Created per call, never shared."""

    messages: list[dict[str, Any]]
    executed_tools: set[str] = field(default_factory=set)
    call_ids: set[str] = field(default_factory=set)
    parts: list[MessagePart] = field(default_factory=list)
    passes: int = 0


class TurnOrchestrator:
    """Drives inference and tool execution to a final answer or a client handoff.

    Each pass calls the model once. Tool calls are executed in request order
    and fed back on the next pass. A tool name runs at most once per turn and
    no turn uses more than ``max_passes`` inference calls.
    """

    def __init__(
        self,
        llm: LLMProvider,
        tool_registry: ToolRegistry,
        max_passes: int = 3,
        max_tokens: int = 1024,
        request_timeout_seconds: float = 30.0,
    ) -> None:
        self._llm = llm
        self._tool_registry = tool_registry
        self._max_passes = max_passes
        self._max_tokens = max_tokens
        self._request_timeout_seconds = request_timeout_seconds

    async def run(
        self,
        conversation_id: str,
        system_prompt: str,
        history: list[ChatMessage],
        emitter: StreamEmitter,
    ) -> TurnResult:
        turn = _TurnState(
            messages=[{"role": Role.SYSTEM.value, "content": system_prompt}, *to_model_messages(history)]
        )
        tool_specs = self._tool_registry.list_tool_specs()

        while turn.passes < self._max_passes:
            turn.passes += 1
            try:
                response = await asyncio.wait_for(
                    self._llm.generate(turn.messages, tools=tool_specs, max_tokens=self._max_tokens),
                    timeout=self._request_timeout_seconds,
                )
            except Exception:  # noqa: BLE001
                LOGGER.exception("Inference failed on pass %d for %s", turn.passes, conversation_id)
                emitter.text(APOLOGY_TEXT)
                return TurnResult(outcome=TurnOutcome.FAILED, passes=turn.passes, text=APOLOGY_TEXT)

            if not response.tool_calls:
                if not response.content.strip():
                    LOGGER.info("Pass %d returned neither text nor tool calls", turn.passes)
                    return TurnResult(outcome=TurnOutcome.DONE, passes=turn.passes, parts=turn.parts)
                emitter.text(response.content)
                turn.parts.append(TextPart(response.content))
                return TurnResult(
                    outcome=TurnOutcome.DONE,
                    passes=turn.passes,
                    parts=turn.parts,
                    text=response.content,
                )

            calls = self._accept_new_tools(turn, response.tool_calls)
            if not calls:
                LOGGER.warning(
                    "Every tool call on pass %d was already made this turn; ending turn", turn.passes
                )
                return TurnResult(outcome=TurnOutcome.DONE, passes=turn.passes, parts=turn.parts)

            turn.messages.append(
                {
                    "role": Role.ASSISTANT.value,
                    "content": response.content or None,
                    "tool_calls": [tool_call_entry(c.call_id, c.name, c.arguments) for c in calls],
                }
            )

            for call in calls:
                emitter.tool_input_available(call.call_id, call.name, call.arguments)

                if self._tool_registry.is_client_side(call.name):
                    emitter.tool_output_available(call.call_id, CLIENT_PENDING_OUTPUT)
                    record = ToolCallRecord(call_id=call.call_id, tool_name=call.name, input=call.arguments)
                    turn.parts.append(record)
                    LOGGER.info("Waiting on client for %s (%s)", call.name, call.call_id)
                    return TurnResult(
                        outcome=TurnOutcome.AWAITING_CLIENT,
                        passes=turn.passes,
                        parts=turn.parts,
                        pending_call=record,
                    )

                if self._tool_registry.requires_approval(call.name):
                    LOGGER.info("Executing %s, approval is left to the client", call.name)
                output = await self._tool_registry.execute(conversation_id, call.name, call.arguments)
                emitter.tool_output_available(call.call_id, output)
                turn.parts.append(
                    ToolCallRecord(
                        call_id=call.call_id,
                        tool_name=call.name,
                        input=call.arguments,
                        state=ToolCallState.OUTPUT_AVAILABLE,
                        output=output,
                    )
                )
                turn.messages.append(tool_result_message(call.call_id, call.name, output))

        LOGGER.warning("Pass budget of %d exhausted for %s", self._max_passes, conversation_id)
        return TurnResult(outcome=TurnOutcome.DONE, passes=turn.passes, parts=turn.parts)

    def _accept_new_tools(self, turn: _TurnState, tool_calls: list[LLMToolCall]) -> list[LLMToolCall]:
        accepted: list[LLMToolCall] = []
        for call in tool_calls:
            if call.name in turn.executed_tools:
                LOGGER.info("Dropping repeated call to %s", call.name)
                continue
            turn.executed_tools.add(call.name)
            if not call.call_id or call.call_id in turn.call_ids:
                call.call_id = f"call_{uuid.uuid4().hex[:16]}"
            turn.call_ids.add(call.call_id)
            accepted.append(call)
        return accepted
