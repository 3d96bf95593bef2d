from __future__ import annotations

import asyncio
import sqlite3
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from sage.agent import ChatAgent, build_system_prompt
from sage.db import Database
from sage.emitter import StreamEmitter
from sage.models import LLMResponse, LLMToolCall, Role, ToolCallState, TurnOutcome
from sage.orchestrator import APOLOGY_TEXT, TurnOrchestrator
from sage.scheduler import ReminderScheduler
from sage.tools.registry import ToolRegistry
from sage.tools.reminder_tool import SetReminderTool
from sage.tools.user_info_tool import GetUserInfoTool

CONVERSATION = "conv-1"


def _db(tmp_path) -> Database:
    db = Database(tmp_path / "sage.db")
    db.initialize()
    return db


def _agent(db: Database, llm: object, *tools: object) -> ChatAgent:
    registry = ToolRegistry(db)
    for tool in tools:
        registry.register(tool)
    orchestrator = TurnOrchestrator(llm, registry, max_passes=3)
    return ChatAgent(db=db, orchestrator=orchestrator, today=lambda: date(2026, 10, 18))


def _system_prompt(llm: MagicMock, call: int = -1) -> str:
    return llm.generate.call_args_list[call].args[0][0]["content"]


class TestSystemPrompt:
    def test_includes_persona_and_date(self):
        prompt = build_system_prompt([], date(2026, 10, 18))
        assert prompt.startswith("You are Sage")
        assert "Sunday, October 18, 2026" in prompt
        assert "ACTIVE REMINDERS" not in prompt

    def test_includes_reminder_block(self):
        prompt = build_system_prompt(["⏰ Reminder: a", "⏰ Reminder: b"], date(2026, 10, 18))
        assert "--- ACTIVE REMINDERS ---\n⏰ Reminder: a\n⏰ Reminder: b\n--- END REMINDERS ---" in prompt
        assert prompt.endswith("Inform the user about these reminders.")


@pytest.mark.asyncio
async def test_plain_turn_persists_user_and_assistant(tmp_path):
    db = _db(tmp_path)
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content="hello there"))
    agent = _agent(db, llm)
    emitter = StreamEmitter()

    result = await agent.handle_message(CONVERSATION, "hi", emitter)

    assert result.outcome is TurnOutcome.DONE
    assert emitter.closed
    history = db.get_messages(CONVERSATION)
    assert [m.role for m in history] == [Role.USER, Role.ASSISTANT]
    assert history[1].text == "hello there"


@pytest.mark.asyncio
async def test_inference_failure_leaves_durable_state_unchanged(tmp_path):
    db = _db(tmp_path)
    db.upsert_conversation(CONVERSATION)
    db.append_reminder(CONVERSATION, "⏰ Reminder: water plants")
    llm = MagicMock()
    llm.generate = AsyncMock(side_effect=RuntimeError("backend error"))
    agent = _agent(db, llm)
    emitter = StreamEmitter()

    result = await agent.handle_message(CONVERSATION, "hi", emitter)

    assert result.outcome is TurnOutcome.FAILED
    assert [e["type"] for e in emitter.events] == ["text-start", "text-delta", "text-end"]
    assert emitter.collected_text() == APOLOGY_TEXT
    assert [m.role for m in db.get_messages(CONVERSATION)] == [Role.USER]
    assert db.get_pending_reminders(CONVERSATION) == ["⏰ Reminder: water plants"]


@pytest.mark.asyncio
async def test_pending_reminders_surface_exactly_once(tmp_path):
    db = _db(tmp_path)
    db.upsert_conversation(CONVERSATION)
    db.append_reminder(CONVERSATION, "⏰ Reminder: standup (triggered at 2026-10-18T09:00:00.000Z)")
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content="ok"))
    agent = _agent(db, llm)

    await agent.handle_message(CONVERSATION, "first", StreamEmitter())
    first_prompt = _system_prompt(llm)
    await agent.handle_message(CONVERSATION, "second", StreamEmitter())
    second_prompt = _system_prompt(llm)

    assert first_prompt.count("⏰ Reminder: standup") == 1
    assert "⏰ Reminder" not in second_prompt
    assert db.get_pending_reminders(CONVERSATION) == []


@pytest.mark.asyncio
async def test_reminder_end_to_end(tmp_path):
    db = _db(tmp_path)
    now = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
    scheduler = ReminderScheduler(db, clock=lambda: now)
    llm = MagicMock()
    llm.generate = AsyncMock(
        side_effect=[
            LLMResponse(
                content="",
                tool_calls=[
                    LLMToolCall(
                        name="setReminder",
                        arguments={"message": "standup", "delaySeconds": 30},
                        call_id="r1",
                    )
                ],
            ),
            LLMResponse(content="Reminder set."),
            LLMResponse(content="Your standup reminder fired."),
            LLMResponse(content="Anything else?"),
        ]
    )
    agent = _agent(db, llm, SetReminderTool(scheduler))
    emitter = StreamEmitter()

    await agent.handle_message(CONVERSATION, "remind me about standup in 30s", emitter)

    assert emitter.events[1]["output"] == {"scheduled": True, "message": "standup", "inSeconds": 30}
    assert await scheduler.fire_due(now + timedelta(seconds=29)) == 0
    assert await scheduler.fire_due(now + timedelta(seconds=30)) == 1
    assert db.get_pending_reminders(CONVERSATION) == [
        "⏰ Reminder: standup (triggered at 2026-10-18T09:00:30.000Z)"
    ]

    await agent.handle_message(CONVERSATION, "anything new?", StreamEmitter())
    assert _system_prompt(llm).count("⏰ Reminder: standup") == 1

    await agent.handle_message(CONVERSATION, "and now?", StreamEmitter())
    assert "⏰ Reminder" not in _system_prompt(llm)


@pytest.mark.asyncio
async def test_reminder_fired_during_turn_is_kept_for_next_turn(tmp_path):
    db = _db(tmp_path)
    db.upsert_conversation(CONVERSATION)
    db.append_reminder(CONVERSATION, "⏰ Reminder: old")

    async def generate(*args, **kwargs):
        db.append_reminder(CONVERSATION, "⏰ Reminder: new")
        return LLMResponse(content="ok")

    llm = MagicMock()
    llm.generate = AsyncMock(side_effect=generate)
    agent = _agent(db, llm)

    await agent.handle_message(CONVERSATION, "hi", StreamEmitter())

    assert db.get_pending_reminders(CONVERSATION) == ["⏰ Reminder: new"]


@pytest.mark.asyncio
async def test_client_tool_output_resubmission(tmp_path):
    db = _db(tmp_path)
    llm = MagicMock()
    llm.generate = AsyncMock(
        side_effect=[
            LLMResponse(content="", tool_calls=[LLMToolCall(name="getUserInfo", arguments={}, call_id="u1")]),
            LLMResponse(content="You are in Europe/Berlin."),
        ]
    )
    agent = _agent(db, llm, GetUserInfoTool())

    first = await agent.handle_message(CONVERSATION, "What timezone am I in?", StreamEmitter())
    assert first.outcome is TurnOutcome.AWAITING_CLIENT
    assert first.text is None
    stored = db.get_messages(CONVERSATION)[-1]
    assert stored.tool_calls[0].state is ToolCallState.REQUESTED

    emitter = StreamEmitter()
    second = await agent.resolve_tool_call(
        CONVERSATION, "u1", emitter, output={"timezone": "Europe/Berlin"}
    )

    assert second.outcome is TurnOutcome.DONE
    assert emitter.collected_text() == "You are in Europe/Berlin."
    request = llm.generate.call_args_list[1].args[0]
    assert request[-2]["tool_calls"][0]["id"] == "u1"
    assert request[-1]["role"] == "tool"
    assert request[-1]["tool_call_id"] == "u1"
    assert "Europe/Berlin" in request[-1]["content"]


@pytest.mark.asyncio
async def test_rejected_tool_call_is_reported_to_model(tmp_path):
    db = _db(tmp_path)
    llm = MagicMock()
    llm.generate = AsyncMock(
        side_effect=[
            LLMResponse(content="", tool_calls=[LLMToolCall(name="getUserInfo", arguments={}, call_id="u1")]),
            LLMResponse(content="No problem."),
        ]
    )
    agent = _agent(db, llm, GetUserInfoTool())
    await agent.handle_message(CONVERSATION, "where am I?", StreamEmitter())

    await agent.resolve_tool_call(CONVERSATION, "u1", StreamEmitter(), rejected=True)

    request = llm.generate.call_args_list[1].args[0]
    assert request[-1]["content"] == "user rejected this action"


@pytest.mark.asyncio
async def test_resolving_unknown_or_resolved_call_raises(tmp_path):
    db = _db(tmp_path)
    llm = MagicMock()
    llm.generate = AsyncMock(
        side_effect=[
            LLMResponse(content="", tool_calls=[LLMToolCall(name="getUserInfo", arguments={}, call_id="u1")]),
            LLMResponse(content="thanks"),
        ]
    )
    agent = _agent(db, llm, GetUserInfoTool())
    await agent.handle_message(CONVERSATION, "where am I?", StreamEmitter())

    with pytest.raises(KeyError):
        await agent.resolve_tool_call(CONVERSATION, "nope", StreamEmitter(), output={})

    await agent.resolve_tool_call(CONVERSATION, "u1", StreamEmitter(), output={"timezone": "UTC"})
    with pytest.raises(ValueError):
        await agent.resolve_tool_call(CONVERSATION, "u1", StreamEmitter(), output={})


@pytest.mark.asyncio
async def test_turns_for_one_conversation_do_not_overlap(tmp_path):
    db = _db(tmp_path)
    active = 0
    max_active = 0

    async def generate(*args, **kwargs):
        nonlocal active, max_active
        active += 1
        max_active = max(max_active, active)
        await asyncio.sleep(0.01)
        active -= 1
        return LLMResponse(content="ok")

    llm = MagicMock()
    llm.generate = AsyncMock(side_effect=generate)
    agent = _agent(db, llm)

    await asyncio.gather(
        agent.handle_message(CONVERSATION, "one", StreamEmitter()),
        agent.handle_message(CONVERSATION, "two", StreamEmitter()),
    )

    assert max_active == 1
    roles = [m.role for m in db.get_messages(CONVERSATION)]
    assert roles == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]


async def _drain(emitter: StreamEmitter) -> list[dict]:
    return [event async for event in emitter.stream()]


@pytest.mark.asyncio
async def test_unknown_call_id_still_closes_stream(tmp_path):
    db = _db(tmp_path)
    llm = MagicMock()
    llm.generate = AsyncMock(
        return_value=LLMResponse(content="", tool_calls=[LLMToolCall(name="getUserInfo", arguments={}, call_id="u1")])
    )
    agent = _agent(db, llm, GetUserInfoTool())
    await agent.handle_message(CONVERSATION, "where am I?", StreamEmitter())
    emitter = StreamEmitter()
    consumer = asyncio.create_task(_drain(emitter))

    with pytest.raises(KeyError):
        await agent.resolve_tool_call(CONVERSATION, "nope", emitter, output={})

    assert emitter.closed
    assert await asyncio.wait_for(consumer, 1) == []


@pytest.mark.asyncio
async def test_already_resolved_call_still_closes_stream(tmp_path):
    db = _db(tmp_path)
    llm = MagicMock()
    llm.generate = AsyncMock(
        side_effect=[
            LLMResponse(content="", tool_calls=[LLMToolCall(name="getUserInfo", arguments={}, call_id="u1")]),
            LLMResponse(content="thanks"),
        ]
    )
    agent = _agent(db, llm, GetUserInfoTool())
    await agent.handle_message(CONVERSATION, "where am I?", StreamEmitter())
    await agent.resolve_tool_call(CONVERSATION, "u1", StreamEmitter(), output={"timezone": "UTC"})
    emitter = StreamEmitter()
    consumer = asyncio.create_task(_drain(emitter))

    with pytest.raises(ValueError):
        await agent.resolve_tool_call(CONVERSATION, "u1", emitter, output={})

    assert emitter.closed
    await asyncio.wait_for(consumer, 1)


@pytest.mark.asyncio
async def test_store_failure_before_turn_still_closes_stream(tmp_path):
    db = MagicMock()
    db.add_message.side_effect = sqlite3.OperationalError("database is locked")
    agent = ChatAgent(db=db, orchestrator=MagicMock(), today=lambda: date(2026, 10, 18))
    emitter = StreamEmitter()

    with pytest.raises(sqlite3.OperationalError):
        await agent.handle_message(CONVERSATION, "hi", emitter)

    assert emitter.closed


@pytest.mark.asyncio
async def test_conversation_locks_are_dropped_after_turns(tmp_path):
    db = _db(tmp_path)
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content="ok"))
    agent = _agent(db, llm)

    await asyncio.gather(
        agent.handle_message("conv-a", "one", StreamEmitter()),
        agent.handle_message("conv-a", "two", StreamEmitter()),
        agent.handle_message("conv-b", "three", StreamEmitter()),
    )

    assert agent._locks == {}
    assert agent._lock_users == {}
    assert len(db.get_messages("conv-a")) == 4
