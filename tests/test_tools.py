from datetime import datetime, timezone

import pytest

from sage.db import Database
from sage.scheduler import ReminderScheduler
from sage.tools.registry import ToolRegistry
from sage.tools.reminder_tool import SetReminderTool
from sage.tools.search_tool import WebSearchTool
from sage.tools.user_info_tool import GetUserInfoTool


def _setup(tmp_path) -> tuple[Database, ToolRegistry]:
    db = Database(tmp_path / "sage.db")
    db.initialize()
    scheduler = ReminderScheduler(db, clock=lambda: datetime(2026, 10, 18, tzinfo=timezone.utc))
    registry = ToolRegistry(db)
    registry.register(WebSearchTool())
    registry.register(GetUserInfoTool())
    registry.register(SetReminderTool(scheduler))
    return db, registry


def test_tool_specs_are_function_schemas(tmp_path):
    _, registry = _setup(tmp_path)

    specs = registry.list_tool_specs()

    assert [s["function"]["name"] for s in specs] == ["searchWeb", "getUserInfo", "setReminder"]
    assert all(s["type"] == "function" for s in specs)
    assert specs[2]["function"]["parameters"]["required"] == ["message", "delaySeconds"]
    assert registry.list_tool_specs() == specs


def test_tool_flags(tmp_path):
    _, registry = _setup(tmp_path)

    assert registry.is_client_side("getUserInfo")
    assert not registry.is_client_side("searchWeb")
    assert registry.requires_approval("setReminder")
    assert not registry.requires_approval("searchWeb")
    assert not registry.is_client_side("missing")


@pytest.mark.asyncio
async def test_set_reminder_schedules_and_logs(tmp_path):
    db, registry = _setup(tmp_path)

    result = await registry.execute("conv-1", "setReminder", {"message": "standup", "delaySeconds": 30})

    assert result == {"scheduled": True, "message": "standup", "inSeconds": 30}
    assert db.list_tool_executions("conv-1")[0]["succeeded"] is True
    due = db.get_due_reminders(datetime(2026, 10, 18, 0, 0, 30, tzinfo=timezone.utc))
    assert [r.message for r in due] == ["standup"]


@pytest.mark.asyncio
async def test_set_reminder_rejects_non_positive_delay(tmp_path):
    _, registry = _setup(tmp_path)

    result = await registry.execute("conv-1", "setReminder", {"message": "standup", "delaySeconds": 0})

    assert result["scheduled"] is False
    assert "delaySeconds" in result["error"]


@pytest.mark.asyncio
async def test_invalid_input_returns_error_payload(tmp_path):
    db, registry = _setup(tmp_path)

    result = await registry.execute("conv-1", "setReminder", {"message": "standup"})

    assert "Invalid input for tool" in result["error"]
    assert db.list_tool_executions("conv-1")[0]["succeeded"] is False


@pytest.mark.asyncio
async def test_unknown_and_client_tools_are_not_executed(tmp_path):
    _, registry = _setup(tmp_path)

    assert "Unknown tool" in (await registry.execute("conv-1", "deleteEverything", {}))["error"]
    assert "Unknown tool" in (await registry.execute("conv-1", "getUserInfo", {}))["error"]


@pytest.mark.asyncio
async def test_client_tool_cannot_run_on_server():
    with pytest.raises(RuntimeError):
        await GetUserInfoTool().run("conv-1")
