"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from sage.models import ChatMessage, ScheduledReminder

SCHEMA_VERSION = 1


def _empty_state() -> dict[str, Any]:
    return {"reminders": []}


class Database:
    """Small SQLite wrapper with explicit schema management.

    Conversation state is a JSON document per conversation. Every update to it
    goes through a ``BEGIN IMMEDIATE`` transaction so a turn and a firing
    reminder never interleave their read-modify-write.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                conversation_id TEXT PRIMARY KEY,
                state_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                message_id TEXT NOT NULL UNIQUE,
                role TEXT NOT NULL,
                parts_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(conversation_id) REFERENCES conversations(conversation_id)
            );

            CREATE TABLE IF NOT EXISTS tool_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                input_json TEXT NOT NULL,
                output_json TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS scheduled_reminders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                message TEXT NOT NULL,
                run_at TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )

    def upsert_conversation(self, conversation_id: str) -> None:
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO conversations(conversation_id, state_json, created_at, updated_at)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(conversation_id) DO NOTHING
                """,
                (conversation_id, json.dumps(_empty_state()), now, now),
            )

    def add_message(self, conversation_id: str, message: ChatMessage) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO messages(conversation_id, message_id, role, parts_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    message.message_id,
                    message.role.value,
                    json.dumps(message.to_dict()["parts"]),
                    _utc_now_iso(),
                ),
            )

    def update_message(self, conversation_id: str, message: ChatMessage) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE messages SET parts_json = ? WHERE conversation_id = ? AND message_id = ?",
                (json.dumps(message.to_dict()["parts"]), conversation_id, message.message_id),
            )
            if cur.rowcount == 0:
                raise KeyError(f"Unknown message: {message.message_id}")

    def get_messages(self, conversation_id: str, limit: int | None = None) -> list[ChatMessage]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT message_id, role, parts_json
                FROM messages
                WHERE conversation_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (conversation_id, -1 if limit is None else limit),
            ).fetchall()
        ordered = list(reversed(rows))
        return [
            ChatMessage.from_dict(
                {"id": row["message_id"], "role": row["role"], "parts": json.loads(row["parts_json"])}
            )
            for row in ordered
        ]

    def get_state(self, conversation_id: str) -> dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT state_json FROM conversations WHERE conversation_id = ?", (conversation_id,)
            ).fetchone()
        return _load_state(row)

    def update_state(
        self,
        conversation_id: str,
        mutate: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> dict[str, Any]:
        """Atomically read, transform and write a conversation's state."""

        with self._transaction() as conn:
            return self._update_state(conn, conversation_id, mutate)

    def _update_state(
        self,
        conn: sqlite3.Connection,
        conversation_id: str,
        mutate: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> dict[str, Any]:
        row = conn.execute(
            "SELECT state_json FROM conversations WHERE conversation_id = ?", (conversation_id,)
        ).fetchone()
        state = mutate(_load_state(row))
        now = _utc_now_iso()
        conn.execute(
            """
            INSERT INTO conversations(conversation_id, state_json, created_at, updated_at)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(conversation_id) DO UPDATE SET
                state_json=excluded.state_json,
                updated_at=excluded.updated_at
            """,
            (conversation_id, json.dumps(state), now, now),
        )
        return state

    def get_pending_reminders(self, conversation_id: str) -> list[str]:
        return list(self.get_state(conversation_id)["reminders"])

    def append_reminder(self, conversation_id: str, text: str) -> None:
        self.update_state(conversation_id, lambda state: {**state, "reminders": [*state["reminders"], text]})

    def consume_reminders(self, conversation_id: str, surfaced: list[str]) -> None:
        """Remove reminders that were shown to the model, keeping any that arrived since."""

        def _drop(state: dict[str, Any]) -> dict[str, Any]:
            remaining = list(state["reminders"])
            for text in surfaced:
                if text in remaining:
                    remaining.remove(text)
            return {**state, "reminders": remaining}

        self.update_state(conversation_id, _drop)

    def log_tool_execution(
        self,
        conversation_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: Any,
        succeeded: bool,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_executions(conversation_id, tool_name, input_json, output_json, succeeded, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    tool_name,
                    json.dumps(tool_input),
                    json.dumps(tool_output, default=str),
                    int(succeeded),
                    _utc_now_iso(),
                ),
            )

    def list_tool_executions(self, conversation_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT tool_name, input_json, output_json, succeeded
                FROM tool_executions
                WHERE conversation_id = ?
                ORDER BY id ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [
            {
                "tool_name": row["tool_name"],
                "input": json.loads(row["input_json"]),
                "output": json.loads(row["output_json"]),
                "succeeded": bool(row["succeeded"]),
            }
            for row in rows
        ]

    def create_scheduled_reminder(self, conversation_id: str, message: str, run_at: datetime) -> int:
        now = _utc_now_iso()
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO scheduled_reminders(conversation_id, message, run_at, status, created_at, updated_at)
                VALUES (?, ?, ?, 'pending', ?, ?)
                """,
                (conversation_id, message, run_at.astimezone(timezone.utc).isoformat(timespec="microseconds"), now, now),
            )
            return int(cur.lastrowid)

    def get_due_reminders(self, now: datetime) -> list[ScheduledReminder]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, conversation_id, message, run_at, status
                FROM scheduled_reminders
                WHERE status = 'pending' AND run_at <= ?
                ORDER BY run_at ASC, id ASC
                """,
                (now.astimezone(timezone.utc).isoformat(timespec="microseconds"),),
            ).fetchall()
        return [ScheduledReminder(**dict(row)) for row in rows]

    def fire_scheduled_reminder(self, reminder_id: int, conversation_id: str, text: str) -> bool:
        """Mark a reminder fired and append its text in one transaction.

        Returns False when the reminder was already fired, so a duplicate
        delivery leaves the conversation state untouched.
        """

        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE scheduled_reminders SET status = 'fired', updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (_utc_now_iso(), reminder_id),
            )
            if cur.rowcount == 0:
                return False
            self._update_state(
                conn,
                conversation_id,
                lambda state: {**state, "reminders": [*state["reminders"], text]},
            )
            return True

    def mark_reminder_status(self, reminder_id: int, status: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE scheduled_reminders SET status = ?, updated_at = ? WHERE id = ?",
                (status, _utc_now_iso(), reminder_id),
            )

    def get_reminder_status(self, reminder_id: int) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT status FROM scheduled_reminders WHERE id = ?", (reminder_id,)
            ).fetchone()
        return row["status"] if row else None


def _load_state(row: sqlite3.Row | None) -> dict[str, Any]:
    if row is None:
        return _empty_state()
    state = json.loads(row["state_json"])
    if not isinstance(state.get("reminders"), list):
        state["reminders"] = []
    return state


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
