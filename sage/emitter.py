"""Ordered, append-only sink for turn events."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, AsyncIterator

StreamEvent = dict[str, Any]


class StreamEmitter:
    """Collects text and tool lifecycle events in the order they are produced.

    Emitting is synchronous. A transport can ``async for`` over ``stream()``
    to receive events as they arrive; the iteration ends after ``close()``.
    """

    def __init__(self) -> None:
        self._events: list[StreamEvent] = []
        self._closed = False
        self._wakeup = asyncio.Event()

    @property
    def events(self) -> list[StreamEvent]:
        return list(self._events)

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: StreamEvent) -> None:
        if self._closed:
            raise RuntimeError("Cannot emit on a closed stream")
        self._events.append(event)
        self._wakeup.set()

    def text(self, text: str) -> str:
        """Emit a complete text block as a start/delta/end triple."""

        block_id = uuid.uuid4().hex
        self.emit({"type": "text-start", "id": block_id})
        self.emit({"type": "text-delta", "id": block_id, "delta": text})
        self.emit({"type": "text-end", "id": block_id})
        return block_id

    def tool_input_available(self, call_id: str, tool_name: str, tool_input: dict[str, Any]) -> None:
        self.emit(
            {
                "type": "tool-input-available",
                "toolCallId": call_id,
                "toolName": tool_name,
                "input": tool_input,
            }
        )

    def tool_output_available(self, call_id: str, output: Any) -> None:
        self.emit({"type": "tool-output-available", "toolCallId": call_id, "output": output})

    def close(self) -> None:
        self._closed = True
        self._wakeup.set()

    def collected_text(self) -> str:
        return "".join(event["delta"] for event in self._events if event["type"] == "text-delta")

    async def stream(self) -> AsyncIterator[StreamEvent]:
        index = 0
        while True:
            while index < len(self._events):
                yield self._events[index]
                index += 1
            if self._closed:
                return
            self._wakeup.clear()
            await self._wakeup.wait()
