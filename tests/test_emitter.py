import asyncio

import pytest

from sage.emitter import StreamEmitter


def test_text_block_is_a_triple_with_shared_id():
    emitter = StreamEmitter()

    block_id = emitter.text("hello")

    assert emitter.events == [
        {"type": "text-start", "id": block_id},
        {"type": "text-delta", "id": block_id, "delta": "hello"},
        {"type": "text-end", "id": block_id},
    ]
    assert emitter.collected_text() == "hello"


def test_emit_after_close_raises():
    emitter = StreamEmitter()
    emitter.close()

    with pytest.raises(RuntimeError):
        emitter.tool_output_available("c1", {})


@pytest.mark.asyncio
async def test_stream_yields_events_in_order_until_closed():
    emitter = StreamEmitter()
    received = []

    async def consume():
        async for event in emitter.stream():
            received.append(event["type"])

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    emitter.tool_input_available("c1", "searchWeb", {"query": "q"})
    await asyncio.sleep(0)
    emitter.tool_output_available("c1", {"summary": "s"})
    emitter.text("done")
    emitter.close()
    await consumer

    assert received == [
        "tool-input-available",
        "tool-output-available",
        "text-start",
        "text-delta",
        "text-end",
    ]
