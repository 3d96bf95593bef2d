"""Cloudflare Workers AI implementation of LLMProvider."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from sage.config import Settings
from sage.llm.base import LLMProvider
from sage.models import LLMResponse, LLMToolCall

_LOGGER = logging.getLogger(__name__)

_MAX_RETRIES = 3
_RETRY_BACKOFF_SECONDS = [2, 5, 15]


class WorkersAIProvider(LLMProvider):
    """LLM provider using the Workers AI ``/ai/run/{model}`` REST endpoint."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        payload: dict[str, Any] = {
            "messages": messages,
            "stream": False,
            "max_tokens": max_tokens or self._settings.max_tokens,
        }
        if tools:
            payload["tools"] = tools

        path = f"/accounts/{self._settings.cloudflare_account_id}/ai/run/{self._settings.workers_ai_model}"
        timeout = httpx.Timeout(self._settings.request_timeout_seconds)
        async with httpx.AsyncClient(base_url=self._settings.workers_ai_base_url, timeout=timeout) as client:
            for attempt in range(_MAX_RETRIES + 1):
                response = await client.post(
                    path,
                    headers={
                        "Authorization": f"Bearer {self._settings.cloudflare_api_token}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                if response.status_code == 429 and attempt < _MAX_RETRIES:
                    wait = _RETRY_BACKOFF_SECONDS[attempt]
                    _LOGGER.warning(
                        "Workers AI rate limited (429), retrying in %ds (attempt %d/%d)",
                        wait,
                        attempt + 1,
                        _MAX_RETRIES,
                    )
                    await asyncio.sleep(wait)
                    continue
                response.raise_for_status()
                break
            data = response.json()

        return parse_response(data)


def parse_response(data: dict[str, Any]) -> LLMResponse:
    """Parse a Workers AI body, with or without the ``result`` envelope."""

    result = data.get("result", data) if isinstance(data, dict) else {}
    if not isinstance(result, dict):
        result = {}

    content = result.get("response") or ""
    if not isinstance(content, str):
        content = json.dumps(content)
    _LOGGER.info(
        "LLM response: content=%r tool_calls=%r",
        content[:200],
        result.get("tool_calls"),
    )

    parsed_tool_calls: list[LLMToolCall] = []
    for tool_call in result.get("tool_calls") or []:
        # Some models return {name, arguments} without the "function" wrapper.
        function_data = tool_call.get("function") or tool_call
        name = function_data.get("name", "")
        parsed_tool_calls.append(
            LLMToolCall(
                name=name,
                arguments=_parse_arguments(name, function_data.get("arguments")),
                call_id=tool_call.get("id"),
            )
        )

    return LLMResponse(content=content, tool_calls=parsed_tool_calls, raw=data)


def _parse_arguments(tool_name: str, raw: Any) -> dict[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        _LOGGER.warning("Malformed arguments for tool %r, using {}: %r", tool_name, raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}
