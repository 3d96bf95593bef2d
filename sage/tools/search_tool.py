"""DuckDuckGo instant-answer search tool."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from sage.tools.base import Tool

LOGGER = logging.getLogger(__name__)

DDG_INSTANT_ANSWER_URL = "https://api.duckduckgo.com/"

_MAX_ABSTRACT_CHARS = 500
_MAX_RELATED = 4
_MAX_TITLE_CHARS = 120


class WebSearchTool(Tool):
    """Search the web using the DuckDuckGo instant-answer API (no API key)."""

    name = "searchWeb"
    description = (
        "Search the web for current information on any topic. "
        "Returns a concise summary of results."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "The search query"},
        },
        "required": ["query"],
        "additionalProperties": False,
    }

    def __init__(self, url: str = DDG_INSTANT_ANSWER_URL, timeout_seconds: float = 10.0) -> None:
        self._url = url
        self._timeout_seconds = timeout_seconds

    async def run(self, conversation_id: str, **kwargs: Any) -> dict[str, Any]:
        query = str(kwargs["query"]).strip()

        try:
            async with httpx.AsyncClient() as client:
                resp = await client.get(
                    self._url,
                    params={"q": query, "format": "json", "no_html": 1, "skip_disambig": 1},
                    timeout=self._timeout_seconds,
                )
                resp.raise_for_status()
                data = resp.json()
            if not isinstance(data, dict):
                raise ValueError("unexpected response shape")
            abstract_text = data.get("AbstractText") or ""
            topics = data.get("RelatedTopics") or []
            if not isinstance(abstract_text, str) or not isinstance(topics, list):
                raise ValueError("unexpected response fields")
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("Search failed for %r: %s", query, exc)
            return {
                "query": query,
                "summary": "Search temporarily unavailable.",
                "results": [],
                "error": str(exc),
            }

        abstract = abstract_text[:_MAX_ABSTRACT_CHARS] or None
        related = [
            {"title": topic["Text"][:_MAX_TITLE_CHARS], "url": topic.get("FirstURL")}
            for topic in topics
            if isinstance(topic, dict) and isinstance(topic.get("Text"), str) and topic["Text"]
        ][:_MAX_RELATED]

        if not abstract and not related:
            return {
                "query": query,
                "summary": f'No instant answer found for "{query}". Suggest trying a more specific query.',
                "results": [],
            }

        return {
            "query": query,
            "summary": abstract or "See related results below.",
            "results": related,
        }
