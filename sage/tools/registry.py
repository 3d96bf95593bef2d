"""Registry for safe tool registration and execution."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError, create_model

from sage.db import Database
from sage.tools.base import Tool

LOGGER = logging.getLogger(__name__)


class ToolRegistry:
    """Explicit registry of the tools offered to the model."""

    def __init__(self, db: Database) -> None:
        self._db = db
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def is_client_side(self, tool_name: str) -> bool:
        tool = self._tools.get(tool_name)
        return tool is not None and tool.client_side

    def requires_approval(self, tool_name: str) -> bool:
        tool = self._tools.get(tool_name)
        return tool is not None and tool.requires_approval

    def list_tool_specs(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters_schema,
                },
            }
            for tool in self._tools.values()
        ]

    async def execute(self, conversation_id: str, tool_name: str, arguments: dict[str, Any]) -> Any:
        """Run a server-side tool.

        Never raises: an unknown tool, invalid input or a failing tool all
        come back as an ``{"error": ...}`` payload the model can react to.
        """

        tool = self._tools.get(tool_name)
        if tool is None or tool.client_side:
            LOGGER.warning("Model requested unavailable tool %r", tool_name)
            return {"error": f"Unknown tool: {tool_name}"}

        try:
            validated = _validate_json_schema(tool.parameters_schema, arguments)
        except ValueError as exc:
            result = {"error": str(exc)}
            self._db.log_tool_execution(conversation_id, tool_name, arguments, result, succeeded=False)
            return result

        try:
            result = await tool.run(conversation_id, **validated)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Tool %s failed", tool_name)
            result = {"error": str(exc)}
            self._db.log_tool_execution(conversation_id, tool_name, validated, result, succeeded=False)
            return result

        self._db.log_tool_execution(conversation_id, tool_name, validated, result, succeeded=True)
        return result


def _validate_json_schema(schema: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    props = schema.get("properties", {})
    required = set(schema.get("required", []))
    fields: dict[str, tuple[type[Any], Any]] = {}
    for name, config in props.items():
        typ = _python_type(config.get("type", "string"))
        if name in required:
            fields[name] = (typ, ...)
        else:
            fields[name] = (typ | None, None)

    model = create_model("ToolInputModel", **fields)
    try:
        value = model(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid input for tool: {exc}") from exc
    return value.model_dump(exclude_none=True)


def _python_type(schema_type: str) -> type[Any]:
    mapping: dict[str, type[Any]] = {
        "string": str,
        "integer": int,
        "number": float,
        "boolean": bool,
        "object": dict,
        "array": list,
    }
    return mapping.get(schema_type, str)
