"""Tool contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class Tool(ABC):
    """Base class for all assistant tools."""

    name: str
    description: str
    parameters_schema: dict[str, Any]
    requires_approval: bool = False
    client_side: bool = False

    @abstractmethod
    async def run(self, conversation_id: str, **kwargs: Any) -> Any:
        """Execute tool with validated arguments."""


class ClientTool(Tool):
    """A tool whose result only the user's client can produce."""

    client_side = True

    async def run(self, conversation_id: str, **kwargs: Any) -> Any:
        raise RuntimeError(f"{self.name} runs on the client and cannot be executed by the server")
