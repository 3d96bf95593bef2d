"""Browser context tool answered by the client."""

from __future__ import annotations

from typing import Any

from sage.tools.base import ClientTool


class GetUserInfoTool(ClientTool):
    """Timezone, locale and local time, reported by the user's browser."""

    name = "getUserInfo"
    description = (
        "Get the user's browser information: timezone, locale, and local time. "
        "Runs in the user's browser."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {},
        "additionalProperties": False,
    }
