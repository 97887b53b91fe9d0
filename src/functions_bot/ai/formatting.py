"""Human-readable rendering of tool calls and results."""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from functions_bot.ai.tools.base import ToolClient
    from functions_bot.core.types import ToolCallRequest

TOOL_RESULT_MESSAGE_LIMIT = 8000

_CAMEL_BOUNDARY = re.compile(r"([a-z])([A-Z])")


def prettify_key(key: str | None) -> str:
    """``startOffDate`` -> ``Start Off Date``, ``start_off_date`` -> ``Start off date``."""
    if not key:
        return ""
    key = re.sub(r"[_-]", " ", key)
    key = _CAMEL_BOUNDARY.sub(r"\1 \2", key)
    return key[:1].upper() + key[1:]


def prettify_key_value(key: str, value: Any, level: int = 0) -> str:
    title = prettify_key(key)
    prefix = "  " * level + "-"
    if isinstance(value, list):
        if not value:
            return f"{prefix} *{title}:* (empty)"
        lines = [f"{prefix} *{title}:*"]
        lines.extend(prettify_key_value(str(i), v, level + 1) for i, v in enumerate(value))
        return "\n".join(lines)
    if isinstance(value, dict):
        if not value:
            return f"{prefix} *{title}:* (empty)"
        lines = [f"{prefix} *{title}:*"]
        lines.extend(prettify_key_value(k, v, level + 1) for k, v in value.items())
        return "\n".join(lines)
    return f"{prefix} *{title}:* {value}"


def remove_null_params(args: str) -> str:
    """Drop ``null`` top-level arguments; models often send every optional key."""
    params = json.loads(args or "{}")
    if not isinstance(params, dict):
        return args
    return json.dumps({k: v for k, v in params.items() if v is not None}, ensure_ascii=False)


def tool_call_header(tool_call: ToolCallRequest, client: ToolClient | None = None) -> str:
    agent = "Agent: " if client is not None and client.agent else ""
    return f"`{agent}{re.sub(r'[_-]', ' ', tool_call.name)}:`"


def format_tool_call(tool_call: ToolCallRequest, args: str, client: ToolClient | None = None) -> str:
    """Header line followed by a prettified argument listing.

    A tool's own ``options_string`` takes precedence.
    """
    if client is not None:
        custom = client.options_string(args)
        if custom:
            return custom
    try:
        params = json.loads(args or "{}")
    except json.JSONDecodeError:
        return f"{tool_call_header(tool_call, client)}\n{args}"
    lines = [tool_call_header(tool_call, client)]
    if isinstance(params, dict):
        lines.extend(prettify_key_value(k, v) for k, v in params.items())
    return "\n".join(lines)


def limit_text(text: str, limit: int = TOOL_RESULT_MESSAGE_LIMIT) -> str:
    return text if len(text) <= limit else text[:limit] + "..."
