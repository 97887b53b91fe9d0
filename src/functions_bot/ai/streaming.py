"""Aggregation of streamed tool-call deltas into complete tool calls."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from functions_bot.core.types import ToolCallRequest


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


@dataclass
class _PartialCall:
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Collects ``delta.tool_calls`` fragments keyed by their stream index.

    The id and name arrive once (usually in the first fragment), arguments
    arrive as string pieces that only form valid JSON once the stream ends.
    Accepts SDK delta objects and plain dicts alike.
    """

    def __init__(self) -> None:
        self._calls: dict[int, _PartialCall] = {}

    def add(self, delta: Any) -> None:
        index = _field(delta, "index") or 0
        call = self._calls.setdefault(index, _PartialCall())
        call_id = _field(delta, "id")
        if call_id:
            call.id = call_id
        function = _field(delta, "function")
        name = _field(function, "name")
        if name:
            call.name = name
        arguments = _field(function, "arguments")
        if arguments:
            call.arguments.append(arguments)

    def add_all(self, deltas: Any) -> None:
        for delta in deltas or ():
            self.add(delta)

    def __bool__(self) -> bool:
        return bool(self._calls)

    def result(self) -> list[ToolCallRequest]:
        return [
            ToolCallRequest(
                id=call.id or f"call_{index}",
                name=call.name,
                arguments="".join(call.arguments) or "{}",
            )
            for index, call in sorted(self._calls.items())
        ]
