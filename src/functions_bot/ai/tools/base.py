"""Tool interface: registry entries that build per-chat tool clients."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from functions_bot.core.types import ToolResponse

if TYPE_CHECKING:
    from functions_bot.config import ChatConfig
    from functions_bot.core.threads import ThreadState

ToolFunction = Callable[[str], Awaitable[ToolResponse]]


class ToolFunctions:
    """Name lookup and API specs for the functions a client exposes."""

    def __init__(self, client: ToolClient):
        self._client = client

    def get(self, name: str) -> Optional[ToolFunction]:
        if name != self._client.name:
            return None

        async def _run(args: str) -> ToolResponse:
            kwargs = json.loads(args or "{}")
            if not isinstance(kwargs, dict):
                raise ValueError(f"Arguments for {name} must be a JSON object")
            result = await self._client.execute(**kwargs)
            if isinstance(result, ToolResponse):
                return result
            return ToolResponse(content=str(result))

        return _run

    @property
    def tool_specs(self) -> list[dict[str, Any]]:
        return [self._client.to_api_dict()]


class ToolClient(ABC):
    """A tool bound to one chat and its thread for the duration of a turn."""

    agent: bool = False

    def __init__(self, chat_config: ChatConfig, thread: ThreadState, params: dict | None = None):
        self.chat_config = chat_config
        self.thread = thread
        self.params = params or {}

    @property
    @abstractmethod
    def name(self) -> str:
        """Function name sent to the completion API."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @property
    @abstractmethod
    def input_schema(self) -> dict[str, Any]:
        """JSON Schema dict describing accepted parameters."""
        ...

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResponse | str:
        ...

    @property
    def functions(self) -> ToolFunctions:
        return ToolFunctions(self)

    def options_string(self, args: str) -> Optional[str]:
        """Human-readable rendering of a call; None falls back to the default listing."""
        return None

    async def prompt_append(self) -> Optional[str]:
        """Text appended to the system message while the tool is enabled."""
        return None

    def system_message(self) -> Optional[str]:
        """System message offered by the tool when the chat defines none."""
        return None

    def to_api_dict(self) -> dict[str, Any]:
        """Serialize to the OpenAI function tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class Tool(ABC):
    """Registry entry for a tool. ``call`` builds a client for one chat turn."""

    name: str = ""
    description: str = ""
    default_params: dict[str, Any] = {}

    @abstractmethod
    def call(self, chat_config: ChatConfig, thread: ThreadState) -> ToolClient:
        ...

    def params_for(self, chat_config: ChatConfig) -> dict[str, Any]:
        """Chat tool params layered over the tool defaults."""
        return {**self.default_params, **chat_config.tool_params.get(self.name, {})}
