"""Completion API abstraction with an OpenAI-compatible backend."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from functions_bot.ai.streaming import ToolCallAccumulator
from functions_bot.core.types import ToolCallRequest
from functions_bot.errors import CompletionError
from functions_bot.log import get_logger

if TYPE_CHECKING:
    from functions_bot.config import ChatConfig, ConfigStore

logger = get_logger(__name__)

DeltaCallback = Callable[[str], Awaitable[None]]


@dataclass
class Completion:
    """Unified response from a completion backend."""

    content: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    raw: Any = None

    def malformed_tool_calls(self) -> list[ToolCallRequest]:
        bad = []
        for call in self.tool_calls:
            try:
                json.loads(call.arguments or "{}")
            except json.JSONDecodeError:
                bad.append(call)
        return bad


class CompletionClient(ABC):
    """Abstract base class for completion backends."""

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None = None,
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
        on_delta: DeltaCallback | None = None,
    ) -> Completion:
        """Send messages and return the assistant message.

        With ``stream=True`` text deltas are passed to ``on_delta`` as they
        arrive and tool-call fragments are merged before returning.
        """
        ...


class OpenAIClient(CompletionClient):
    """Chat Completions backend using the official openai SDK."""

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        max_retries: int = 2,
        timeout: float = 120,
    ):
        import openai

        self._client = openai.AsyncOpenAI(
            api_key=api_key or "no-key",
            base_url=base_url,
            max_retries=max_retries,
            timeout=timeout,
        )

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None = None,
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
        on_delta: DeltaCallback | None = None,
    ) -> Completion:
        kwargs: dict[str, Any] = {"model": model, "messages": messages}
        if temperature is not None:
            kwargs["temperature"] = temperature
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        logger.debug("api_request", model=model, message_count=len(messages), stream=stream)
        if stream:
            return await self._complete_stream(kwargs, on_delta)

        response = await self._client.chat.completions.create(**kwargs)
        if not response.choices:
            raise CompletionError("No message found in completion response")
        message = response.choices[0].message
        usage = response.usage
        logger.debug(
            "api_response",
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            finish_reason=response.choices[0].finish_reason,
        )
        tool_calls = [
            ToolCallRequest(id=c.id, name=c.function.name, arguments=c.function.arguments or "{}")
            for c in message.tool_calls or []
            if getattr(c, "function", None) is not None
        ]
        return Completion(
            content=message.content or "",
            tool_calls=tool_calls,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            raw=response,
        )

    async def _complete_stream(
        self, kwargs: dict[str, Any], on_delta: DeltaCallback | None
    ) -> Completion:
        stream = await self._client.chat.completions.create(**kwargs, stream=True)
        text_parts: list[str] = []
        accumulator = ToolCallAccumulator()
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                text_parts.append(delta.content)
                if on_delta is not None:
                    await on_delta(delta.content)
            accumulator.add_all(delta.tool_calls)
        return Completion(content="".join(text_parts), tool_calls=accumulator.result())


class ClientProvider:
    """Picks the completion client (and model override) for a chat.

    Chats with ``local_model`` use the matching OpenAI-compatible endpoint
    from ``local_models``; everything else shares the default client.
    """

    def __init__(self, config_store: ConfigStore, default: CompletionClient | None = None):
        self._config_store = config_store
        self._default = default
        self._local: dict[str, CompletionClient] = {}

    def default(self) -> CompletionClient:
        if self._default is None:
            auth = self._config_store.config.auth
            self._default = OpenAIClient(auth.openai_api_key, base_url=auth.openai_base_url)
        return self._default

    def for_chat(self, chat_config: ChatConfig) -> tuple[CompletionClient, Optional[str]]:
        if not chat_config.local_model:
            return self.default(), None
        local = next(
            (m for m in self._config_store.config.local_models if m.name == chat_config.local_model),
            None,
        )
        if local is None:
            logger.warning("local_model_not_found", model=chat_config.local_model)
            return self.default(), None
        client = self._local.get(local.name)
        if client is None:
            client = OpenAIClient("", base_url=local.url)
            self._local[local.name] = client
        return client, local.model
