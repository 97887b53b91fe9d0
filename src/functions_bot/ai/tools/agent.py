"""Expose another configured chat (an "agent") to the model as a tool."""

from __future__ import annotations

import dataclasses
import json
import re
import zlib
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from functions_bot.ai.tools.base import Tool, ToolClient
from functions_bot.core.types import ToolResponse
from functions_bot.log import get_logger

if TYPE_CHECKING:
    from functions_bot.config import AgentToolConfig, ChatConfig, ConfigStore
    from functions_bot.core.threads import ThreadState
    from functions_bot.messenger.models import IncomingMessage

logger = get_logger(__name__)

AgentRunner = Callable[["IncomingMessage", "ChatConfig"], Awaitable[ToolResponse]]

_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


def safe_tool_name(name: str, fallback: str = "agent") -> str:
    cleaned = _UNSAFE.sub("_", name).strip("_")[:64]
    return cleaned or fallback


def agent_thread_id(agent_chat: ChatConfig) -> int:
    """Chat id used for the agent's own thread when it has no configured id."""
    if agent_chat.id is not None:
        return agent_chat.id
    key = agent_chat.agent_name or agent_chat.bot_name or agent_chat.name
    return -(10**12) - zlib.crc32(key.encode("utf-8"))


class AgentClient(ToolClient):
    agent = True

    def __init__(
        self,
        chat_config: ChatConfig,
        thread: ThreadState,
        tool_config: AgentToolConfig,
        agent_chat: ChatConfig,
        message: IncomingMessage,
        runner: AgentRunner,
    ):
        super().__init__(chat_config, thread)
        self._tool_config = tool_config
        self._agent_chat = agent_chat
        self._message = message
        self._runner = runner

    @property
    def agent_label(self) -> str:
        return self._tool_config.agent_name or self._tool_config.bot_name or "unknown"

    @property
    def name(self) -> str:
        return safe_tool_name(self._tool_config.name or self.agent_label)

    @property
    def description(self) -> str:
        return self._tool_config.description or f"Proxy tool for agent {self.agent_label}"

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "input": {
                    "type": "string",
                    "description": "Input text for the tool (task, query, etc.)",
                },
            },
            "required": ["input"],
        }

    async def execute(self, **kwargs: Any) -> ToolResponse:
        text = kwargs.get("input") or kwargs.get("text") or json.dumps(kwargs, ensure_ascii=False)
        request = dataclasses.replace(
            self._message,
            chat_id=agent_thread_id(self._agent_chat),
            text=str(text),
        )
        logger.info("agent_call", agent=self.agent_label, chat_id=self._message.chat_id)
        try:
            answer = await self._runner(request, self._agent_chat)
        except Exception as e:
            logger.error("agent_call_failed", agent=self.agent_label, error=str(e))
            return ToolResponse(content=f"Proxy tool error for agent '{self.agent_label}': {e}")
        return ToolResponse(content=answer.content)

    async def prompt_append(self) -> Optional[str]:
        return self._tool_config.prompt_append


class AgentTool(Tool):
    """Built per turn: bound to the calling message."""

    def __init__(
        self,
        tool_config: AgentToolConfig,
        agent_chat: ChatConfig,
        message: IncomingMessage,
        runner: AgentRunner,
    ):
        self._tool_config = tool_config
        self._agent_chat = agent_chat
        self._message = message
        self._runner = runner
        self.name = safe_tool_name(tool_config.name or tool_config.agent_name or tool_config.bot_name or "")
        self.description = tool_config.description or ""

    def call(self, chat_config: ChatConfig, thread: ThreadState) -> AgentClient:
        return AgentClient(
            chat_config, thread, self._tool_config, self._agent_chat, self._message, self._runner
        )


def build_agent_tools(
    chat_config: ChatConfig,
    message: IncomingMessage,
    config_store: ConfigStore,
    runner: AgentRunner | None,
) -> list[AgentTool]:
    if runner is None:
        return []
    tools: list[AgentTool] = []
    for tool_config in chat_config.agent_tools:
        agent_chat = config_store.find_agent(tool_config.agent_name, tool_config.bot_name)
        if agent_chat is None:
            logger.warning("agent_not_found", agent=tool_config.agent_name or tool_config.bot_name)
            continue
        if agent_chat.private_users is not None and (
            (message.username or "without_username").lower()
            not in (u.lower() for u in agent_chat.private_users)
        ):
            continue
        tools.append(AgentTool(tool_config, agent_chat, message, runner))
    return tools
