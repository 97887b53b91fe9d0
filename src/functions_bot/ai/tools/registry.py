"""Tool registry: the static list of built-in tools and per-chat resolution."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from functions_bot.ai.tools.agent import AgentRunner, build_agent_tools
from functions_bot.ai.tools.base import Tool
from functions_bot.log import get_logger

if TYPE_CHECKING:
    from functions_bot.config import ChatConfig, ConfigStore
    from functions_bot.core.history import HistoryManager
    from functions_bot.messenger.models import IncomingMessage

logger = get_logger(__name__)

SETTINGS_TOOL = "change_chat_settings"


class ToolRegistry:
    """Registry of all available tools."""

    def __init__(self, config_store: ConfigStore, history: HistoryManager):
        self._tools: dict[str, Tool] = {}
        self._config_store = config_store
        self._history = history
        self._agent_runner: AgentRunner | None = None

    def register(self, tool: Any) -> bool:
        """Register a tool; entries without a callable ``call`` are skipped."""
        name = getattr(tool, "name", None) or type(tool).__name__
        if not callable(getattr(tool, "call", None)):
            logger.warning("tool_skipped", tool_name=name, reason="no call() method")
            return False
        self._tools[name] = tool
        logger.debug("tool_registered", tool_name=name)
        return True

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def all_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def set_agent_runner(self, runner: AgentRunner) -> None:
        """Late-bound orchestrator entry point used by agent tools."""
        self._agent_runner = runner

    def discover_and_register(self) -> None:
        """Register all built-in tools."""
        from functions_bot.ai.tools.change_chat_settings import ChangeChatSettingsTool
        from functions_bot.ai.tools.forget import ForgetTool
        from functions_bot.ai.tools.get_next_offday import NextOffdayTool
        from functions_bot.ai.tools.shell_command import ShellCommandTool

        for tool in (
            ForgetTool(self._history),
            NextOffdayTool(),
            ChangeChatSettingsTool(self._config_store),
            ShellCommandTool(),
        ):
            self.register(tool)
        logger.info("tools_registered", tools=sorted(self._tools))

    def resolve_chat_tools(self, chat_config: ChatConfig, message: IncomingMessage) -> list[Tool]:
        """Tools enabled for this chat and message sender, in configuration order."""
        names = list(chat_config.tool_names)
        if message.is_private or self._config_store.is_admin(message.username):
            if SETTINGS_TOOL not in names:
                names.append(SETTINGS_TOOL)

        tools: list[Tool] = []
        for name in names:
            tool = self._tools.get(name)
            if tool is None:
                logger.warning("chat_tool_unknown", tool_name=name, chat=chat_config.name)
                continue
            tools.append(tool)
        tools.extend(build_agent_tools(chat_config, message, self._config_store, self._agent_runner))
        return tools
