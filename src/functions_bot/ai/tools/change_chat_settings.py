"""Administrative tool: change chat behaviour flags and persist them to the config file."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from functions_bot.ai.tools.base import Tool, ToolClient
from functions_bot.core.types import ToolResponse

if TYPE_CHECKING:
    from functions_bot.config import ChatConfig, ConfigStore
    from functions_bot.core.threads import ThreadState

DESCRIPTION = "Change chat settings in config.yml"


class ChangeChatSettingsClient(ToolClient):
    def __init__(self, chat_config: ChatConfig, thread: ThreadState, config_store: ConfigStore):
        super().__init__(chat_config, thread)
        self._config_store = config_store

    @property
    def name(self) -> str:
        return "change_chat_settings"

    @property
    def description(self) -> str:
        return (
            f"{DESCRIPTION}. Change any chat params. "
            "If the private chat is not configured yet, it is created with these settings."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "confirmation": {
                    "type": "boolean",
                    "description": "Whether to ask for confirmation before running a tool",
                },
                "memoryless": {
                    "type": "boolean",
                    "description": "Whether to forget the context after each message",
                },
                "forget_timeout": {
                    "type": "integer",
                    "description": "Time in seconds to forget the context after",
                },
                "show_tool_messages": {
                    "type": ["boolean", "string"],
                    "enum": [True, False, "headers"],
                    "description": "Whether to show tool messages, headers means only tool calls",
                },
            },
        }

    async def execute(self, **kwargs: Any) -> ToolResponse:
        self._config_store.update_chat_params(self.thread.id, self.chat_config.username, kwargs)
        return ToolResponse(content="Chat settings updated successfully")

    def options_string(self, args: str) -> str:
        settings = json.loads(args)
        if not settings:
            return args
        settings_str = ", ".join(f"{key}: {value}" for key, value in settings.items())
        return f"**Change settings:** `{settings_str}`"


class ChangeChatSettingsTool(Tool):
    name = "change_chat_settings"
    description = DESCRIPTION

    def __init__(self, config_store: ConfigStore):
        self._config_store = config_store

    def call(self, chat_config: ChatConfig, thread: ThreadState) -> ChangeChatSettingsClient:
        return ChangeChatSettingsClient(chat_config, thread, self._config_store)
