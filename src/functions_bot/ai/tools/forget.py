"""Tool that lets the model clear the conversation history."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from functions_bot.ai.tools.base import Tool, ToolClient
from functions_bot.core.types import ToolResponse
from functions_bot.log import get_logger

if TYPE_CHECKING:
    from functions_bot.config import ChatConfig
    from functions_bot.core.history import HistoryManager
    from functions_bot.core.threads import ThreadState

logger = get_logger(__name__)

DESCRIPTION = "Clear the conversation history and start fresh"


class ForgetClient(ToolClient):
    def __init__(self, chat_config: ChatConfig, thread: ThreadState, history: HistoryManager):
        super().__init__(chat_config, thread)
        self._history = history

    @property
    def name(self) -> str:
        return "forget"

    @property
    def description(self) -> str:
        return DESCRIPTION

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "message": {
                    "type": "string",
                    "description": "Message to show the user after the history is cleared",
                },
            },
        }

    async def execute(self, **kwargs: Any) -> ToolResponse:
        self._history.forget_history(self.thread.id)
        logger.info("history_cleared_by_tool", chat_id=self.thread.id)
        return ToolResponse(content="Conversation history has been cleared.")

    def options_string(self, args: str) -> str:
        return "Clear conversation history"


class ForgetTool(Tool):
    name = "forget"
    description = DESCRIPTION

    def __init__(self, history: HistoryManager):
        self._history = history

    def call(self, chat_config: ChatConfig, thread: ThreadState) -> ForgetClient:
        return ForgetClient(chat_config, thread, self._history)
