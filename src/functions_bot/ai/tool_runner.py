"""Tool invocation: resolution, confirmation, concurrent execution."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from functions_bot.ai.confirmation import ConfirmationRegistry
from functions_bot.ai.formatting import format_tool_call, remove_null_params, tool_call_header
from functions_bot.ai.tools.base import Tool, ToolClient, ToolFunction
from functions_bot.core.types import ToolCallRequest, ToolResponse
from functions_bot.errors import is_invalid_parameter_error
from functions_bot.log import get_logger

if TYPE_CHECKING:
    from functions_bot.ai.turn import Turn
    from functions_bot.config import ChatConfig
    from functions_bot.core.threads import ThreadState

logger = get_logger(__name__)

CONFIRM_QUESTION = "Do you want to proceed?"
CANCELED_MESSAGE = "Tool execution canceled."


@dataclass
class PreparedCall:
    call: ToolCallRequest
    client: Optional[ToolClient] = None
    function: Optional[ToolFunction] = None
    args: str = "{}"
    display: str = ""
    header: str = ""
    error: Optional[ToolResponse] = None


class ToolRunner:
    """Executes the tool calls of one completion response."""

    def __init__(self, confirmations: ConfirmationRegistry):
        self._confirmations = confirmations

    async def execute_tools(
        self,
        tool_calls: list[ToolCallRequest],
        chat_tools: list[Tool],
        chat_config: ChatConfig,
        thread: ThreadState,
        turn: Turn,
    ) -> list[ToolResponse]:
        """Return one response per call, in request order.

        An empty list means the user canceled the calls.
        """
        prepared = [self._prepare(call, chat_tools, chat_config, thread) for call in tool_calls]
        if turn.overrides.confirmation_required(chat_config.chat_params.confirmation):
            return await self._confirm_and_execute(prepared, chat_config, turn)
        return await self._execute_all(prepared, chat_config, turn, announce=True)

    def _prepare(
        self,
        call: ToolCallRequest,
        chat_tools: list[Tool],
        chat_config: ChatConfig,
        thread: ThreadState,
    ) -> PreparedCall:
        prepared = PreparedCall(call=call, args=call.arguments)
        tool = next((t for t in chat_tools if t.name == call.name), None)
        if tool is None:
            prepared.error = ToolResponse(content=f"Tool not found: {call.name}")
            return prepared

        client = tool.call(chat_config, thread)
        function = client.functions.get(call.name)
        if function is None:
            prepared.error = ToolResponse(content=f"Tool not found: {call.name}")
            return prepared
        prepared.client = client
        prepared.function = function
        prepared.header = tool_call_header(call, client)

        try:
            prepared.args = remove_null_params(call.arguments)
        except json.JSONDecodeError as e:
            prepared.error = ToolResponse(
                content=f"Invalid arguments for {call.name}: {e}", args=call.arguments
            )
            prepared.display = f"{prepared.header}\n{call.arguments}"
            return prepared

        try:
            prepared.display = format_tool_call(call, prepared.args, client)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("tool_format_failed", tool=call.name, error=str(e))
            prepared.display = f"{prepared.header}\n{prepared.args}"
        return prepared

    async def _announce(self, prepared: PreparedCall, chat_config: ChatConfig, turn: Turn) -> None:
        policy = chat_config.chat_params.show_tool_messages
        if policy is False or prepared.error is not None:
            return
        await turn.notify(prepared.header if policy == "headers" else prepared.display)

    async def _execute_all(
        self,
        prepared: list[PreparedCall],
        chat_config: ChatConfig,
        turn: Turn,
        announce: bool,
    ) -> list[ToolResponse]:
        if announce:
            for item in prepared:
                await self._announce(item, chat_config, turn)
        return list(await asyncio.gather(*(self._execute_one(item) for item in prepared)))

    async def _execute_one(self, prepared: PreparedCall) -> ToolResponse:
        call = prepared.call
        if prepared.error is not None:
            logger.warning("tool_unavailable", tool=call.name, content=prepared.error.content)
            return prepared.error

        logger.info("tool_call", tool=call.name, args=prepared.args, role="assistant")
        function = prepared.function
        for attempt in range(2):
            try:
                result = await function(prepared.args)  # type: ignore[misc]
                break
            except Exception as e:
                if attempt == 0 and is_invalid_parameter_error(e):
                    logger.warning("tool_retry_invalid_parameter", tool=call.name, error=str(e))
                    continue
                logger.error("tool_execution_error", tool=call.name, error=str(e))
                return ToolResponse(content=f"Error executing {call.name}: {e}", args=prepared.args)

        if result.args is None:
            result.args = prepared.args
        logger.info("tool_result", tool=call.name, content=result.content[:500], role="tool")
        return result

    async def _confirm_and_execute(
        self, prepared: list[PreparedCall], chat_config: ChatConfig, turn: Turn
    ) -> list[ToolResponse]:
        message = turn.message
        pending = self._confirmations.create(
            message.chat_id, message.user_id, [p.call for p in prepared]
        )
        text = "\n\n".join(p.display or p.header or p.call.name for p in prepared)
        text = f"{text}\n\n{CONFIRM_QUESTION}"

        try:
            asked = await turn.ask_confirmation(text, pending)
        except Exception as e:
            logger.error("confirmation_prompt_failed", error=str(e))
            asked = False
        if not asked:
            # without a responder nobody can answer
            self._confirmations.resolve(pending.id, False, message.user_id)

        confirmed = await self._confirmations.wait(pending)
        if asked:
            await turn.clear_confirmation(pending)
        if not confirmed:
            # the caller answers with CANCELED_MESSAGE
            logger.info("tools_canceled", confirmation_id=pending.id)
            return []

        logger.info("tools_confirmed", confirmation_id=pending.id)
        return await self._execute_all(prepared, chat_config, turn, announce=False)
