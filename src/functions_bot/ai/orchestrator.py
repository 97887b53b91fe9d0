"""Completion orchestration: context building, tool round-trips and error recovery."""

from __future__ import annotations

import dataclasses
import json
import re
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional

from functions_bot.ai.client import ClientProvider, Completion, CompletionClient
from functions_bot.ai.formatting import limit_text
from functions_bot.ai.tool_runner import CANCELED_MESSAGE, ToolRunner
from functions_bot.ai.tools.base import Tool, ToolClient
from functions_bot.ai.tools.registry import ToolRegistry
from functions_bot.ai.turn import Turn
from functions_bot.config import DEFAULT_MODEL, ChatConfig
from functions_bot.core.types import ToolCallRequest, ToolResponse
from functions_bot.errors import is_context_length_error, is_invalid_parameter_error
from functions_bot.log import get_logger

if TYPE_CHECKING:
    from functions_bot.core.history import HistoryManager
    from functions_bot.core.threads import ThreadState
    from functions_bot.messenger.models import IncomingMessage

logger = get_logger(__name__)

DEFAULT_SYSTEM_MESSAGE = "You are using functions to answer the questions. Current date: {date}"
RESENDING_NOTICE = "Resending the last message..."
FORGET_TOOL = "forget"

TOOL_CALL_PATTERN = re.compile(r"<tool_call>([\s\S]*?)</tool_call>")


def parse_text_tool_calls(content: str) -> list[ToolCallRequest]:
    """Tool calls embedded as ``<tool_call>{json}</tool_call>`` in plain content.

    Some local models answer this way instead of using structured tool calls.
    Blocks that are not valid JSON are ignored.
    """
    calls: list[ToolCallRequest] = []
    for match in TOOL_CALL_PATTERN.finditer(content or ""):
        try:
            data = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if not isinstance(data, dict):
            continue
        function = data.get("function") if isinstance(data.get("function"), dict) else data
        name = function.get("name")
        if not name:
            continue
        arguments = function.get("arguments", {})
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments, ensure_ascii=False)
        calls.append(
            ToolCallRequest(id=data.get("id") or f"call_{uuid.uuid4().hex[:12]}", name=name, arguments=arguments)
        )
    return calls


@dataclasses.dataclass
class _TurnState:
    thread: ThreadState
    chat_tools: list[Tool]
    tool_specs: list[dict[str, Any]]
    system_message: str
    client: CompletionClient
    model: str
    temperature: Optional[float]


class Orchestrator:
    """Produces the answer for one turn of a chat."""

    def __init__(
        self,
        clients: ClientProvider,
        history: HistoryManager,
        registry: ToolRegistry,
        tool_runner: ToolRunner,
        max_tool_rounds: int = 1,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._clients = clients
        self._history = history
        self._registry = registry
        self._tool_runner = tool_runner
        self.max_tool_rounds = max_tool_rounds
        self._clock = clock

    async def get_answer(
        self,
        message: IncomingMessage,
        chat_config: ChatConfig,
        turn: Turn | None = None,
    ) -> ToolResponse:
        """Answer the latest message in the chat thread. Never raises for API errors."""
        turn = turn or Turn(message=message)
        try:
            return await self._answer(message, chat_config, turn)
        except Exception as e:
            if is_context_length_error(e) and not turn.second_try:
                logger.warning("context_length_exceeded", chat_id=message.chat_id, error=str(e))
                await turn.notify(f"{e}\n\n{RESENDING_NOTICE}")
                self._history.forget_history(message.chat_id)
                self._history.add_to_history(message, chat_config)
                retry = dataclasses.replace(turn, second_try=True)
                return await self.get_answer(message, chat_config, retry)
            logger.error("answer_failed", chat_id=message.chat_id, error=str(e))
            return ToolResponse(content=str(e))

    async def ask_agent(self, message: IncomingMessage, chat_config: ChatConfig) -> ToolResponse:
        """Entry point for agent tools: a single headless turn in the agent's thread."""
        self._history.add_to_history(message, chat_config)
        return await self.get_answer(message, chat_config, Turn(message=message))

    async def _answer(self, message: IncomingMessage, chat_config: ChatConfig, turn: Turn) -> ToolResponse:
        state = await self._prepare(message, chat_config)
        thread = state.thread
        messages = self._history.build_messages(state.system_message, thread.messages)
        completion = await self._complete(state, messages, chat_config, turn, with_tools=True)

        tool_assisted = False
        rounds = 0
        while rounds < self.max_tool_rounds:
            tool_calls = completion.tool_calls or parse_text_tool_calls(completion.content)
            if not tool_calls:
                break
            rounds += 1
            tool_assisted = True

            results = await self._tool_runner.execute_tools(
                tool_calls, state.chat_tools, chat_config, thread, turn
            )
            if not results:
                self._history.forget_history(message.chat_id)
                return ToolResponse(content=CANCELED_MESSAGE)

            forget_message = await self._append_tool_results(
                thread, completion, tool_calls, results, chat_config, turn
            )
            if forget_message is not None:
                self._history.forget_history(message.chat_id)
                return ToolResponse(content=forget_message)

            messages = self._history.build_messages(state.system_message, thread.messages)
            completion = await self._complete(
                state, messages, chat_config, turn, with_tools=rounds < self.max_tool_rounds
            )

        answer = completion.content
        if tool_assisted:
            # tool-assisted answers are one-shot: the whole exchange is dropped
            self._history.forget_history(message.chat_id)
        else:
            self._history.add_answer(message.chat_id, answer)
            if chat_config.chat_params.memoryless:
                self._history.forget_history(message.chat_id)
        return ToolResponse(content=answer)

    async def _prepare(self, message: IncomingMessage, chat_config: ChatConfig) -> _TurnState:
        thread = self._history.thread_for(message, chat_config)
        chat_tools = self._registry.resolve_chat_tools(chat_config, message)
        clients = [tool.call(chat_config, thread) for tool in chat_tools]
        tool_specs = [spec for c in clients for spec in c.functions.tool_specs]
        system_message = await self.system_message(chat_config, thread, clients)
        client, model_override = self._clients.for_chat(chat_config)
        model, temperature = self.completion_params(chat_config, thread, model_override)
        return _TurnState(
            thread=thread,
            chat_tools=chat_tools,
            tool_specs=tool_specs,
            system_message=system_message,
            client=client,
            model=model,
            temperature=temperature,
        )

    async def system_message(
        self, chat_config: ChatConfig, thread: ThreadState, clients: list[ToolClient]
    ) -> str:
        """One-shot override > thread > chat > tool-provided > default."""
        date = self._clock().isoformat()
        if thread.next_system_message:
            override = thread.next_system_message
            thread.next_system_message = None
            return override.replace("{date}", date)

        tool_system = next((s for c in clients if (s := c.system_message())), None)
        system = (
            thread.system_message
            or chat_config.system_message
            or tool_system
            or DEFAULT_SYSTEM_MESSAGE
        )
        prompts = [p for c in clients if (p := await c.prompt_append())]
        if prompts:
            system = system + "\n\n" + "\n\n".join(prompts)
        return system.replace("{date}", date)

    @staticmethod
    def completion_params(
        chat_config: ChatConfig, thread: ThreadState, model_override: str | None = None
    ) -> tuple[str, Optional[float]]:
        """Model and temperature: thread params, then chat params, then global default."""
        thread_params = thread.completion_params
        chat_params = chat_config.completion_params
        model = (
            model_override
            or (thread_params.model if thread_params else None)
            or chat_params.model
            or DEFAULT_MODEL
        )
        temperature = thread_params.temperature if thread_params else None
        if temperature is None:
            temperature = chat_params.temperature
        return model, temperature

    async def _complete(
        self,
        state: _TurnState,
        messages: list[dict[str, Any]],
        chat_config: ChatConfig,
        turn: Turn,
        with_tools: bool,
    ) -> Completion:
        completion = await self._request(state, messages, chat_config, turn, with_tools)
        malformed = completion.malformed_tool_calls()
        if malformed:
            logger.warning(
                "tool_arguments_malformed",
                chat_id=turn.message.chat_id,
                tools=[c.name for c in malformed],
            )
            completion = await self._request(state, messages, chat_config, turn, with_tools)
        return completion

    async def _request(
        self,
        state: _TurnState,
        messages: list[dict[str, Any]],
        chat_config: ChatConfig,
        turn: Turn,
        with_tools: bool,
    ) -> Completion:
        """One completion call, retried once on a 400 "Invalid parameter" error."""
        tools = state.tool_specs if with_tools and state.tool_specs else None
        for attempt in range(2):
            try:
                return await state.client.complete(
                    messages,
                    model=state.model,
                    temperature=state.temperature,
                    tools=tools,
                    stream=chat_config.chat_params.streaming,
                    on_delta=turn.on_delta,
                )
            except Exception as e:
                if attempt == 0 and is_invalid_parameter_error(e):
                    logger.warning("completion_retry_invalid_parameter", model=state.model, error=str(e))
                    continue
                raise
        raise AssertionError("unreachable")

    async def _append_tool_results(
        self,
        thread: ThreadState,
        completion: Completion,
        tool_calls: list[ToolCallRequest],
        results: list[ToolResponse],
        chat_config: ChatConfig,
        turn: Turn,
    ) -> Optional[str]:
        """Fold tool results into the thread. Returns the message to answer with
        when the ``forget`` tool was called."""
        thread.messages.append(
            {
                "role": "assistant",
                "content": completion.content or None,
                "tool_calls": [call.to_api_dict() for call in tool_calls],
            }
        )
        show_results = chat_config.chat_params.show_tool_messages is not False
        forget_message: Optional[str] = None

        for call, result in zip(tool_calls, results):
            if call.name == FORGET_TOOL:
                forget_message = _forget_message(call, result)
            elif show_results and result.content:
                await turn.notify(limit_text(result.content))
            thread.messages.append(
                {"role": "tool", "content": result.content, "tool_call_id": call.id}
            )
        return forget_message


def _forget_message(call: ToolCallRequest, result: ToolResponse) -> str:
    try:
        args = json.loads(call.arguments or "{}")
    except json.JSONDecodeError:
        args = {}
    message = args.get("message") if isinstance(args, dict) else None
    return message or result.content or "Forgot history, task completed."
