import asyncio
from datetime import datetime, timezone
from typing import Any

from functions_bot.ai.client import Completion, CompletionClient
from functions_bot.ai.tools.base import Tool, ToolClient
from functions_bot.core.types import Platform, ToolCallRequest, ToolResponse
from functions_bot.messenger.base import MessengerAdapter
from functions_bot.messenger.models import IncomingMessage


class ScriptedClient(CompletionClient):
    """Returns queued completions in order; exceptions in the queue are raised."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    async def complete(self, messages, model, temperature=None, tools=None, stream=False, on_delta=None):
        self.calls.append(
            {
                "messages": [dict(m) for m in messages],
                "model": model,
                "temperature": temperature,
                "tools": tools,
                "stream": stream,
            }
        )
        if self.responses:
            nxt = self.responses.pop(0)
            if isinstance(nxt, BaseException):
                raise nxt
            return nxt
        return Completion(content="ok")


class FakeAPIError(Exception):
    def __init__(self, message, status_code=None, code=None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class FakeResponder:
    def __init__(self):
        self.sent = []
        self.prompts = []
        self.cleared = []

    async def send(self, text):
        self.sent.append(text)

    async def ask_confirmation(self, text, pending):
        self.prompts.append((text, pending))

    async def clear_confirmation(self, pending):
        self.cleared.append(pending.id)


class FakeAdapter(MessengerAdapter):
    def __init__(self, bot_id="functions_bot", fail_chunks=()):
        super().__init__(bot_id)
        self.sent = []
        self.confirmations = []
        self.typing = []
        self.fail_chunks = set(fail_chunks)
        self.bot_username = "functions_bot"
        self._attempts = 0

    @property
    def platform_name(self):
        return "fake"

    async def start(self):
        pass

    async def stop(self):
        pass

    async def send_message(self, message):
        attempt = self._attempts
        self._attempts += 1
        if attempt in self.fail_chunks:
            raise RuntimeError("Forbidden: bot was blocked by the user")
        self.sent.append(message)

    async def send_typing_indicator(self, chat_id):
        self.typing.append(chat_id)

    async def send_confirmation(self, chat_id, text, confirm_action, cancel_action):
        self.confirmations.append((chat_id, text, confirm_action, cancel_action))


class EchoClient(ToolClient):
    def __init__(self, chat_config, thread, tool):
        super().__init__(chat_config, thread)
        self._tool = tool

    @property
    def name(self):
        return self._tool.name

    @property
    def description(self):
        return "Echo the text back"

    @property
    def input_schema(self):
        return {"type": "object", "properties": {"text": {"type": "string"}}}

    async def execute(self, **kwargs: Any):
        self._tool.calls.append(kwargs)
        if self._tool.delay:
            await asyncio.sleep(self._tool.delay.get(kwargs.get("text"), 0))
        if self._tool.errors:
            raise self._tool.errors.pop(0)
        return ToolResponse(content=self._tool.reply.format(**kwargs) if kwargs else self._tool.reply)


class EchoTool(Tool):
    def __init__(self, name="echo", reply="echoed", delay=None, errors=None):
        self.name = name
        self.description = "Echo the text back"
        self.reply = reply
        self.delay = delay or {}
        self.errors = list(errors or [])
        self.calls = []

    def call(self, chat_config, thread):
        return EchoClient(chat_config, thread, self)


def tool_call(name="echo", arguments='{"text": "x"}', call_id="c1"):
    return ToolCallRequest(id=call_id, name=name, arguments=arguments)


def make_message(
    text="hi",
    chat_id=1,
    user_id=10,
    username="alice",
    chat_type="private",
    timestamp=None,
    first_name="Alice",
    **kwargs,
):
    return IncomingMessage(
        platform=Platform.TELEGRAM,
        bot_id="functions_bot",
        chat_id=chat_id,
        user_id=user_id,
        text=text,
        chat_type=chat_type,
        username=username,
        first_name=first_name,
        full_name=f"{first_name} Smith" if first_name else None,
        timestamp=timestamp or datetime.now(timezone.utc),
        **kwargs,
    )


async def wait_for(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)
