"""HTTP agent endpoint: lets other services talk to a configured agent chat."""

from __future__ import annotations

import hmac
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from aiohttp import web

from functions_bot.ai.tools.agent import agent_thread_id
from functions_bot.core.types import Platform, ToolResponse
from functions_bot.log import get_logger
from functions_bot.messenger.base import MessengerAdapter
from functions_bot.messenger.models import ActionEvent, IncomingMessage, OutgoingMessage

if TYPE_CHECKING:
    from functions_bot.config import ChatConfig, ConfigStore

logger = get_logger(__name__)

# progress messages of the agent request running in the current task
_progress: ContextVar[list[str] | None] = ContextVar("http_progress", default=None)

AgentCallback = Callable[[IncomingMessage, "ChatConfig"], Awaitable[ToolResponse]]


class HttpAdapter(MessengerAdapter):
    """aiohttp server exposing agent chats.

    ``POST /agent/{agent_name}`` with ``{"text": ...}`` runs one turn and
    returns ``{"content": ..., "messages": [...]}`` where ``messages`` are the
    progress messages sent during the turn. Tool confirmations are listed by
    ``GET /actions`` and answered with ``POST /action``; the agent request
    stays open until then.
    """

    def __init__(self, bot_id: str, config_store: ConfigStore, host: str = "0.0.0.0", port: int = 7586):
        super().__init__(bot_id)
        self._config_store = config_store
        self._host = host
        self._port = port
        self._agent_callback: AgentCallback | None = None
        self._runner: web.AppRunner | None = None
        self._prompts: dict[str, dict[str, Any]] = {}

    @property
    def platform_name(self) -> str:
        return Platform.HTTP

    def on_agent_request(self, callback: AgentCallback) -> None:
        self._agent_callback = callback

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/agent/{agent_name}", self._handle_agent)
        app.router.add_get("/actions", self._handle_list_actions)
        app.router.add_post("/action", self._handle_action)
        app.router.add_get("/health", self._handle_health)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("http_adapter_started", host=self._host, port=self._port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("http_adapter_stopped")

    async def send_message(self, message: OutgoingMessage) -> None:
        buffer = _progress.get()
        if buffer is None:
            logger.debug("http_message_dropped", chat_id=message.chat_id)
            return
        buffer.append(message.text)

    async def send_typing_indicator(self, chat_id: int) -> None:
        return None

    async def send_confirmation(
        self, chat_id: int, text: str, confirm_action: str, cancel_action: str
    ) -> None:
        confirmation_id = confirm_action.split("_", 1)[-1]
        self._prompts[confirmation_id] = {
            "chat_id": chat_id,
            "text": text,
            "confirm": confirm_action,
            "cancel": cancel_action,
        }

    async def clear_confirmation(self, chat_id: int, confirm_action: str) -> None:
        self._prompts.pop(confirm_action.split("_", 1)[-1], None)

    def _authorized(self, request: web.Request, chat: ChatConfig | None = None) -> bool:
        expected = (chat.http_token if chat else None) or self._config_store.config.http.http_token
        if not expected:
            return False
        header = request.headers.get("Authorization", "")
        token = header.removeprefix("Bearer ").strip()
        return hmac.compare_digest(token, expected)

    async def _handle_agent(self, request: web.Request) -> web.Response:
        agent_name = request.match_info["agent_name"]
        agent_chat = self._config_store.find_agent(agent_name=agent_name)
        if agent_chat is None:
            return web.json_response({"error": f"Agent not found: {agent_name}"}, status=404)
        if not self._authorized(request, agent_chat):
            return web.json_response({"error": "Unauthorized"}, status=401)
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON"}, status=400)
        text = body.get("text") if isinstance(body, dict) else None
        if not text:
            return web.json_response({"error": "Field 'text' is required"}, status=400)
        user_id = _user_id(body)
        if user_id is None:
            return web.json_response({"error": "Field 'user_id' must be an integer"}, status=400)
        if self._agent_callback is None:
            return web.json_response({"error": "Agent handler not ready"}, status=503)

        chat_id = agent_thread_id(agent_chat)
        message = IncomingMessage(
            platform=Platform.HTTP,
            bot_id=self.bot_id,
            chat_id=chat_id,
            user_id=user_id,
            text=str(text),
            username=body.get("username"),
            first_name=body.get("username"),
        )
        logger.info("http_agent_request", agent=agent_name, chat_id=chat_id)

        messages: list[str] = []
        token = _progress.set(messages)
        try:
            response = await self._agent_callback(message, agent_chat)
        finally:
            _progress.reset(token)
        return web.json_response({"content": response.content, "messages": messages})

    async def _handle_list_actions(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return web.json_response({"error": "Unauthorized"}, status=401)
        return web.json_response(
            {"actions": [{"id": key, **prompt} for key, prompt in self._prompts.items()]}
        )

    async def _handle_action(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return web.json_response({"error": "Unauthorized"}, status=401)
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON"}, status=400)
        action = body.get("action") if isinstance(body, dict) else None
        if not action or not isinstance(action, str):
            return web.json_response({"error": "Field 'action' is required"}, status=400)
        user_id = _user_id(body)
        if user_id is None:
            return web.json_response({"error": "Field 'user_id' must be an integer"}, status=400)
        confirmation_id = action.split("_", 1)[-1]
        prompt = self._prompts.get(confirmation_id)
        if prompt is None:
            return web.json_response({"error": "Unknown action"}, status=404)
        if self._action_callback is None:
            return web.json_response({"error": "Action handler not ready"}, status=503)

        accepted = await self._action_callback(
            ActionEvent(bot_id=self.bot_id, chat_id=prompt["chat_id"], user_id=user_id, action=action)
        )
        if not accepted:
            return web.json_response({"error": "Action refused"}, status=403)
        self._prompts.pop(confirmation_id, None)
        return web.json_response({"ok": True})

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})


def _user_id(body: dict[str, Any]) -> int | None:
    value = body.get("user_id")
    if value is None:
        return 0
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
