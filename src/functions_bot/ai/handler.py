"""Message handler: receives incoming messages, runs a turn, delivers the answer."""

from __future__ import annotations

import asyncio
import dataclasses
from typing import TYPE_CHECKING

from functions_bot.ai.turn import Turn
from functions_bot.core.types import ToolResponse, TurnOverrides
from functions_bot.log import bind_chat, get_logger
from functions_bot.messenger.models import ActionEvent, IncomingMessage, OutgoingMessage

if TYPE_CHECKING:
    from functions_bot.ai.confirmation import ConfirmationRegistry, PendingConfirmation
    from functions_bot.ai.orchestrator import Orchestrator
    from functions_bot.config import ButtonConfig, ChatConfig, ConfigStore
    from functions_bot.core.history import HistoryManager
    from functions_bot.messenger.base import MessengerAdapter

logger = get_logger(__name__)

FORGET_COMMANDS = ("/forget", "/reset")
FORGET_REPLY = "OK, let's start over."
NOT_WHITELISTED = "You are not in whitelist. Your username: {username}"
GROUP_NOT_WHITELISTED = "This chat is not in whitelist. Chat id: {chat_id}"
PARSE_MODE = "markdown"


def _split_message(text: str, max_length: int = 4000) -> list[str]:
    """Split a message into chunks that fit within platform limits."""
    if len(text) <= max_length:
        return [text]

    chunks = []
    while text:
        if len(text) <= max_length:
            chunks.append(text)
            break
        # Try to split at a newline
        split_pos = text.rfind("\n", 0, max_length)
        if split_pos <= 0:
            split_pos = max_length
        chunks.append(text[:split_pos])
        text = text[split_pos:].lstrip("\n")
    return chunks


def is_mentioned(message: IncomingMessage, chat_config: ChatConfig | None, bot_username: str | None) -> bool:
    """In groups the bot answers only to its prefix, an @mention, or a reply to itself."""
    if message.is_private:
        return True
    text = message.text.lower()
    if chat_config is not None and chat_config.prefix and text.startswith(chat_config.prefix.lower()):
        return True
    if bot_username:
        if f"@{bot_username.lower()}" in text:
            return True
        if message.reply_to_username and message.reply_to_username.lower() == bot_username.lower():
            return True
    return False


def strip_mention(text: str, chat_config: ChatConfig, bot_username: str | None) -> str:
    if chat_config.prefix and text.lower().startswith(chat_config.prefix.lower()):
        text = text[len(chat_config.prefix):]
    if bot_username:
        text = text.replace(f"@{bot_username}", "")
    return text.strip()


class AdapterResponder:
    """Sends progress messages and confirmation prompts through a messenger adapter."""

    def __init__(self, handler: MessageHandler, chat_id: int):
        self._handler = handler
        self._chat_id = chat_id

    async def send(self, text: str) -> None:
        await self._handler.deliver(self._chat_id, text)

    async def ask_confirmation(self, text: str, pending: PendingConfirmation) -> None:
        await self._handler.adapter.send_confirmation(
            self._chat_id, text, pending.confirm_action, pending.cancel_action
        )

    async def clear_confirmation(self, pending: PendingConfirmation) -> None:
        await self._handler.adapter.clear_confirmation(self._chat_id, pending.confirm_action)


class MessageHandler:
    """Handles the full flow: message -> chat config -> history -> debounce -> answer."""

    def __init__(
        self,
        adapter: MessengerAdapter,
        orchestrator: Orchestrator,
        history: HistoryManager,
        config_store: ConfigStore,
        confirmations: ConfirmationRegistry,
        answer_delay: float | None = None,
    ):
        self.adapter = adapter
        self._orchestrator = orchestrator
        self._history = history
        self._config_store = config_store
        self._confirmations = confirmations
        self._answer_delay = answer_delay

    @property
    def answer_delay(self) -> float:
        if self._answer_delay is not None:
            return self._answer_delay
        return self._config_store.config.answer_delay

    async def handle(self, message: IncomingMessage) -> None:
        """Process an incoming message end-to-end."""
        chat_id = message.chat_id
        text = message.text.strip()
        if not text:
            return
        bind_chat(chat_id, username=message.username)
        bot_username = getattr(self.adapter, "bot_username", None)

        chat_config = self._config_store.find_chat(message)
        if chat_config is None:
            if message.is_private:
                await self.deliver(chat_id, NOT_WHITELISTED.format(username=message.username or "without_username"))
            elif is_mentioned(message, None, bot_username):
                await self.deliver(chat_id, GROUP_NOT_WHITELISTED.format(chat_id=chat_id))
            logger.info("message_not_whitelisted", chat_id=chat_id, username=message.username)
            return

        if not is_mentioned(message, chat_config, bot_username):
            return
        if not message.is_private:
            text = strip_mention(text, chat_config, bot_username)

        if text.lower() in FORGET_COMMANDS:
            self._history.forget_history(chat_id)
            await self.deliver(chat_id, FORGET_REPLY, chat_config)
            return

        overrides, text = TurnOverrides.from_text(text)

        button = self._find_button(chat_config, text)
        if button is not None:
            if button.wait_message:
                thread = self._history.thread_for(message, chat_config)
                thread.active_button = button
                await self.deliver(chat_id, button.wait_message, chat_config)
                return
            text = button.prompt or text

        message = dataclasses.replace(message, text=text)
        thread = self._history.add_to_history(message, chat_config)
        logger.info("message_received", chat_id=chat_id, role="user", text=text[:200])

        if thread.active_button is not None:
            # free-text answer to a button: it starts a fresh conversation
            del thread.messages[:-1]
            thread.next_system_message = thread.active_button.prompt
            thread.active_button = None
        else:
            self._history.forget_history_on_timeout(chat_config, message)

        snapshot = len(thread.messages)
        await asyncio.sleep(self.answer_delay)
        if len(thread.messages) != snapshot:
            logger.debug("answer_superseded", chat_id=chat_id)
            return

        # re-resolve: the config may have been reloaded while waiting
        chat_config = self._config_store.find_chat(message) or chat_config

        try:
            await self.adapter.send_typing_indicator(chat_id)
        except Exception as e:
            logger.warning("typing_indicator_failed", chat_id=chat_id, error=str(e))

        turn = Turn(
            message=message,
            overrides=overrides,
            responder=AdapterResponder(self, chat_id),
        )
        response = await self._orchestrator.get_answer(message, chat_config, turn)
        logger.info("answer_ready", chat_id=chat_id, role="assistant", text=response.content[:200])
        await self.deliver(chat_id, response.content, chat_config)

    async def answer_agent(self, message: IncomingMessage, agent_chat: ChatConfig) -> ToolResponse:
        """Answer a direct agent request (HTTP) without debounce or mention checks."""
        bind_chat(message.chat_id, agent=agent_chat.agent_name)
        overrides, text = TurnOverrides.from_text(message.text.strip())
        message = dataclasses.replace(message, text=text)
        self._history.add_to_history(message, agent_chat)
        self._history.forget_history_on_timeout(agent_chat, message)
        turn = Turn(
            message=message,
            overrides=overrides,
            responder=AdapterResponder(self, message.chat_id),
        )
        return await self._orchestrator.get_answer(message, agent_chat, turn)

    async def handle_action(self, event: ActionEvent) -> bool:
        """Route a confirm/cancel button press to the pending confirmation."""
        resolved = self._confirmations.resolve_action(event.action, event.user_id)
        if not resolved:
            logger.info("action_ignored", chat_id=event.chat_id, action=event.action)
        return resolved

    async def deliver(self, chat_id: int, text: str, chat_config: ChatConfig | None = None) -> None:
        """Send text split into chunks; a failed chunk is logged and skipped."""
        if not text:
            return
        buttons = [b.name for b in chat_config.buttons] if chat_config else []
        chunks = _split_message(text, max_length=4000)
        for i, chunk in enumerate(chunks):
            outgoing = OutgoingMessage(
                chat_id=chat_id,
                text=chunk,
                parse_mode=PARSE_MODE,
                buttons=buttons if i == len(chunks) - 1 else [],
            )
            try:
                await self.adapter.send_message(outgoing)
            except Exception as e:
                logger.warning("send_failed", chat_id=chat_id, error=str(e))
                continue
            self._history.add_outbound(outgoing)

    @staticmethod
    def _find_button(chat_config: ChatConfig, text: str) -> ButtonConfig | None:
        return next((b for b in chat_config.buttons if b.name == text), None)
