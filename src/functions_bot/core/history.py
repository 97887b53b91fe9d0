"""Conversation history: appending, forgetting and context-window construction."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Callable

from functions_bot.config import ChatConfig
from functions_bot.core.threads import ThreadState, ThreadStore
from functions_bot.log import get_logger
from functions_bot.messenger.models import IncomingMessage, OutgoingMessage

logger = get_logger(__name__)

MAX_RAW_MESSAGES = 20
_NAME_STRIP = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_name(name: str | None) -> str | None:
    """Reduce a display name to the characters providers accept in ``name``."""
    if not name:
        return None
    cleaned = _NAME_STRIP.sub("", name)[:64]
    return cleaned or None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HistoryManager:
    """Maintains ThreadState history according to per-chat forgetting policies."""

    def __init__(
        self,
        store: ThreadStore,
        history_limit: int = 20,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self.history_limit = history_limit
        self._clock = clock

    @property
    def store(self) -> ThreadStore:
        return self._store

    def thread_for(self, message: IncomingMessage, chat_config: ChatConfig) -> ThreadState:
        return self._store.get_or_create(message.chat_id)

    def add_to_history(self, message: IncomingMessage, chat_config: ChatConfig) -> ThreadState:
        thread = self.thread_for(message, chat_config)
        content = message.text
        if chat_config.chat_params.show_telegram_names and message.full_name:
            content = f"{message.full_name}:\n{content}"
        item: dict[str, Any] = {"role": "user", "content": content}
        if message.first_name:
            item["name"] = message.first_name
        thread.messages.append(item)
        thread.msgs.append(message)
        del thread.msgs[:-MAX_RAW_MESSAGES]
        return thread

    def add_answer(self, chat_id: int, answer: str) -> None:
        thread = self._store.get_or_create(chat_id)
        thread.messages.append({"role": "assistant", "content": answer})

    def add_outbound(self, message: OutgoingMessage) -> None:
        thread = self._store.get(message.chat_id)
        if thread is not None:
            thread.msgs.append(message)
            del thread.msgs[:-MAX_RAW_MESSAGES]

    def forget_history(self, chat_id: int) -> None:
        self._store.forget(chat_id)

    def forget_history_on_timeout(self, chat_config: ChatConfig, message: IncomingMessage) -> bool:
        """Forget if the previous message is older than ``forget_timeout``.

        Expects the current message to be in history already; it is re-added
        as the first entry of the fresh conversation.
        """
        forget_timeout = chat_config.chat_params.forget_timeout
        thread = self._store.get(message.chat_id)
        if not forget_timeout or thread is None or len(thread.msgs) < 2:
            return False
        previous = thread.msgs[-2].timestamp
        elapsed = (self._clock() - previous).total_seconds()
        if elapsed <= forget_timeout:
            return False
        logger.info(
            "history_forget_timeout",
            chat_id=message.chat_id,
            elapsed=round(elapsed),
            timeout=forget_timeout,
        )
        self.forget_history(message.chat_id)
        self.add_to_history(message, chat_config)
        return True

    def build_messages(self, system_message: str, history: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Return ``[system, *tail]`` ready to send to the completion API.

        Tool results whose tool call fell out of the window are dropped, the
        API rejects a ``tool`` message without its preceding tool call.
        """
        tail = history[-self.history_limit:] if self.history_limit > 0 else []
        known_call_ids: set[str] = set()
        messages: list[dict[str, Any]] = [{"role": "system", "content": system_message}]

        for item in tail:
            if item.get("role") == "assistant" and item.get("tool_calls"):
                known_call_ids.update(call["id"] for call in item["tool_calls"])
            elif item.get("role") == "tool" and item.get("tool_call_id") not in known_call_ids:
                continue
            msg = dict(item)
            if "name" in msg:
                name = sanitize_name(msg["name"])
                if name:
                    msg["name"] = name
                else:
                    del msg["name"]
            messages.append(msg)

        return messages
