"""In-memory per-chat conversation state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from functions_bot.config import ButtonConfig, CompletionParams
from functions_bot.log import get_logger
from functions_bot.messenger.models import IncomingMessage, OutgoingMessage

logger = get_logger(__name__)

RawMessage = Union[IncomingMessage, OutgoingMessage]


@dataclass
class ThreadState:
    id: int
    msgs: list[RawMessage] = field(default_factory=list)  # raw messages, for timing
    messages: list[dict[str, Any]] = field(default_factory=list)  # completion context
    completion_params: Optional[CompletionParams] = None
    active_button: Optional[ButtonConfig] = None
    next_system_message: Optional[str] = None  # one-shot override
    system_message: Optional[str] = None

    def clear(self) -> None:
        self.messages.clear()
        self.msgs.clear()


class ThreadStore:
    """Maps chat id to ThreadState. Threads are created lazily and never removed."""

    def __init__(self) -> None:
        self._threads: dict[int, ThreadState] = {}

    def get_or_create(
        self, chat_id: int, completion_params: CompletionParams | None = None
    ) -> ThreadState:
        thread = self._threads.get(chat_id)
        if thread is None:
            thread = ThreadState(id=chat_id, completion_params=completion_params)
            self._threads[chat_id] = thread
            logger.debug("thread_created", chat_id=chat_id)
        return thread

    def get(self, chat_id: int) -> ThreadState | None:
        return self._threads.get(chat_id)

    def forget(self, chat_id: int) -> None:
        """Clear history in place; the thread object and its other fields survive."""
        thread = self._threads.get(chat_id)
        if thread is not None:
            thread.clear()
            logger.info("history_forgotten", chat_id=chat_id)

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._threads

    def __len__(self) -> int:
        return len(self._threads)
