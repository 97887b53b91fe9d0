"""Abstract messenger adapter interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from functions_bot.messenger.models import ActionEvent, IncomingMessage, OutgoingMessage

MessageCallback = Callable[[IncomingMessage], Awaitable[None]]
ActionCallback = Callable[[ActionEvent], Awaitable[bool]]


class MessengerAdapter(ABC):
    """Base class for all transport adapters.

    To add a new transport, subclass this and implement all abstract methods.
    """

    def __init__(self, bot_id: str):
        self.bot_id = bot_id
        self._message_callback: MessageCallback | None = None
        self._action_callback: ActionCallback | None = None

    @abstractmethod
    async def start(self) -> None:
        """Connect to the platform and begin receiving messages."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Gracefully disconnect."""
        ...

    @abstractmethod
    async def send_message(self, message: OutgoingMessage) -> None:
        """Send a message to a specific chat."""
        ...

    @abstractmethod
    async def send_typing_indicator(self, chat_id: int) -> None:
        """Show typing/processing indicator."""
        ...

    @abstractmethod
    async def send_confirmation(
        self, chat_id: int, text: str, confirm_action: str, cancel_action: str
    ) -> None:
        """Show a Yes/No prompt whose buttons report back through ``on_action``."""
        ...

    async def clear_confirmation(self, chat_id: int, confirm_action: str) -> None:
        """Drop a prompt that was answered or expired. Transports without stored prompts ignore it."""
        return None

    def on_message(self, callback: MessageCallback) -> None:
        """Register the callback invoked for every incoming message."""
        self._message_callback = callback

    def on_action(self, callback: ActionCallback) -> None:
        """Register the callback invoked for confirm/cancel button presses.

        The callback returns False when the action was refused.
        """
        self._action_callback = callback

    @property
    @abstractmethod
    def platform_name(self) -> str:
        """Return platform identifier string."""
        ...
