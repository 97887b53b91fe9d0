"""Unified message models for all transports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from functions_bot.core.types import Platform


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    platform: Platform
    bot_id: str
    chat_id: int
    user_id: int
    text: str
    chat_type: str = "private"  # "private" | "group" | "supergroup" | "channel"
    username: Optional[str] = None
    first_name: Optional[str] = None
    full_name: Optional[str] = None
    chat_title: Optional[str] = None
    message_id: Optional[int] = None
    reply_to_message_id: Optional[int] = None
    reply_to_username: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_private(self) -> bool:
        return self.chat_type == "private"


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    chat_id: int
    text: str
    parse_mode: Optional[str] = None  # "markdown", "html", None
    reply_to_message_id: Optional[int] = None
    buttons: list[str] = field(default_factory=list)  # reply keyboard labels
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True, slots=True)
class ActionEvent:
    """Inline-button press (confirm/cancel) delivered by a transport."""

    bot_id: str
    chat_id: int
    user_id: int
    action: str
