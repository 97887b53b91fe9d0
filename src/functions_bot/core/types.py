"""Shared types and enumerations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Optional


class Platform(StrEnum):
    TELEGRAM = "telegram"
    HTTP = "http"


@dataclass(frozen=True, slots=True)
class ToolCallRequest:
    """One tool invocation proposed by the model within a completion."""

    id: str
    name: str
    arguments: str = "{}"  # raw JSON string, as sent by the model

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(slots=True)
class ToolResponse:
    """Result of a tool execution (or a final answer)."""

    content: str
    args: Optional[str] = None


@dataclass(frozen=True, slots=True)
class TurnOverrides:
    """Per-turn policy overrides parsed from the inbound text.

    ``confirmation`` is None when the chat setting applies unchanged.
    """

    confirmation: Optional[bool] = None

    @classmethod
    def from_text(cls, text: str) -> tuple[TurnOverrides, str]:
        """Extract a ``noconfirm``/``confirm`` token, returning the cleaned text."""
        if "noconfirm" in text:
            return cls(confirmation=False), text.replace("noconfirm", "", 1).strip()
        if "confirm" in text:
            return cls(confirmation=True), text.replace("confirm", "", 1).strip()
        return cls(), text

    def confirmation_required(self, chat_default: bool) -> bool:
        if self.confirmation is None:
            return chat_default
        return self.confirmation
