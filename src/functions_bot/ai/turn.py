"""Per-turn context passed through the orchestrator and tool runner."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from functions_bot.core.types import TurnOverrides
from functions_bot.log import get_logger

if TYPE_CHECKING:
    from functions_bot.ai.client import DeltaCallback
    from functions_bot.ai.confirmation import PendingConfirmation
    from functions_bot.messenger.models import IncomingMessage

logger = get_logger(__name__)


class Responder(Protocol):
    """Transport side of a turn: progress messages and confirmation prompts."""

    async def send(self, text: str) -> None:
        ...

    async def ask_confirmation(self, text: str, pending: PendingConfirmation) -> None:
        ...

    async def clear_confirmation(self, pending: PendingConfirmation) -> None:
        ...


@dataclass
class Turn:
    message: IncomingMessage
    overrides: TurnOverrides = field(default_factory=TurnOverrides)
    responder: Responder | None = None
    on_delta: DeltaCallback | None = None
    second_try: bool = False

    async def notify(self, text: str) -> None:
        """Send a progress message; delivery failures never abort the turn."""
        if self.responder is None or not text:
            return
        try:
            await self.responder.send(text)
        except Exception as e:
            logger.warning("notify_failed", chat_id=self.message.chat_id, error=str(e))

    async def ask_confirmation(self, text: str, pending: PendingConfirmation) -> bool:
        """Show a confirmation prompt. False when the turn has no way to ask."""
        if self.responder is None:
            return False
        await self.responder.ask_confirmation(text, pending)
        return True

    async def clear_confirmation(self, pending: PendingConfirmation) -> None:
        if self.responder is None:
            return
        try:
            await self.responder.clear_confirmation(pending)
        except Exception as e:
            logger.warning("clear_confirmation_failed", confirmation_id=pending.id, error=str(e))
