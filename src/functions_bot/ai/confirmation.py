"""Pending tool-call confirmations, resolved by confirm/cancel actions."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Optional

from functions_bot.core.types import ToolCallRequest
from functions_bot.log import get_logger

logger = get_logger(__name__)

CONFIRM_PREFIX = "confirm_"
CANCEL_PREFIX = "cancel_"


@dataclass
class PendingConfirmation:
    id: str
    chat_id: int
    user_id: int
    tool_calls: list[ToolCallRequest]
    future: asyncio.Future[bool] = field(repr=False)

    @property
    def confirm_action(self) -> str:
        return f"{CONFIRM_PREFIX}{self.id}"

    @property
    def cancel_action(self) -> str:
        return f"{CANCEL_PREFIX}{self.id}"


def parse_action(action: str) -> Optional[tuple[str, bool]]:
    """Split ``confirm_<id>``/``cancel_<id>`` into (id, confirmed)."""
    if action.startswith(CONFIRM_PREFIX):
        return action[len(CONFIRM_PREFIX):], True
    if action.startswith(CANCEL_PREFIX):
        return action[len(CANCEL_PREFIX):], False
    return None


class ConfirmationRegistry:
    """Maps correlation ids to futures awaiting a user decision.

    With ``timeout=None`` an unanswered confirmation stays pending until the
    process exits.
    """

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout
        self._pending: dict[str, PendingConfirmation] = {}

    def create(
        self, chat_id: int, user_id: int, tool_calls: list[ToolCallRequest]
    ) -> PendingConfirmation:
        pending = PendingConfirmation(
            id=uuid.uuid4().hex[:12],
            chat_id=chat_id,
            user_id=user_id,
            tool_calls=list(tool_calls),
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[pending.id] = pending
        logger.info("confirmation_pending", confirmation_id=pending.id, chat_id=chat_id)
        return pending

    async def wait(self, pending: PendingConfirmation) -> bool:
        """Wait for the user's decision; an expired confirmation counts as cancel."""
        try:
            if self.timeout is None:
                return await pending.future
            return await asyncio.wait_for(asyncio.shield(pending.future), self.timeout)
        except asyncio.TimeoutError:
            logger.info("confirmation_expired", confirmation_id=pending.id, chat_id=pending.chat_id)
            return False
        finally:
            self._pending.pop(pending.id, None)

    def resolve(self, confirmation_id: str, confirmed: bool, user_id: int) -> bool:
        """Resolve a pending confirmation. Only the requesting user may answer."""
        pending = self._pending.get(confirmation_id)
        if pending is None or pending.future.done():
            logger.debug("confirmation_unknown", confirmation_id=confirmation_id)
            return False
        if pending.user_id != user_id:
            logger.warning(
                "confirmation_foreign_user",
                confirmation_id=confirmation_id,
                user_id=user_id,
            )
            return False
        pending.future.set_result(confirmed)
        logger.info("confirmation_resolved", confirmation_id=confirmation_id, confirmed=confirmed)
        return True

    def resolve_action(self, action: str, user_id: int) -> bool:
        parsed = parse_action(action)
        if parsed is None:
            return False
        confirmation_id, confirmed = parsed
        return self.resolve(confirmation_id, confirmed, user_id)

    def __len__(self) -> int:
        return len(self._pending)
