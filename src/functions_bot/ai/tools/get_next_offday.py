"""Next day off in a 4-day shift cycle."""

from __future__ import annotations

import json
from datetime import date, timedelta
from typing import Any

from functions_bot.ai.tools.base import Tool, ToolClient

CYCLE_LENGTH = 4
DESCRIPTION = "Get the next offday from the start off date"


def next_offday(start_off_date: date, current_date: date) -> date:
    days_since_last_off = abs((current_date - start_off_date).days) % CYCLE_LENGTH
    next_off_in_days = (CYCLE_LENGTH - days_since_last_off) % CYCLE_LENGTH
    return current_date + timedelta(days=next_off_in_days)


class NextOffdayClient(ToolClient):
    @property
    def name(self) -> str:
        return "get_next_offday"

    @property
    def description(self) -> str:
        return DESCRIPTION

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "startOffDate": {"type": "string", "description": "Start off date, YYYY-MM-DD"},
                "currentDate": {"type": "string", "description": "Current date, YYYY-MM-DD"},
            },
            "required": ["startOffDate", "currentDate"],
        }

    async def execute(self, **kwargs: Any) -> str:
        start = date.fromisoformat(kwargs["startOffDate"])
        current = date.fromisoformat(kwargs["currentDate"])
        return next_offday(start, current).isoformat()

    def options_string(self, args: str) -> str:
        params = json.loads(args)
        start, current = params.get("startOffDate"), params.get("currentDate")
        if not start or not current:
            return args
        return f"`get_next_offday({start}, {current})`"


class NextOffdayTool(Tool):
    name = "get_next_offday"
    description = DESCRIPTION

    def call(self, chat_config, thread) -> NextOffdayClient:
        return NextOffdayClient(chat_config, thread)
