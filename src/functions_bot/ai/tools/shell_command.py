"""Local shell command execution tool."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from functions_bot.ai.tools.base import Tool, ToolClient

MAX_TIMEOUT = 300
DESCRIPTION = "Execute a shell command on the bot host. Returns stdout, stderr and exit code."


class ShellCommandClient(ToolClient):
    @property
    def name(self) -> str:
        return "shell_command"

    @property
    def description(self) -> str:
        return DESCRIPTION

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "Shell command to run",
                },
                "timeout": {
                    "type": "integer",
                    "description": f"Timeout in seconds (max: {MAX_TIMEOUT})",
                },
            },
            "required": ["command"],
        }

    async def execute(self, **kwargs: Any) -> str:
        command = kwargs.get("command", "")
        timeout = min(kwargs.get("timeout") or self.params.get("timeout", 30), MAX_TIMEOUT)
        cwd = self.params.get("cwd")

        if not command:
            return "Error: command is required"

        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return f"Error: command timed out after {timeout} seconds"

        output_parts = []
        if stdout:
            output_parts.append(f"STDOUT:\n{stdout.decode('utf-8', errors='replace')[:20000]}")
        if stderr:
            output_parts.append(f"STDERR:\n{stderr.decode('utf-8', errors='replace')[:5000]}")
        output_parts.append(f"Exit code: {process.returncode}")
        return "\n\n".join(output_parts)

    def options_string(self, args: str) -> str:
        command = json.loads(args).get("command", "")
        return f"`$ {command}`"


class ShellCommandTool(Tool):
    name = "shell_command"
    description = DESCRIPTION
    default_params = {"timeout": 30, "cwd": None}

    def call(self, chat_config, thread) -> ShellCommandClient:
        return ShellCommandClient(chat_config, thread, self.params_for(chat_config))
