"""CLI entry point for functions-bot."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from functions_bot.app import FunctionsBotApp
from functions_bot.config import ConfigStore, load_config
from functions_bot.errors import ConfigError
from functions_bot.log import setup_logging


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="functions-bot",
        description="Telegram and HTTP assistant with OpenAI function calling",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    for name, help_text in (("start", "Start the bot"), ("config-check", "Validate configuration")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("-c", "--config", default="config.yml", help="Path to config file")
        sub.add_argument("-e", "--env", default=".env", help="Path to .env file")

    args = parser.parse_args()

    if args.command is None:
        # Default to start
        args.command = "start"
        args.config = "config.yml"
        args.env = ".env"

    if args.command == "config-check":
        _check_config(args.config, args.env)
    elif args.command == "start":
        _run(args.config, args.env)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    try:
        config = load_config(config_path, env_path)
    except (FileNotFoundError, ConfigError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Configuration valid: {config_path}")
    print(f"  Bot name: {config.bot_name or '(none)'}")
    print(f"  Telegram: {'enabled' if config.auth.bot_token else 'disabled'}")
    print(f"  HTTP: {f'port {config.http.port}' if config.http.port else 'disabled'}")
    print(f"  Chats configured: {len(config.chats)}")
    for chat in config.chats:
        tools = ", ".join(chat.tool_names) or "(none)"
        print(f"    - {chat.name or chat.id} [{chat.completion_params.model}] tools: {tools}")


def _run(config_path: str, env_path: str) -> None:
    """Load config and start the application."""
    try:
        config_store = ConfigStore.from_file(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yml to config.yml first")
        sys.exit(1)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    config = config_store.config
    setup_logging(config.log_level, json_logs=config.json_logs)

    async def _async_main() -> None:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: stop_event.set())

        app = FunctionsBotApp(config_store)
        await app.start()
        try:
            await stop_event.wait()
        finally:
            await app.stop()

    asyncio.run(_async_main())


if __name__ == "__main__":
    main()
