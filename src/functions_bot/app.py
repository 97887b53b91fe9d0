"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

from functions_bot.ai.client import ClientProvider, CompletionClient
from functions_bot.ai.confirmation import ConfirmationRegistry
from functions_bot.ai.handler import MessageHandler
from functions_bot.ai.orchestrator import Orchestrator
from functions_bot.ai.tool_runner import ToolRunner
from functions_bot.ai.tools.registry import ToolRegistry
from functions_bot.config import ConfigStore
from functions_bot.core.history import HistoryManager
from functions_bot.core.threads import ThreadStore
from functions_bot.log import get_logger
from functions_bot.messenger.base import MessengerAdapter

logger = get_logger(__name__)


class FunctionsBotApp:
    """Top-level application orchestrator."""

    def __init__(self, config_store: ConfigStore, completion_client: CompletionClient | None = None):
        config = config_store.config
        self.config_store = config_store
        self.threads = ThreadStore()
        self.history = HistoryManager(self.threads, history_limit=config.history_limit)
        self.tool_registry = ToolRegistry(config_store, self.history)
        self.confirmations = ConfirmationRegistry(timeout=config.confirmation_timeout)
        self.tool_runner = ToolRunner(self.confirmations)
        self.clients = ClientProvider(config_store, default=completion_client)
        self.orchestrator = Orchestrator(
            self.clients,
            self.history,
            self.tool_registry,
            self.tool_runner,
            max_tool_rounds=config.max_tool_rounds,
        )
        self.adapters: list[MessengerAdapter] = []

    async def start(self) -> None:
        """Initialize and start all components."""
        self.tool_registry.discover_and_register()
        self.tool_registry.set_agent_runner(self.orchestrator.ask_agent)

        for adapter in self._create_adapters():
            handler = MessageHandler(
                adapter=adapter,
                orchestrator=self.orchestrator,
                history=self.history,
                config_store=self.config_store,
                confirmations=self.confirmations,
            )
            adapter.on_message(handler.handle)
            adapter.on_action(handler.handle_action)
            if hasattr(adapter, "on_agent_request"):
                adapter.on_agent_request(handler.answer_agent)
            try:
                await adapter.start()
            except Exception as e:
                logger.error("adapter_start_failed", platform=adapter.platform_name, error=str(e))
                continue
            self.adapters.append(adapter)
            logger.info("adapter_started", platform=adapter.platform_name, bot_id=adapter.bot_id)

        logger.info("functions_bot_started", adapter_count=len(self.adapters))

    async def stop(self) -> None:
        """Gracefully shut down all adapters."""
        for adapter in self.adapters:
            try:
                await adapter.stop()
            except Exception as e:
                logger.error("adapter_stop_error", platform=adapter.platform_name, error=str(e))
        self.adapters.clear()
        logger.info("functions_bot_stopped")

    def _create_adapters(self) -> list[MessengerAdapter]:
        config = self.config_store.config
        adapters: list[MessengerAdapter] = []
        if config.auth.bot_token:
            from functions_bot.messenger.telegram import TelegramAdapter

            adapters.append(
                TelegramAdapter(config.bot_name, config.auth.bot_token, proxy_url=config.auth.proxy_url)
            )
        if config.http.port:
            from functions_bot.messenger.http import HttpAdapter

            adapters.append(
                HttpAdapter(config.bot_name, self.config_store, host=config.http.host, port=config.http.port)
            )
        if not adapters:
            logger.warning("no_adapters_configured")
        return adapters
