"""Telegram messenger adapter using python-telegram-bot v21+."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from telegram import (
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    KeyboardButton,
    ReplyKeyboardMarkup,
    Update,
)
from telegram.constants import ChatAction, ParseMode
from telegram.error import BadRequest
from telegram.ext import Application, CallbackQueryHandler, MessageHandler as TGMessageHandler, filters

from functions_bot.core.types import Platform
from functions_bot.log import get_logger
from functions_bot.messenger.base import MessengerAdapter
from functions_bot.messenger.models import ActionEvent, IncomingMessage, OutgoingMessage

logger = get_logger(__name__)

_PARSE_MODES = {"markdown": ParseMode.MARKDOWN, "html": ParseMode.HTML}


class TelegramAdapter(MessengerAdapter):
    """Telegram bot adapter using python-telegram-bot."""

    def __init__(self, bot_id: str, token: str, proxy_url: str | None = None):
        super().__init__(bot_id)
        self._token = token
        self._proxy_url = proxy_url
        self._app: Application | None = None  # type: ignore[type-arg]
        self.bot_username: str | None = None

    @property
    def platform_name(self) -> str:
        return Platform.TELEGRAM

    async def start(self) -> None:
        if not self._token:
            raise ValueError(f"Telegram bot token not configured for bot '{self.bot_id}'")

        # updates are handled concurrently: a turn waiting for confirmation
        # must not block the button press that resolves it
        builder = Application.builder().token(self._token).concurrent_updates(True)
        if self._proxy_url:
            builder = builder.proxy(self._proxy_url).get_updates_proxy(self._proxy_url)
        self._app = builder.build()

        self._app.add_handler(TGMessageHandler(filters.TEXT, self._on_telegram_message))
        self._app.add_handler(CallbackQueryHandler(self._on_callback_query))

        await self._app.initialize()
        self.bot_username = self._app.bot.username
        await self._app.start()
        await self._app.updater.start_polling(drop_pending_updates=True)  # type: ignore[union-attr]
        logger.info("telegram_adapter_started", bot_id=self.bot_id, username=self.bot_username)

    async def stop(self) -> None:
        if self._app:
            await self._app.updater.stop()  # type: ignore[union-attr]
            await self._app.stop()
            await self._app.shutdown()
            logger.info("telegram_adapter_stopped", bot_id=self.bot_id)

    async def send_message(self, message: OutgoingMessage) -> None:
        if not self._app or not self._app.bot:
            return

        reply_markup = None
        if message.buttons:
            reply_markup = ReplyKeyboardMarkup(
                [[KeyboardButton(label)] for label in message.buttons], resize_keyboard=True
            )
        kwargs: dict[str, Any] = {
            "chat_id": message.chat_id,
            "text": message.text,
            "reply_to_message_id": message.reply_to_message_id,
            "reply_markup": reply_markup,
        }
        parse_mode = _PARSE_MODES.get(message.parse_mode or "")
        try:
            await self._app.bot.send_message(parse_mode=parse_mode, **kwargs)
        except BadRequest as e:
            if parse_mode is None:
                raise
            # model output is not always valid markup
            logger.debug("telegram_markup_rejected", chat_id=message.chat_id, error=str(e))
            await self._app.bot.send_message(**kwargs)

    async def send_typing_indicator(self, chat_id: int) -> None:
        if self._app and self._app.bot:
            await self._app.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)

    async def send_confirmation(
        self, chat_id: int, text: str, confirm_action: str, cancel_action: str
    ) -> None:
        if not self._app or not self._app.bot:
            return
        keyboard = InlineKeyboardMarkup(
            [
                [
                    InlineKeyboardButton("Yes", callback_data=confirm_action),
                    InlineKeyboardButton("No", callback_data=cancel_action),
                ]
            ]
        )
        await self._app.bot.send_message(chat_id=chat_id, text=text, reply_markup=keyboard)

    async def _on_telegram_message(self, update: Update, context: Any) -> None:
        """Convert a Telegram text message and pass it to the handler."""
        msg = update.message
        if not msg or not msg.text or not self._message_callback:
            return

        user = msg.from_user
        reply = msg.reply_to_message
        incoming = IncomingMessage(
            platform=Platform.TELEGRAM,
            bot_id=self.bot_id,
            chat_id=msg.chat_id,
            user_id=user.id if user else 0,
            text=msg.text,
            chat_type=msg.chat.type,
            username=user.username if user else None,
            first_name=user.first_name if user else None,
            full_name=user.full_name if user else None,
            chat_title=msg.chat.title,
            message_id=msg.message_id,
            reply_to_message_id=reply.message_id if reply else None,
            reply_to_username=reply.from_user.username if reply and reply.from_user else None,
            timestamp=msg.date or datetime.now(timezone.utc),
        )

        try:
            await self._message_callback(incoming)
        except Exception as e:
            logger.error("telegram_handler_error", error=str(e), chat_id=msg.chat_id)

    async def _on_callback_query(self, update: Update, context: Any) -> None:
        query = update.callback_query
        if not query or not query.data or not self._action_callback:
            return
        await query.answer()

        chat_id = query.message.chat.id if query.message else 0
        event = ActionEvent(
            bot_id=self.bot_id,
            chat_id=chat_id,
            user_id=query.from_user.id,
            action=query.data,
        )
        try:
            if await self._action_callback(event):
                await query.edit_message_reply_markup(reply_markup=None)
        except Exception as e:
            logger.error("telegram_action_error", error=str(e), chat_id=chat_id)
