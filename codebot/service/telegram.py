from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

from telegram import BotCommand, Update
from telegram.constants import ChatAction
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from codebot.config import Settings
from codebot.logging import get_logger, set_correlation_id
from codebot.service import notices
from codebot.service.credentials import CredentialManager
from codebot.service.errors import NotFoundError
from codebot.service.quota import QuotaGate
from codebot.service.transport import chunk_text
from codebot.storage.common import UserStore

if TYPE_CHECKING:
    from codebot.service.pipeline import MessagePipeline

logger = get_logger(__name__)

BOT_COMMANDS = (
    ("start", "Start the bot"),
    ("help", "Show available commands"),
    ("status", "Show your tier and quota"),
    ("setkeys", "Activate your personal API keys"),
    ("revoke", "Remove your personal API keys"),
)


class TelegramTransport:
    """python-telegram-bot polling adapter.

    Text messages go to the bound :class:`MessagePipeline`; replies longer
    than ``chunk_size`` are split and sent with ``chunk_delay`` seconds
    between parts.
    """

    def __init__(
        self,
        token: str,
        settings: Settings,
        *,
        store: UserStore,
        credentials: CredentialManager,
        quota_gate: Optional[QuotaGate] = None,
    ) -> None:
        self.token = token
        self.settings = settings
        self.store = store
        self.credentials = credentials
        self.quota_gate = quota_gate or QuotaGate()
        self.chunk_size = settings.transport_chunk_size
        self.chunk_delay = settings.transport_chunk_delay
        self.pipeline: Optional["MessagePipeline"] = None
        self.app: Optional[Application] = None

    def bind(self, pipeline: "MessagePipeline") -> None:
        self.pipeline = pipeline

    async def send_text(self, chat_id: str, text: str) -> None:
        if self.app is None:
            raise RuntimeError("telegram transport is not started")
        chunks = chunk_text(text, self.chunk_size)
        for index, chunk in enumerate(chunks):
            if index:
                await asyncio.sleep(self.chunk_delay)
            await self.app.bot.send_message(chat_id=int(chat_id), text=chunk)

    async def start(self) -> None:
        """Initialise the bot and start polling."""
        self.app = (
            Application.builder()
            .token(self.token)
            .concurrent_updates(True)
            .build()
        )
        self._register_handlers(self.app)

        await self.app.initialize()
        await self.app.start()
        await self.app.updater.start_polling(drop_pending_updates=True)
        await self.app.bot.set_my_commands(
            [BotCommand(command, description) for command, description in BOT_COMMANDS]
        )
        logger.info("telegram_transport_started")

    def _register_handlers(self, app: Application) -> None:
        app.add_handler(CommandHandler("start", self._cmd_start))
        app.add_handler(CommandHandler("help", self._cmd_help))
        app.add_handler(CommandHandler("status", self._cmd_status))
        app.add_handler(CommandHandler("setkeys", self._cmd_setkeys))
        app.add_handler(CommandHandler("revoke", self._cmd_revoke))
        app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_text))
        app.add_handler(
            MessageHandler(
                filters.PHOTO | filters.Document.ALL | filters.VOICE, self._handle_unsupported
            )
        )
        app.add_error_handler(self._error_handler)

    async def stop(self) -> None:
        if self.app is None:
            return
        try:
            await self.app.updater.stop()
            await self.app.stop()
            await self.app.shutdown()
        except Exception as exc:
            logger.warning("telegram_transport_stop_failed", error=str(exc))
        logger.info("telegram_transport_stopped")

    @staticmethod
    def _display_name(update: Update) -> Optional[str]:
        user = update.effective_user
        if user is None:
            return None
        return user.first_name or user.username

    async def _handle_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        chat = update.effective_chat
        if message is None or chat is None or self.pipeline is None:
            return
        try:
            await context.bot.send_chat_action(chat_id=chat.id, action=ChatAction.TYPING)
        except Exception as exc:
            logger.debug("typing_indicator_failed", error=str(exc))
        await self.pipeline.on_message(str(chat.id), message.text or "", self._display_name(update))

    async def _cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if chat is None or self.pipeline is None:
            return
        user = self.store.find_user_by_external_id(str(chat.id))
        if user is None:
            # First contact creates the account through the gate
            await self.pipeline.gate.authenticate(str(chat.id), self._display_name(update))
            return
        await self.send_text(str(chat.id), notices.status(user, self.quota_gate.evaluate(user)))

    async def _cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.effective_chat is not None:
            await self.send_text(str(update.effective_chat.id), notices.HELP)

    async def _cmd_setkeys(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if chat is None:
            return
        await self.send_text(
            str(chat.id), notices.setkeys(str(chat.id), self.settings.activation_url)
        )

    async def _handle_unsupported(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        message = update.effective_message
        chat = update.effective_chat
        if message is None or chat is None:
            return
        if message.photo:
            kind = "photo"
        elif message.document is not None:
            kind = "document"
        elif message.voice is not None:
            kind = "voice"
        else:
            kind = "other"
        logger.info("unsupported_message_type", kind=kind)
        await self.send_text(str(chat.id), notices.unsupported_message(kind))

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if chat is None:
            return
        set_correlation_id()
        user = self.store.find_user_by_external_id(str(chat.id))
        if user is None:
            await self.send_text(str(chat.id), notices.not_registered())
            return
        await self.send_text(str(chat.id), notices.status(user, self.quota_gate.evaluate(user)))

    async def _cmd_revoke(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if chat is None:
            return
        set_correlation_id()
        args = [a.lower() for a in (context.args or [])]
        if args != ["confirm"]:
            await self.send_text(str(chat.id), notices.revoke_confirmation())
            return
        status = self.credentials.status(str(chat.id))
        if not status.has_keys:
            await self.send_text(str(chat.id), notices.keys_revoked(False))
            return
        try:
            await self.credentials.revoke(str(chat.id))
        except NotFoundError:
            await self.send_text(str(chat.id), notices.not_registered())
            return
        await self.send_text(str(chat.id), notices.keys_revoked(True))

    async def _error_handler(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error("telegram_update_failed", error=str(context.error))
        if isinstance(update, Update) and update.effective_chat:
            try:
                await context.bot.send_message(
                    chat_id=update.effective_chat.id, text=notices.GENERIC_ERROR
                )
            except Exception as exc:
                logger.warning("error_notice_failed", error=str(exc))
