# market_alerts/notifier/telegram.py
import logging
from collections.abc import Callable, Coroutine
from typing import Any, Protocol

from telegram import Bot, BotCommand, Update
from telegram.error import TelegramError
from telegram.ext import Application, CommandHandler, ContextTypes

from market_alerts.exceptions import NotifyError
from market_alerts.notifier.formatter import TELEGRAM_LIMIT

logger = logging.getLogger(__name__)

HELP_MESSAGE = """
📖 <b>命令列表</b>

/status - 查看各监控任务最近一次运行结果
/help - 查看帮助
"""

BOT_COMMANDS = [
    BotCommand("status", "任务状态"),
    BotCommand("help", "查看帮助"),
]


class Notifier(Protocol):
    async def send_message(self, text: str, chat_id: str | None = None) -> int: ...

    def channel_for(self, task_name: str) -> str: ...


class TelegramNotifier:
    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        channels: dict[str, str] | None = None,
        message_limit: int = TELEGRAM_LIMIT,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.channels = channels or {}
        self.message_limit = message_limit
        self.bot = Bot(token=bot_token)
        self.app: Application | None = None  # type: ignore[type-arg]

        # Callbacks
        self.on_status: Callable[[], Coroutine[Any, Any, str]] | None = None

    def channel_for(self, task_name: str) -> str:
        return self.channels.get(task_name, self.chat_id)

    async def send_message(self, text: str, chat_id: str | None = None) -> int:
        try:
            message = await self.bot.send_message(
                chat_id=chat_id or self.chat_id,
                text=text,
                parse_mode="HTML",
            )
        except TelegramError as e:
            raise NotifyError(f"Telegram send failed: {e}") from e
        return message.message_id

    async def _handle_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message:
            return

        if self.on_status:
            text = await self.on_status()
            await update.message.reply_text(text, parse_mode="HTML")
        else:
            await update.message.reply_text("系统运行中")

    async def _handle_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message:
            return
        await update.message.reply_text(HELP_MESSAGE, parse_mode="HTML")

    def setup_handlers(self, app: Application) -> None:  # type: ignore[type-arg]
        app.add_handler(CommandHandler("start", self._handle_help))
        app.add_handler(CommandHandler("help", self._handle_help))
        app.add_handler(CommandHandler("status", self._handle_status))

    async def start_polling(self) -> None:
        self.app = Application.builder().token(self.bot_token).build()
        self.setup_handlers(self.app)
        await self.app.initialize()
        await self.app.start()

        # Set bot command menu
        await self.bot.set_my_commands(BOT_COMMANDS)

        if self.app.updater:
            await self.app.updater.start_polling()

    async def stop_polling(self) -> None:
        if self.app:
            if self.app.updater:
                await self.app.updater.stop()
            await self.app.stop()
            await self.app.shutdown()
