# tests/notifier/test_telegram.py
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from telegram.error import TelegramError

from market_alerts.exceptions import NotifyError


async def test_send_message():
    with patch("market_alerts.notifier.telegram.Bot") as MockBot:
        mock_bot = MagicMock()
        mock_bot.send_message = AsyncMock(return_value=MagicMock(message_id=42))
        MockBot.return_value = mock_bot

        from market_alerts.notifier.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot_token="test", chat_id="123")
        message_id = await notifier.send_message("Hello")

        assert message_id == 42
        mock_bot.send_message.assert_called_once_with(
            chat_id="123",
            text="Hello",
            parse_mode="HTML",
        )


async def test_send_message_to_task_channel():
    with patch("market_alerts.notifier.telegram.Bot") as MockBot:
        mock_bot = MagicMock()
        mock_bot.send_message = AsyncMock(return_value=MagicMock(message_id=1))
        MockBot.return_value = mock_bot

        from market_alerts.notifier.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot_token="test", chat_id="123", channels={"funding:rate": "-100999"})
        assert notifier.channel_for("funding:rate") == "-100999"
        assert notifier.channel_for("ol:alarm") == "123"

        await notifier.send_message("Hi", notifier.channel_for("funding:rate"))
        assert mock_bot.send_message.call_args.kwargs["chat_id"] == "-100999"


async def test_send_message_failure_raises_notify_error():
    with patch("market_alerts.notifier.telegram.Bot") as MockBot:
        mock_bot = MagicMock()
        mock_bot.send_message = AsyncMock(side_effect=TelegramError("chat not found"))
        MockBot.return_value = mock_bot

        from market_alerts.notifier.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot_token="test", chat_id="123")
        with pytest.raises(NotifyError, match="chat not found"):
            await notifier.send_message("Hello")


async def test_status_command_uses_callback():
    with patch("market_alerts.notifier.telegram.Bot"):
        from market_alerts.notifier.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot_token="test", chat_id="123")
        notifier.on_status = AsyncMock(return_value="<b>ok</b>")
        update = MagicMock()
        update.message.reply_text = AsyncMock()

        await notifier._handle_status(update, MagicMock())

        update.message.reply_text.assert_called_once_with("<b>ok</b>", parse_mode="HTML")


async def test_help_command():
    with patch("market_alerts.notifier.telegram.Bot"):
        from market_alerts.notifier.telegram import HELP_MESSAGE, TelegramNotifier

        notifier = TelegramNotifier(bot_token="test", chat_id="123")
        update = MagicMock()
        update.message.reply_text = AsyncMock()

        await notifier._handle_help(update, MagicMock())

        update.message.reply_text.assert_called_once_with(HELP_MESSAGE, parse_mode="HTML")
