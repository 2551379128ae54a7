"""Telegram channel provider — implements ChannelProvider.

Wraps a telegram.Bot instance. Actions become inline keyboard buttons whose
callback data is the action id; the returned handle "chat_id:message_id"
lets the dispatcher delete the message later.
"""

from __future__ import annotations

import logging

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup

from healthbot.ports.notification_port import Notification, NotificationAction

logger = logging.getLogger(__name__)

BUTTONS_PER_ROW = 2


def build_keyboard(actions: tuple[NotificationAction, ...]) -> InlineKeyboardMarkup | None:
    """First action alone on top, the rest in rows of BUTTONS_PER_ROW."""
    if not actions:
        return None
    buttons = [InlineKeyboardButton(a.label, callback_data=a.id) for a in actions]
    rows = [buttons[:1]]
    rest = buttons[1:]
    rows.extend(rest[i:i + BUTTONS_PER_ROW] for i in range(0, len(rest), BUTTONS_PER_ROW))
    return InlineKeyboardMarkup(rows)


def format_message(notification: Notification) -> str:
    if notification.body:
        return f"{notification.title}\n\n{notification.body}"
    return notification.title


class TelegramProvider:
    """Telegram implementation of ChannelProvider."""

    name = "telegram"

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    def is_enabled(self) -> bool:
        return self._bot is not None

    def supports_actions(self) -> bool:
        return True

    def max_actions(self) -> int:
        return 8

    def supports_removal(self) -> bool:
        return True

    async def send(self, user_id: int, notification: Notification) -> str:
        message = await self._bot.send_message(
            chat_id=user_id,
            text=format_message(notification),
            reply_markup=build_keyboard(notification.actions),
        )
        return f"{message.chat_id}:{message.message_id}"

    async def remove(self, handle: str) -> None:
        chat_id, _, message_id = handle.partition(":")
        await self._bot.delete_message(chat_id=int(chat_id), message_id=int(message_id))
        logger.debug("Deleted Telegram message %s", handle)
