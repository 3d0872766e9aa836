from __future__ import annotations

import logging
from typing import Awaitable, Callable

from telegram import Update
from telegram.error import BadRequest, TelegramError

LOGGER = logging.getLogger(__name__)

# Telegram rejects texts over 4096 characters; stay well below.
MAX_CHUNK_SIZE = 3500
FALLBACK_CHUNK_SIZE = 2000
EMPTY_MESSAGE_PLACEHOLDER = "(empty message)"

SendFunc = Callable[[str], Awaitable[object]]


def _split_point(text: str, max_len: int) -> int:
    for separator in ("\n", " "):
        index = text.rfind(separator, 0, max_len + 1)
        if index > 0:
            return index
    return max_len


def chunk_text(text: str, max_len: int = MAX_CHUNK_SIZE) -> list[str]:
    """Split on the last newline (else space) that fits; hard-cut only when neither exists."""
    chunks: list[str] = []
    remaining = text or ""
    while len(remaining) > max_len:
        cut = _split_point(remaining, max_len)
        head = remaining[:cut].rstrip()
        if not head:
            cut = max_len
            head = remaining[:cut]
        chunks.append(head)
        remaining = remaining[cut:].lstrip("\n ")
    if remaining:
        chunks.append(remaining)
    return chunks


def _payload(text: str | None) -> str:
    return text if text and text.strip() else EMPTY_MESSAGE_PLACEHOLDER


async def _deliver(send: SendFunc, text: str) -> int:
    """Send ``text`` in chunks; returns the number of characters delivered.

    Any rejection other than "too long" stops the send and is re-raised.
    """
    delivered = 0
    for chunk in chunk_text(text):
        try:
            await send(chunk)
        except BadRequest as exc:
            if "Message is too long" not in str(exc):
                LOGGER.error("Telegram rejected message chunk: delivered=%s error=%s", delivered, exc)
                raise
            LOGGER.warning("Message chunk too long: size=%s; splitting further", len(chunk))
            for piece in chunk_text(chunk, max_len=FALLBACK_CHUNK_SIZE):
                await send(piece)
        delivered += len(chunk)
    return delivered


async def safe_send_text(update: Update | None, text: str | None) -> int:
    message = update.effective_message if update else None
    if not message:
        return 0
    try:
        return await _deliver(message.reply_text, _payload(text))
    except BadRequest:
        LOGGER.exception("Reply not delivered")
        return 0


async def safe_send_bot_text(bot, chat_id: int, text: str | None) -> int:
    async def _send(chunk: str) -> object:
        return await bot.send_message(chat_id=chat_id, text=chunk)

    return await _deliver(_send, _payload(text))


class TelegramDispatcher:
    """Delivers scheduled notifications to a user's private chat (chat id == user id)."""

    def __init__(self, bot) -> None:
        self._bot = bot

    async def send(self, user_id: int, text: str) -> bool:
        try:
            sent = await safe_send_bot_text(self._bot, user_id, text)
        except TelegramError:
            LOGGER.exception("Telegram send failed: user_id=%s", user_id)
            return False
        return sent > 0
