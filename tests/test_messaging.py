from __future__ import annotations

import asyncio
from types import SimpleNamespace

from telegram.error import BadRequest, Forbidden

from digestbot.infra.messaging import (
    EMPTY_MESSAGE_PLACEHOLDER,
    TelegramDispatcher,
    chunk_text,
    safe_send_text,
)


class DummyMessage:
    def __init__(self) -> None:
        self.reply_calls: list[str] = []

    async def reply_text(self, text, reply_markup=None):
        self.reply_calls.append(text)


class DummyBot:
    def __init__(self, error: Exception | None = None) -> None:
        self.sent: list[tuple[int, str]] = []
        self.error = error

    async def send_message(self, chat_id, text, **kwargs):
        if self.error is not None:
            raise self.error
        self.sent.append((chat_id, text))


def test_chunk_text_splits_on_newlines() -> None:
    text = "\n".join(f"line {index}" for index in range(100))

    chunks = chunk_text(text, max_len=50)

    assert all(len(chunk) <= 50 for chunk in chunks)
    assert "\n".join(chunks) == text


def test_chunk_text_short_and_empty() -> None:
    assert chunk_text("hello") == ["hello"]
    assert chunk_text("") == []


def test_safe_send_text_replaces_empty_text() -> None:
    message = DummyMessage()
    update = SimpleNamespace(effective_message=message)

    asyncio.run(safe_send_text(update, "   "))

    assert message.reply_calls == [EMPTY_MESSAGE_PLACEHOLDER]


def test_safe_send_text_without_message() -> None:
    assert asyncio.run(safe_send_text(SimpleNamespace(effective_message=None), "hi")) == 0


def test_dispatcher_sends_to_user_chat() -> None:
    bot = DummyBot()

    delivered = asyncio.run(TelegramDispatcher(bot).send(42, "Take meds"))

    assert delivered is True
    assert bot.sent == [(42, "Take meds")]


def test_dispatcher_reports_blocked_user() -> None:
    bot = DummyBot(error=Forbidden("bot was blocked by the user"))

    assert asyncio.run(TelegramDispatcher(bot).send(42, "Take meds")) is False


def test_dispatcher_reports_rejected_message() -> None:
    bot = DummyBot(error=BadRequest("Chat not found"))

    assert asyncio.run(TelegramDispatcher(bot).send(42, "Take meds")) is False


class FlakyBot(DummyBot):
    def __init__(self, fail_on_call: int, error: Exception) -> None:
        super().__init__()
        self.fail_on_call = fail_on_call
        self.failure = error
        self.calls = 0

    async def send_message(self, chat_id, text, **kwargs):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise self.failure
        self.sent.append((chat_id, text))


def test_dispatcher_reports_truncated_message_as_failed() -> None:
    bot = FlakyBot(fail_on_call=2, error=BadRequest("Can't parse entities"))
    text = "\n".join(f"event line {index}" for index in range(600))

    delivered = asyncio.run(TelegramDispatcher(bot).send(42, text))

    assert delivered is False
    assert len(bot.sent) == 1


def test_dispatcher_resplits_too_long_chunk() -> None:
    bot = FlakyBot(fail_on_call=1, error=BadRequest("Message is too long"))
    text = "\n".join(f"event line {index}" for index in range(200))

    delivered = asyncio.run(TelegramDispatcher(bot).send(42, text))

    assert delivered is True
    assert "\n".join(chunk for _, chunk in bot.sent) == text


def test_safe_send_text_swallows_rejected_reply() -> None:
    class RejectingMessage(DummyMessage):
        async def reply_text(self, text, reply_markup=None):
            raise BadRequest("Chat not found")

    update = SimpleNamespace(effective_message=RejectingMessage())

    assert asyncio.run(safe_send_text(update, "hello")) == 0
