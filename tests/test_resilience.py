import asyncio
import logging

import httpx
import pytest

from digestbot.infra.resilience import RetryPolicy, is_retryable_http_error, retry_async


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://www.googleapis.com/calendar/v3/calendars/primary")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("status", request=request, response=response)


def test_retry_success_after_transient() -> None:
    attempts: list[int] = []
    waits: list[float] = []

    async def _call() -> str:
        attempts.append(len(attempts))
        if len(attempts) < 3:
            raise asyncio.TimeoutError("transient")
        return "ok"

    async def _sleep(delay: float) -> None:
        waits.append(delay)

    policy = RetryPolicy(max_attempts=3, base_delay_ms=1, max_delay_ms=1, jitter_ms=0)

    result = asyncio.run(
        retry_async(
            _call,
            policy=policy,
            timeout_seconds=None,
            logger=logging.getLogger(__name__),
            name="retry",
            is_retryable=lambda exc: True,
            sleep=_sleep,
        )
    )

    assert result == "ok"
    assert len(attempts) == 3
    assert waits == [0.001, 0.001]


def test_retry_non_retryable_error() -> None:
    attempts: list[int] = []

    async def _call() -> str:
        attempts.append(len(attempts))
        raise ValueError("nope")

    policy = RetryPolicy(max_attempts=3, base_delay_ms=1, max_delay_ms=1, jitter_ms=0)

    with pytest.raises(ValueError):
        asyncio.run(
            retry_async(
                _call,
                policy=policy,
                timeout_seconds=None,
                logger=logging.getLogger(__name__),
                name="retry",
                is_retryable=lambda exc: False,
            )
        )

    assert len(attempts) == 1


def test_retry_gives_up_after_max_attempts() -> None:
    attempts: list[int] = []

    async def _call() -> str:
        attempts.append(len(attempts))
        raise _status_error(503)

    async def _sleep(delay: float) -> None:
        return None

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(
            retry_async(
                _call,
                policy=RetryPolicy(max_attempts=2, base_delay_ms=1, max_delay_ms=1, jitter_ms=0),
                timeout_seconds=None,
                logger=logging.getLogger(__name__),
                name="retry",
                is_retryable=is_retryable_http_error,
                sleep=_sleep,
            )
        )

    assert len(attempts) == 2


def test_timeout_is_applied_per_attempt() -> None:
    async def _call() -> str:
        await asyncio.sleep(1)
        return "late"

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(
            retry_async(
                _call,
                policy=RetryPolicy(max_attempts=1),
                timeout_seconds=0.01,
                logger=logging.getLogger(__name__),
                name="retry",
                is_retryable=is_retryable_http_error,
            )
        )


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (_status_error(429), True),
        (_status_error(502), True),
        (_status_error(401), False),
        (_status_error(404), False),
        (httpx.ConnectError("refused"), True),
        (httpx.ReadTimeout("slow"), True),
        (ValueError("bad json"), False),
    ],
)
def test_is_retryable_http_error(exc: Exception, expected: bool) -> None:
    assert is_retryable_http_error(exc) is expected
