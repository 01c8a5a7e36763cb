from __future__ import annotations

import asyncio

import pytest

from harvester.jobs.retry import MAX_ATTEMPTS, retry_with_backoff


class Recorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_retry_doubles_delay_until_success() -> None:
    sleeper = Recorder()
    attempts = {"count": 0}

    async def flaky() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise ConnectionError("not yet")
        return "ok"

    result = asyncio.run(retry_with_backoff(flaky, attempts=3, base_delay_seconds=0.5, sleep=sleeper))

    assert result == "ok"
    assert attempts["count"] == 3
    assert sleeper.delays == [0.5, 1.0]


def test_retry_reraises_last_error_after_exhausting_attempts() -> None:
    sleeper = Recorder()

    async def always_fails() -> None:
        raise ConnectionError("down")

    with pytest.raises(ConnectionError, match="down"):
        asyncio.run(retry_with_backoff(always_fails, attempts=2, base_delay_seconds=1.0, sleep=sleeper))

    assert sleeper.delays == [1.0]


def test_retry_does_not_retry_unlisted_errors() -> None:
    sleeper = Recorder()
    calls = {"count": 0}

    async def broken() -> None:
        calls["count"] += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        asyncio.run(retry_with_backoff(broken, attempts=3, retry_on=(ConnectionError,), sleep=sleeper))

    assert calls["count"] == 1
    assert sleeper.delays == []


def test_retry_attempts_are_bounded() -> None:
    sleeper = Recorder()
    calls = {"count": 0}

    async def always_fails() -> None:
        calls["count"] += 1
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        asyncio.run(retry_with_backoff(always_fails, attempts=50, base_delay_seconds=0.0, sleep=sleeper))

    assert calls["count"] == MAX_ATTEMPTS
