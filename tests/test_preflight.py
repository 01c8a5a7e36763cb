from __future__ import annotations

import asyncio

import httpx
import pytest

from harvester.services.preflight import PreflightError, probe_source


async def _no_sleep(_: float) -> None:
    return None


def test_probe_retries_server_errors_until_success() -> None:
    responses = iter([503, 502, 200])
    seen: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(status_code=next(responses), request=request)

    async def run() -> int:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await probe_source(
                "https://jobs.example.com/api/health",
                client=client,
                attempts=3,
                base_delay_seconds=0.0,
                sleep=_no_sleep,
            )

    assert asyncio.run(run()) == 200
    assert len(seen) == 3


def test_probe_accepts_client_errors_as_reachable() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=401, request=request)

    async def run() -> int:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await probe_source("https://jobs.example.com/api", client=client, sleep=_no_sleep)

    assert asyncio.run(run()) == 401


def test_probe_raises_after_exhausting_attempts() -> None:
    calls = {"count": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        raise httpx.ConnectError("connection refused", request=request)

    async def run() -> int:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await probe_source(
                "https://down.example.com/",
                client=client,
                attempts=2,
                base_delay_seconds=0.0,
                sleep=_no_sleep,
            )

    with pytest.raises(PreflightError, match="ConnectError"):
        asyncio.run(run())
    assert calls["count"] == 2
