from __future__ import annotations

from collections.abc import Awaitable, Callable

import httpx

from harvester.jobs.retry import retry_with_backoff


class PreflightError(Exception):
    """Raised when a source's upstream endpoint is not reachable."""


async def probe_source(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout_seconds: float = 10.0,
    attempts: int = 3,
    base_delay_seconds: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> int:
    """Check that ``url`` answers without a server error; returns the status code."""

    async def attempt(http: httpx.AsyncClient) -> int:
        try:
            response = await http.get(url, headers={"User-Agent": "job-harvester-preflight/1.0"})
        except httpx.HTTPError as exc:
            raise PreflightError(f"{url}: {exc.__class__.__name__}") from exc
        if response.status_code >= 500:
            raise PreflightError(f"{url}: status {response.status_code}")
        return int(response.status_code)

    async def run(http: httpx.AsyncClient) -> int:
        kwargs = {} if sleep is None else {"sleep": sleep}
        return await retry_with_backoff(
            lambda: attempt(http),
            attempts=attempts,
            base_delay_seconds=base_delay_seconds,
            retry_on=(PreflightError,),
            description=f"preflight {url}",
            **kwargs,
        )

    if client is not None:
        return await run(client)
    async with httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True) as temp_client:
        return await run(temp_client)
