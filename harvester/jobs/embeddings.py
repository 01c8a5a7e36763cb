from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Literal

from opentelemetry import trace

from harvester.jobs.adapter import kill_process_group

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RefreshStatus = Literal["success", "failure", "timeout", "skipped"]


@dataclass(frozen=True, slots=True)
class EmbeddingRefreshResult:
    status: RefreshStatus
    duration_seconds: float = 0.0
    exit_code: int | None = None
    reason: str | None = None


class EmbeddingRefreshScheduler:
    """Single-flight gate around the external embedding-queue drain.

    A trigger that arrives while a refresh is running is dropped, not queued.
    """

    def __init__(
        self,
        command: Sequence[str] | None,
        *,
        timeout_seconds: float = 1800.0,
        workdir: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.command = tuple(command or ())
        self.timeout_seconds = max(0.1, timeout_seconds)
        self.workdir = workdir
        self.env = dict(os.environ if env is None else env)
        self._running = False
        self._task: asyncio.Task[EmbeddingRefreshResult] | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def trigger(self, reason: str) -> bool:
        """Start a background refresh; returns False when one is already in flight."""
        if self._running:
            logger.info("embedding refresh already running; skipping trigger reason=%s", reason)
            return False
        # Claim the flag before yielding to the loop so a second trigger sees it.
        self._running = True
        self._task = asyncio.create_task(self._refresh_claimed(reason))
        return True

    async def refresh(self, reason: str = "manual") -> EmbeddingRefreshResult:
        if self._running:
            logger.info("embedding refresh already running; skipping trigger reason=%s", reason)
            return EmbeddingRefreshResult(status="skipped", reason="already_running")
        self._running = True
        return await self._refresh_claimed(reason)

    async def wait_idle(self) -> EmbeddingRefreshResult | None:
        task = self._task
        if task is None:
            return None
        return await task

    async def _refresh_claimed(self, reason: str) -> EmbeddingRefreshResult:
        started_at = time.monotonic()
        try:
            with tracer.start_as_current_span("harvester.embedding_refresh") as span:
                span.set_attribute("refresh.reason", reason)
                result = await self._execute(started_at)
                span.set_attribute("refresh.status", result.status)
            return result
        except Exception as exc:
            logger.exception("embedding refresh crashed reason=%s", reason)
            return EmbeddingRefreshResult(
                status="failure",
                duration_seconds=time.monotonic() - started_at,
                reason=f"{exc.__class__.__name__}: {exc}",
            )
        finally:
            self._running = False

    async def _execute(self, started_at: float) -> EmbeddingRefreshResult:
        if not self.command:
            logger.info("embedding refresh command not configured; nothing to run")
            return EmbeddingRefreshResult(status="skipped", reason="not_configured")

        logger.info("embedding refresh started command=%s", " ".join(self.command))
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.workdir,
                env=self.env,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as exc:
            logger.error("embedding refresh command unavailable: %s", exc)
            return EmbeddingRefreshResult(status="failure", reason=f"command_not_found: {exc}")

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            await kill_process_group(process)
            duration = time.monotonic() - started_at
            logger.warning(
                "embedding refresh timed out after %.0fs; queue likely large, next trigger will continue",
                duration,
            )
            return EmbeddingRefreshResult(status="timeout", duration_seconds=duration)
        except BaseException:
            await kill_process_group(process)
            raise

        duration = time.monotonic() - started_at
        if process.returncode != 0:
            logger.error(
                "embedding refresh failed exit_code=%s duration_s=%.1f stderr_tail=%r",
                process.returncode,
                duration,
                stderr.decode("utf-8", errors="replace")[-500:],
            )
            return EmbeddingRefreshResult(status="failure", duration_seconds=duration, exit_code=process.returncode)

        logger.info("embedding refresh completed duration_s=%.1f", duration)
        return EmbeddingRefreshResult(status="success", duration_seconds=duration, exit_code=0)

