from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
import signal
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal

from opentelemetry import trace

from harvester.core.sources import SourceConfig, SourceSpec
from harvester.services.preflight import PreflightError, probe_source
from harvester.services.repository import JobStore, RepositoryError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SourceRunStatus = Literal["success", "failure", "timeout", "skipped"]
CountOrigin = Literal["reported", "store_fallback", "none"]

RESULT_LINE_RE = re.compile(r"^HARVESTER_RESULT\s+(\{.*\})\s*$", re.MULTILINE)
OUTPUT_TAIL_CHARS = 2000


@dataclass(frozen=True, slots=True)
class SourceRun:
    source_id: str
    status: SourceRunStatus
    contributed_count: int
    duration_seconds: float
    count_origin: CountOrigin = "none"
    exit_code: int | None = None
    output_tail: str = ""
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ProcessOutput:
    exit_code: int
    stdout: str
    stderr: str


def skipped_run(source_id: str, reason: str) -> SourceRun:
    return SourceRun(source_id=source_id, status="skipped", contributed_count=0, duration_seconds=0.0, error=reason)


def parse_reported_count(source: SourceSpec, output: str) -> int | None:
    """Read the count a source reports about itself, or ``None`` when it did not.

    The structured ``HARVESTER_RESULT {"saved": n}`` line wins over the source's
    legacy free-text marker.
    """
    structured = RESULT_LINE_RE.findall(output)
    if structured:
        try:
            payload = json.loads(structured[-1])
            saved = payload.get("saved") if isinstance(payload, dict) else None
            if isinstance(saved, int) and not isinstance(saved, bool) and saved >= 0:
                return saved
        except json.JSONDecodeError:
            logger.debug("unparseable result line from source=%s", source.source_id)

    if source.count_pattern is None:
        return None
    match = source.count_pattern.search(output)
    if match is None:
        return None
    try:
        return max(0, int(match.group(source.count_group)))
    except (IndexError, TypeError, ValueError):
        return None


def _tail(*chunks: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    combined = "\n".join(chunk.strip() for chunk in chunks if chunk and chunk.strip())
    return combined[-limit:]


class SourceTaskAdapter:
    def __init__(
        self,
        store: JobStore,
        *,
        workdir: str | None = None,
        base_env: Mapping[str, str] | None = None,
        preflight: Callable[..., Awaitable[int]] = probe_source,
        preflight_attempts: int = 3,
        preflight_base_delay_seconds: float = 1.0,
        preflight_timeout_seconds: float = 10.0,
    ) -> None:
        self.store = store
        self.workdir = workdir
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.preflight = preflight
        self.preflight_attempts = preflight_attempts
        self.preflight_base_delay_seconds = preflight_base_delay_seconds
        self.preflight_timeout_seconds = preflight_timeout_seconds

    async def run(self, source: SourceSpec, config: SourceConfig, timeout: float | None = None) -> SourceRun:
        """Invoke one source; every outcome is returned as a ``SourceRun``, never raised."""
        timeout_seconds = timeout if timeout is not None else source.timeout_seconds
        started_at = time.monotonic()
        with tracer.start_as_current_span("harvester.source") as span:
            span.set_attribute("source.id", source.source_id)
            span.set_attribute("source.timeout_seconds", timeout_seconds)
            result = await self._run(source, config, timeout_seconds, started_at)
            span.set_attribute("source.status", result.status)
            span.set_attribute("source.contributed_count", result.contributed_count)
        self._log_result(result)
        return result

    async def _run(
        self,
        source: SourceSpec,
        config: SourceConfig,
        timeout_seconds: float,
        started_at: float,
    ) -> SourceRun:
        def elapsed() -> float:
            return time.monotonic() - started_at

        if source.preflight_url:
            try:
                await self.preflight(
                    source.preflight_url,
                    timeout_seconds=self.preflight_timeout_seconds,
                    attempts=self.preflight_attempts,
                    base_delay_seconds=self.preflight_base_delay_seconds,
                )
            except PreflightError as exc:
                return SourceRun(
                    source_id=source.source_id,
                    status="failure",
                    contributed_count=0,
                    duration_seconds=elapsed(),
                    error=f"preflight_failed: {exc}",
                )

        try:
            output = await self._execute(source, config, timeout_seconds)
        except asyncio.TimeoutError:
            return SourceRun(
                source_id=source.source_id,
                status="timeout",
                contributed_count=0,
                duration_seconds=elapsed(),
                error=f"timed out after {timeout_seconds:.0f}s",
            )
        except (FileNotFoundError, PermissionError) as exc:
            return SourceRun(
                source_id=source.source_id,
                status="failure",
                contributed_count=0,
                duration_seconds=elapsed(),
                error=f"command_not_found: {exc}",
            )
        except Exception as exc:
            logger.exception("source invocation crashed source=%s", source.source_id)
            return SourceRun(
                source_id=source.source_id,
                status="failure",
                contributed_count=0,
                duration_seconds=elapsed(),
                error=f"{exc.__class__.__name__}: {exc}",
            )

        output_tail = _tail(output.stdout, output.stderr)
        if output.exit_code != 0:
            return SourceRun(
                source_id=source.source_id,
                status="failure",
                contributed_count=0,
                duration_seconds=elapsed(),
                exit_code=output.exit_code,
                output_tail=output_tail,
                error=f"exit code {output.exit_code}",
            )

        count = parse_reported_count(source, output.stdout)
        origin: CountOrigin = "reported"
        if count is None:
            count, origin = await self._fallback_count(source)

        return SourceRun(
            source_id=source.source_id,
            status="success",
            contributed_count=count,
            duration_seconds=elapsed(),
            count_origin=origin,
            exit_code=0,
            output_tail=output_tail,
        )

    async def _execute(self, source: SourceSpec, config: SourceConfig, timeout_seconds: float) -> ProcessOutput:
        env = {
            **self.base_env,
            **source.env,
            **config.to_env(),
            "HARVESTER_SOURCE_ID": source.source_id,
        }
        process = await asyncio.create_subprocess_exec(
            *source.command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.workdir,
            env=env,
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
        except BaseException:
            # Timeout or cancellation: the whole process group is abandoned.
            await kill_process_group(process)
            raise

        return ProcessOutput(
            exit_code=int(process.returncode if process.returncode is not None else -1),
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def _fallback_count(self, source: SourceSpec) -> tuple[int, CountOrigin]:
        since = datetime.now(timezone.utc) - timedelta(seconds=source.fallback_window_seconds)
        try:
            count = await self.store.count_source_jobs_since(source.source_id, since)
        except RepositoryError as exc:
            logger.warning("store fallback count failed source=%s: %s", source.source_id, exc)
            return 0, "none"
        logger.info(
            "source=%s reported no count; store fallback counted %s jobs in last %.0fs",
            source.source_id,
            count,
            source.fallback_window_seconds,
        )
        return count, "store_fallback"

    @staticmethod
    def _log_result(result: SourceRun) -> None:
        if result.status == "success":
            logger.info(
                "source finished source=%s status=success count=%s origin=%s duration_s=%.1f",
                result.source_id,
                result.contributed_count,
                result.count_origin,
                result.duration_seconds,
            )
            return
        logger.warning(
            "source finished source=%s status=%s duration_s=%.1f error=%s output_tail=%r",
            result.source_id,
            result.status,
            result.duration_seconds,
            result.error,
            result.output_tail[-500:],
        )


async def kill_process_group(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            with contextlib.suppress(ProcessLookupError):
                process.kill()
    with contextlib.suppress(ProcessLookupError):
        await process.wait()
