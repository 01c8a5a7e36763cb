from __future__ import annotations

import argparse
import asyncio
import logging
import random
import sys
import time

from opentelemetry import trace

from harvester.core.config import Settings, get_settings
from harvester.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from harvester.services.runtime import HarvesterRuntime, get_runtime

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_loop(runtime: HarvesterRuntime, settings: Settings, stop: asyncio.Event | None = None) -> None:
    """Run cycles on start and on a fixed interval; refresh embeddings on their own interval."""
    stop = stop or asyncio.Event()
    backoff = settings.poll_interval_seconds
    started = time.monotonic()
    last_cycle_at = float("-inf") if settings.run_on_start else started
    last_refresh_at = started

    while not stop.is_set():
        try:
            with tracer.start_as_current_span("harvester.poll"):
                now = time.monotonic()
                if now - last_cycle_at >= settings.cycle_interval_seconds:
                    trigger = "startup" if last_cycle_at == float("-inf") else "schedule"
                    last_cycle_at = now
                    await runtime.run_and_record(trigger)

                if now - last_refresh_at >= settings.embedding_refresh_interval_seconds:
                    last_refresh_at = now
                    runtime.embeddings.trigger(reason="schedule")

            backoff = settings.poll_interval_seconds
            await _sleep_until_stopped(stop, settings.poll_interval_seconds)
        except Exception as exc:  # pragma: no cover - loop robustness
            jitter = random.uniform(0.0, 0.5)
            sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
            logger.exception("harvester loop iteration failed: %s; retry in %.1fs", exc, sleep_for)
            await _sleep_until_stopped(stop, sleep_for)
            backoff = sleep_for


async def run_once(runtime: HarvesterRuntime) -> int:
    report = await runtime.run_and_record("once")
    await runtime.embeddings.wait_idle()
    if report is None or report.error is not None:
        return 1
    logger.info("single cycle completed contributed=%s", report.total_contributed)
    return 0


async def _sleep_until_stopped(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return


async def _main(once: bool) -> int:
    settings = get_settings()
    once = once or settings.single_run
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings)
    runtime = get_runtime()
    try:
        if once:
            return await run_once(runtime)
        await run_loop(runtime, settings)
        return 0
    finally:
        await runtime.close()
        shutdown_telemetry(telemetry_runtime)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run job-source scraping cycles.")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit (batch/CI mode)")
    args = parser.parse_args(argv)
    return asyncio.run(_main(once=args.once))


if __name__ == "__main__":
    sys.exit(main())
