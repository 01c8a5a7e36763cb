from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

from opentelemetry import trace

from harvester.core.sources import SourceCatalog, SourceConfig, SourceSpec, Wave
from harvester.jobs.adapter import SourceRun, SourceTaskAdapter, skipped_run
from harvester.jobs.embeddings import EmbeddingRefreshScheduler
from harvester.jobs.lifecycle import LifecycleManager, LifecycleOutcome
from harvester.jobs.quota import QuotaManager
from harvester.jobs.stats import EMPTY_STATS, CycleStats, StatsCollector

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class OrchestratorFault(Exception):
    """Unexpected failure in cycle control flow (not in a source task)."""


@dataclass(slots=True)
class Cycle:
    cycle_id: str
    started_at: datetime
    global_target: int
    trigger: str
    stats: CycleStats = EMPTY_STATS
    runs: list[SourceRun] = field(default_factory=list)
    completed_waves: list[str] = field(default_factory=list)
    skipped_waves: list[str] = field(default_factory=list)
    stopped_on_quota: bool = False


@dataclass(frozen=True, slots=True)
class CycleReport:
    cycle_id: str
    trigger: str
    started_at: datetime
    finished_at: datetime
    global_target: int
    stats: CycleStats
    runs: tuple[SourceRun, ...]
    completed_waves: tuple[str, ...]
    skipped_waves: tuple[str, ...]
    stopped_on_quota: bool
    lifecycle: LifecycleOutcome | None = None
    embedding_refresh_triggered: bool = False
    error: str | None = None

    @property
    def total_contributed(self) -> int:
        return sum(run.contributed_count for run in self.runs)

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def runs_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for run in self.runs:
            counts[run.status] = counts.get(run.status, 0) + 1
        return counts


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CycleOrchestrator:
    def __init__(
        self,
        catalog: SourceCatalog,
        adapter: SourceTaskAdapter,
        stats_collector: StatsCollector,
        quota: QuotaManager,
        *,
        source_config: SourceConfig | None = None,
        lifecycle: LifecycleManager | None = None,
        embeddings: EmbeddingRefreshScheduler | None = None,
        max_concurrent_sources: int = 0,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.catalog = catalog
        self.adapter = adapter
        self.stats_collector = stats_collector
        self.quota = quota
        self.source_config = source_config or SourceConfig()
        self.lifecycle = lifecycle
        self.embeddings = embeddings
        self.max_concurrent_sources = max(0, max_concurrent_sources)
        self._now = now
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def try_claim(self) -> bool:
        """Take the cycle flag without awaiting; pair with ``run_cycle(claimed=True)``."""
        if self._running:
            return False
        self._running = True
        return True

    async def run_cycle(self, trigger: str = "scheduled", *, claimed: bool = False) -> CycleReport | None:
        """Run every wave once; returns ``None`` when a cycle is already in progress."""
        if not claimed and not self.try_claim():
            logger.info("scraping cycle already running; skipping trigger=%s", trigger)
            return None

        cycle = Cycle(
            cycle_id=uuid4().hex[:12],
            started_at=self._now(),
            global_target=self.quota.global_target,
            trigger=trigger,
        )
        try:
            with tracer.start_as_current_span("harvester.cycle") as span:
                span.set_attribute("cycle.id", cycle.cycle_id)
                span.set_attribute("cycle.trigger", trigger)
                span.set_attribute("cycle.global_target", cycle.global_target)
                report = await self._run(cycle)
                span.set_attribute("cycle.total_contributed", report.total_contributed)
                span.set_attribute("cycle.stopped_on_quota", report.stopped_on_quota)
            return report
        except Exception as exc:
            fault = OrchestratorFault(f"cycle {cycle.cycle_id} aborted: {exc.__class__.__name__}: {exc}")
            fault.__cause__ = exc
            logger.exception("%s", fault)
            return self._report(cycle, error=str(fault))
        finally:
            self._running = False

    async def _run(self, cycle: Cycle) -> CycleReport:
        self.stats_collector.invalidate()
        logger.info(
            "cycle started id=%s trigger=%s waves=%s global_target=%s",
            cycle.cycle_id,
            cycle.trigger,
            len(self.catalog.waves),
            cycle.global_target or "unlimited",
        )
        for wave in self.catalog.waves:
            if cycle.stopped_on_quota:
                cycle.skipped_waves.append(wave.wave_id)
                logger.info("wave=%s skipped due to quota cycle=%s", wave.wave_id, cycle.cycle_id)
                continue
            await self._run_wave(cycle, wave)
            cycle.completed_waves.append(wave.wave_id)

            cycle.stats = await self.stats_collector.collect(cycle.started_at)
            remaining = self.quota.remaining(cycle.stats)
            logger.info(
                "wave=%s done cycle=%s unique_jobs=%s remaining=%s per_source=%s",
                wave.wave_id,
                cycle.cycle_id,
                cycle.stats.total_unique_fingerprints,
                "unlimited" if remaining is None else remaining,
                dict(cycle.stats.per_source_counts),
            )
            if self.quota.should_stop_cycle(cycle.stats):
                cycle.stopped_on_quota = True
                logger.info(
                    "cycle target reached cycle=%s unique_jobs=%s target=%s",
                    cycle.cycle_id,
                    cycle.stats.total_unique_fingerprints,
                    cycle.global_target,
                )

        return await self._finalize(cycle)

    async def _run_wave(self, cycle: Cycle, wave: Wave) -> None:
        runnable: list[SourceSpec] = []
        for source_id in wave.source_ids:
            source = self.catalog.get(source_id)
            if not source.enabled:
                cycle.runs.append(skipped_run(source_id, "disabled"))
                logger.info("source=%s disabled; not dispatched in wave=%s", source_id, wave.wave_id)
            elif self.quota.has_source_reached_target(cycle.stats, source_id):
                cycle.runs.append(skipped_run(source_id, "source_target_reached"))
                logger.info(
                    "source=%s reached its target (%s); not dispatched in wave=%s",
                    source_id,
                    self.quota.source_targets.get(source_id),
                    wave.wave_id,
                )
            else:
                runnable.append(source)

        if not runnable:
            logger.info("wave=%s has no runnable sources cycle=%s", wave.wave_id, cycle.cycle_id)
            return

        semaphore = asyncio.Semaphore(self.max_concurrent_sources) if self.max_concurrent_sources else None

        async def dispatch(source: SourceSpec) -> SourceRun:
            if semaphore is None:
                return await self.adapter.run(source, self.source_config, source.timeout_seconds)
            async with semaphore:
                return await self.adapter.run(source, self.source_config, source.timeout_seconds)

        with tracer.start_as_current_span("harvester.wave") as span:
            span.set_attribute("wave.id", wave.wave_id)
            span.set_attribute("wave.sources", [source.source_id for source in runnable])
            logger.info(
                "wave=%s dispatching sources=%s cycle=%s",
                wave.wave_id,
                ",".join(source.source_id for source in runnable),
                cycle.cycle_id,
            )
            results = await asyncio.gather(*(dispatch(source) for source in runnable), return_exceptions=True)

        for source, result in zip(runnable, results):
            if isinstance(result, BaseException):
                logger.error("source=%s escaped the adapter: %r", source.source_id, result)
                result = SourceRun(
                    source_id=source.source_id,
                    status="failure",
                    contributed_count=0,
                    duration_seconds=0.0,
                    error=f"{result.__class__.__name__}: {result}",
                )
            cycle.runs.append(result)

    async def _finalize(self, cycle: Cycle) -> CycleReport:
        lifecycle_outcome = None
        if self.lifecycle is not None:
            lifecycle_outcome = await self.lifecycle.run()

        refresh_triggered = False
        if self.embeddings is not None:
            refresh_triggered = self.embeddings.trigger(reason=f"cycle:{cycle.cycle_id}")

        report = self._report(cycle, lifecycle=lifecycle_outcome, embedding_refresh_triggered=refresh_triggered)
        logger.info(
            "cycle complete id=%s duration_s=%.1f contributed=%s unique_jobs=%s runs=%s skipped_waves=%s",
            report.cycle_id,
            report.duration_seconds,
            report.total_contributed,
            report.stats.total_unique_fingerprints,
            report.runs_by_status(),
            ",".join(report.skipped_waves) or "none",
        )
        return report

    def _report(
        self,
        cycle: Cycle,
        *,
        lifecycle: LifecycleOutcome | None = None,
        embedding_refresh_triggered: bool = False,
        error: str | None = None,
    ) -> CycleReport:
        return CycleReport(
            cycle_id=cycle.cycle_id,
            trigger=cycle.trigger,
            started_at=cycle.started_at,
            finished_at=self._now(),
            global_target=cycle.global_target,
            stats=cycle.stats,
            runs=tuple(cycle.runs),
            completed_waves=tuple(cycle.completed_waves),
            skipped_waves=tuple(cycle.skipped_waves),
            stopped_on_quota=cycle.stopped_on_quota,
            lifecycle=lifecycle,
            embedding_refresh_triggered=embedding_refresh_triggered,
            error=error,
        )
