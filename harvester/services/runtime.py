from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from harvester.core.config import Settings, get_settings
from harvester.core.sources import SourceCatalog, build_catalog, parse_command, source_config_from_settings
from harvester.jobs.adapter import SourceTaskAdapter
from harvester.jobs.embeddings import EmbeddingRefreshScheduler
from harvester.jobs.health import check_store_health, database_stats
from harvester.jobs.lifecycle import LifecycleManager
from harvester.jobs.orchestrator import CycleOrchestrator, CycleReport
from harvester.jobs.quota import QuotaManager
from harvester.jobs.stats import StatsCollector
from harvester.services.ledger import CycleLedger
from harvester.services.repository import JobStore, get_repository
from harvester.services.store import InMemoryStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HarvesterRuntime:
    settings: Settings
    store: JobStore
    orchestrator: CycleOrchestrator
    embeddings: EmbeddingRefreshScheduler
    ledger: CycleLedger

    async def run_and_record(self, trigger: str, *, claimed: bool = False) -> CycleReport | None:
        report = await self.orchestrator.run_cycle(trigger=trigger, claimed=claimed)
        if report is None:
            return None
        self.ledger.record(report)
        await check_store_health(self.store, max_silence_hours=self.settings.store_health_max_silence_hours)
        stats = await database_stats(self.store)
        totals = self.ledger.totals()
        logger.info(
            "store totals jobs=%s recent_24h=%s sources=%s ledger_runs=%s ledger_contributed=%s",
            stats.total_jobs,
            stats.recent_jobs,
            stats.source_breakdown,
            totals.run_count,
            totals.total_contributed,
        )
        return report

    async def close(self) -> None:
        await self.embeddings.wait_idle()
        await self.store.close()


def build_runtime(
    settings: Settings,
    *,
    store: JobStore | None = None,
    catalog: SourceCatalog | None = None,
) -> HarvesterRuntime:
    if store is None:
        if settings.database_url:
            store = get_repository()
        else:
            logger.warning("HARVESTER_DATABASE_URL not set; using in-memory store (counts will read zero)")
            store = InMemoryStore()

    embeddings = EmbeddingRefreshScheduler(
        parse_command(settings.embedding_refresh_command) if settings.embedding_refresh_command else None,
        timeout_seconds=settings.embedding_refresh_timeout_seconds,
        workdir=settings.source_workdir,
    )
    lifecycle = None
    if settings.lifecycle_enabled:
        lifecycle = LifecycleManager(
            store,
            freshness_ttl_days=settings.freshness_ttl_days,
            retention_days=settings.inactive_retention_days,
            purge_batch_size=settings.purge_batch_size,
        )
    orchestrator = CycleOrchestrator(
        catalog or build_catalog(settings),
        SourceTaskAdapter(
            store,
            workdir=settings.source_workdir,
            preflight_attempts=settings.preflight_attempts,
            preflight_base_delay_seconds=settings.preflight_base_delay_seconds,
            preflight_timeout_seconds=settings.preflight_timeout_seconds,
        ),
        StatsCollector(store, cache_ttl_seconds=settings.stats_cache_ttl_seconds),
        QuotaManager(settings.cycle_job_target, settings.source_job_targets),
        source_config=source_config_from_settings(settings),
        lifecycle=lifecycle,
        embeddings=embeddings,
        max_concurrent_sources=settings.max_concurrent_sources,
    )
    return HarvesterRuntime(
        settings=settings,
        store=store,
        orchestrator=orchestrator,
        embeddings=embeddings,
        ledger=CycleLedger(),
    )


@lru_cache
def get_runtime() -> HarvesterRuntime:
    return build_runtime(get_settings())
