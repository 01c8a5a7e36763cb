from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from harvester.services.repository import JobStore, RepositoryError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StoreHealth:
    healthy: bool
    reason: str
    last_job_at: datetime | None = None
    hours_since_last_job: float | None = None


@dataclass(slots=True)
class DatabaseStats:
    total_jobs: int = 0
    recent_jobs: int = 0
    source_breakdown: dict[str, int] = field(default_factory=dict)


async def check_store_health(
    store: JobStore,
    *,
    max_silence_hours: float = 24.0,
    now: datetime | None = None,
) -> StoreHealth:
    current = now or datetime.now(timezone.utc)
    try:
        last_job_at = await store.latest_job_created_at()
    except RepositoryError as exc:
        logger.error("store health check failed: %s", exc)
        return StoreHealth(healthy=False, reason="store_query_failed")

    if last_job_at is None:
        logger.error("ALERT: no jobs in store")
        return StoreHealth(healthy=False, reason="no_jobs")

    if last_job_at.tzinfo is None:
        last_job_at = last_job_at.replace(tzinfo=timezone.utc)
    hours = max(0.0, (current - last_job_at).total_seconds() / 3600.0)
    if hours > max_silence_hours:
        logger.error("ALERT: no jobs ingested in %.0f hours", hours)
        return StoreHealth(
            healthy=False,
            reason="ingestion_stalled",
            last_job_at=last_job_at,
            hours_since_last_job=round(hours, 2),
        )

    logger.info("store healthy: last job %.1f hours ago", hours)
    return StoreHealth(healthy=True, reason="ok", last_job_at=last_job_at, hours_since_last_job=round(hours, 2))


async def database_stats(store: JobStore, *, now: datetime | None = None) -> DatabaseStats:
    current = now or datetime.now(timezone.utc)
    try:
        totals = await store.job_totals(current - timedelta(hours=24))
    except RepositoryError as exc:
        logger.error("database stats failed: %s", exc)
        return DatabaseStats()
    return DatabaseStats(total_jobs=totals.total, recent_jobs=totals.recent, source_breakdown=dict(totals.by_source))
