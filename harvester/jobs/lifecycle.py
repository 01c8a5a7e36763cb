from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from opentelemetry import trace

from harvester.services.repository import JobStore, RepositoryError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(frozen=True, slots=True)
class PurgeCounts:
    jobs: int = 0
    embedding_queue: int = 0
    matches: int = 0


@dataclass(frozen=True, slots=True)
class LifecycleOutcome:
    deactivated: int
    purged: int
    deactivate_failed: bool = False
    purge_failed: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LifecycleManager:
    def __init__(
        self,
        store: JobStore,
        *,
        freshness_ttl_days: int = 7,
        retention_days: int = 2,
        purge_batch_size: int = 500,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.freshness_ttl_days = max(1, freshness_ttl_days)
        self.retention_days = max(0, retention_days)
        self.purge_batch_size = max(1, purge_batch_size)
        self._now = now

    async def run(self) -> LifecycleOutcome:
        with tracer.start_as_current_span("harvester.lifecycle"):
            # Purge selects on is_active, so deactivation has to land first.
            deactivated, deactivate_failed = await self._deactivate()
            purged, purge_failed = await self._purge()
        return LifecycleOutcome(
            deactivated=deactivated,
            purged=purged,
            deactivate_failed=deactivate_failed,
            purge_failed=purge_failed,
        )

    async def deactivate(self, ttl_days: int | None = None) -> int:
        count, _ = await self._deactivate(ttl_days)
        return count

    async def purge(self, retention_days: int | None = None, batch_size: int | None = None) -> int:
        count, _ = await self._purge(retention_days, batch_size)
        return count

    async def _deactivate(self, ttl_days: int | None = None) -> tuple[int, bool]:
        days = self.freshness_ttl_days if ttl_days is None else max(1, ttl_days)
        cutoff = self._now() - timedelta(days=days)
        try:
            affected = await self.store.deactivate_stale_jobs(cutoff)
        except RepositoryError as exc:
            logger.error("lifecycle deactivate failed ttl_days=%s: %s", days, exc)
            return 0, True

        if affected:
            logger.info("lifecycle deactivated %s jobs not seen for %s days", affected, days)
        else:
            logger.info("lifecycle deactivate: nothing stale (ttl_days=%s)", days)
        return affected, False

    async def _purge(self, retention_days: int | None = None, batch_size: int | None = None) -> tuple[int, bool]:
        days = self.retention_days if retention_days is None else max(0, retention_days)
        limit = self.purge_batch_size if batch_size is None else max(1, batch_size)
        cutoff = self._now() - timedelta(days=days)
        try:
            fingerprints = await self.store.select_purgeable_fingerprints(cutoff, limit)
            if not fingerprints:
                logger.info("lifecycle purge: nothing inactive past %s days", days)
                return 0, False
            counts = await self._delete_cascade(fingerprints)
        except RepositoryError as exc:
            logger.error("lifecycle purge failed retention_days=%s: %s", days, exc)
            return 0, True

        logger.info(
            "lifecycle purged jobs=%s embedding_queue=%s matches=%s (retention_days=%s batch=%s)",
            counts.jobs,
            counts.embedding_queue,
            counts.matches,
            days,
            limit,
        )
        return counts.jobs, False

    async def _delete_cascade(self, fingerprints: list[str]) -> PurgeCounts:
        # Dependents before parents so an interrupted batch never leaves dangling rows.
        queue_removed = await self.store.delete_embedding_queue_entries(fingerprints)
        matches_removed = await self.store.delete_matches(fingerprints)
        jobs_removed = await self.store.delete_jobs(fingerprints)
        return PurgeCounts(jobs=jobs_removed, embedding_queue=queue_removed, matches=matches_removed)
