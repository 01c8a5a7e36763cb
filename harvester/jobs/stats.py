from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType

from harvester.services.repository import JobStore, RepositoryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CycleStats:
    total_unique_fingerprints: int = 0
    per_source_counts: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))

    def count_for(self, source_id: str) -> int:
        return int(self.per_source_counts.get(source_id, 0))

    def as_dict(self) -> dict[str, object]:
        return {
            "total_unique_fingerprints": self.total_unique_fingerprints,
            "per_source_counts": dict(self.per_source_counts),
        }


EMPTY_STATS = CycleStats()


def summarize_fingerprints(rows: Iterable[tuple[str, str]]) -> CycleStats:
    """Count distinct fingerprints, crediting each to the first source it appears under."""
    credited: dict[str, str] = {}
    for fingerprint, source in rows:
        if fingerprint not in credited:
            credited[fingerprint] = source

    per_source: dict[str, int] = {}
    for source in credited.values():
        per_source[source] = per_source.get(source, 0) + 1
    return CycleStats(
        total_unique_fingerprints=len(credited),
        per_source_counts=MappingProxyType(per_source),
    )


class StatsCollector:
    def __init__(
        self,
        store: JobStore,
        *,
        cache_ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.cache_ttl_seconds = max(0.0, cache_ttl_seconds)
        self._clock = clock
        self._cache: dict[datetime, tuple[float, CycleStats]] = {}

    async def collect(self, since: datetime) -> CycleStats:
        now = self._clock()
        cached = self._cache.get(since)
        if cached is not None and now - cached[0] < self.cache_ttl_seconds:
            return cached[1]

        try:
            rows = await self.store.fetch_fingerprints_since(since)
        except RepositoryError as exc:
            logger.warning("cycle stats query failed since=%s: %s; treating as no progress", since.isoformat(), exc)
            return EMPTY_STATS

        stats = summarize_fingerprints(rows)
        self._evict_expired(now)
        self._cache[since] = (now, stats)
        return stats

    def invalidate(self) -> None:
        self._cache.clear()

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, (stored_at, _) in self._cache.items() if now - stored_at >= self.cache_ttl_seconds]
        for key in expired:
            del self._cache[key]
