from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from harvester.jobs.stats import StatsCollector, summarize_fingerprints
from harvester.services.store import InMemoryStore


class FakeClock:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


def test_summarize_counts_distinct_fingerprints_and_credits_first_source() -> None:
    stats = summarize_fingerprints(
        [
            ("fp-1", "adzuna"),
            ("fp-2", "adzuna"),
            ("fp-1", "reed"),
            ("fp-3", "reed"),
            ("fp-3", "reed"),
        ]
    )

    assert stats.total_unique_fingerprints == 3
    assert dict(stats.per_source_counts) == {"adzuna": 2, "reed": 1}
    assert sum(stats.per_source_counts.values()) == stats.total_unique_fingerprints


def test_collect_only_counts_rows_created_since_cycle_start() -> None:
    store = InMemoryStore()
    since = datetime.now(timezone.utc)
    store.add_job("old", "reed", created_at=since - timedelta(minutes=1))
    store.add_job("new-1", "reed", created_at=since)
    store.add_job("new-2", "adzuna", created_at=since + timedelta(seconds=5))

    stats = asyncio.run(StatsCollector(store).collect(since))

    assert stats.total_unique_fingerprints == 2
    assert dict(stats.per_source_counts) == {"reed": 1, "adzuna": 1}


def test_collect_returns_cached_result_within_ttl() -> None:
    store = InMemoryStore()
    clock = FakeClock()
    since = datetime.now(timezone.utc) - timedelta(seconds=1)
    store.add_job("fp-1", "reed")
    collector = StatsCollector(store, cache_ttl_seconds=30.0, clock=clock)

    async def run() -> tuple[object, object]:
        first = await collector.collect(since)
        store.add_job("fp-2", "reed")
        clock.value += 10.0
        second = await collector.collect(since)
        return first, second

    first, second = asyncio.run(run())

    assert first is second
    assert store.query_count == 1


def test_collect_requeries_after_ttl_expires() -> None:
    store = InMemoryStore()
    clock = FakeClock()
    since = datetime.now(timezone.utc) - timedelta(seconds=1)
    store.add_job("fp-1", "reed")
    collector = StatsCollector(store, cache_ttl_seconds=30.0, clock=clock)

    async def run() -> tuple[int, int]:
        first = await collector.collect(since)
        store.add_job("fp-2", "adzuna")
        clock.value += 31.0
        second = await collector.collect(since)
        return first.total_unique_fingerprints, second.total_unique_fingerprints

    assert asyncio.run(run()) == (1, 2)
    assert store.query_count == 2


def test_collect_returns_zero_stats_on_store_failure_and_does_not_cache_it() -> None:
    store = InMemoryStore()
    since = datetime.now(timezone.utc) - timedelta(seconds=1)
    store.add_job("fp-1", "reed")
    collector = StatsCollector(store, cache_ttl_seconds=30.0, clock=FakeClock())

    async def run() -> tuple[int, int]:
        store.fail_queries = True
        failed = await collector.collect(since)
        store.fail_queries = False
        recovered = await collector.collect(since)
        return failed.total_unique_fingerprints, recovered.total_unique_fingerprints

    assert asyncio.run(run()) == (0, 1)


def test_invalidate_drops_cached_entries() -> None:
    store = InMemoryStore()
    since = datetime.now(timezone.utc) - timedelta(seconds=1)
    collector = StatsCollector(store, cache_ttl_seconds=30.0, clock=FakeClock())

    async def run() -> int:
        await collector.collect(since)
        store.add_job("fp-1", "reed")
        collector.invalidate()
        return (await collector.collect(since)).total_unique_fingerprints

    assert asyncio.run(run()) == 1
