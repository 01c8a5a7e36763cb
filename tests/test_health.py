from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from harvester.jobs.health import check_store_health, database_stats
from harvester.services.store import InMemoryStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_empty_store_is_unhealthy() -> None:
    health = asyncio.run(check_store_health(InMemoryStore(), now=NOW))

    assert not health.healthy
    assert health.reason == "no_jobs"


def test_recent_ingestion_is_healthy() -> None:
    store = InMemoryStore()
    store.add_job("fp-1", "reed", created_at=NOW - timedelta(hours=3))

    health = asyncio.run(check_store_health(store, now=NOW))

    assert health.healthy
    assert health.hours_since_last_job == 3.0


def test_silence_beyond_threshold_is_flagged() -> None:
    store = InMemoryStore()
    store.add_job("fp-1", "reed", created_at=NOW - timedelta(hours=30))

    health = asyncio.run(check_store_health(store, max_silence_hours=24, now=NOW))

    assert not health.healthy
    assert health.reason == "ingestion_stalled"
    assert health.last_job_at == NOW - timedelta(hours=30)


def test_store_failure_is_reported_not_raised() -> None:
    store = InMemoryStore()
    store.fail_queries = True

    health = asyncio.run(check_store_health(store, now=NOW))

    assert health.reason == "store_query_failed"


def test_database_stats_counts_totals_recent_and_sources() -> None:
    store = InMemoryStore()
    store.add_job("fp-1", "reed", created_at=NOW - timedelta(hours=2))
    store.add_job("fp-2", "reed", created_at=NOW - timedelta(days=3))
    store.add_job("fp-3", "adzuna", created_at=NOW - timedelta(hours=20))

    stats = asyncio.run(database_stats(store, now=NOW))

    assert stats.total_jobs == 3
    assert stats.recent_jobs == 2
    assert stats.source_breakdown == {"reed": 2, "adzuna": 1}


def test_database_stats_failure_returns_zeroes() -> None:
    store = InMemoryStore()
    store.add_job("fp-1", "reed")
    store.fail_queries = True

    stats = asyncio.run(database_stats(store, now=NOW))

    assert stats.total_jobs == 0
    assert stats.source_breakdown == {}
