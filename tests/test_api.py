from __future__ import annotations

import asyncio
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from harvester.core.config import Settings
from harvester.core.sources import SourceCatalog, SourceConfig, SourceSpec, Wave
from harvester.jobs.adapter import SourceRun
from harvester.jobs.orchestrator import CycleReport
from harvester.jobs.stats import EMPTY_STATS
from harvester.server import app
from harvester.services.runtime import HarvesterRuntime, build_runtime, get_runtime
from harvester.services.store import InMemoryStore


@pytest.fixture
def runtime() -> Iterator[HarvesterRuntime]:
    runtime = build_runtime(
        Settings(lifecycle_enabled=False),
        store=InMemoryStore(),
        catalog=SourceCatalog(sources={}, waves=()),
    )
    app.dependency_overrides[get_runtime] = lambda: runtime
    yield runtime
    app.dependency_overrides.clear()


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["service"] == "job-harvester"
    assert body["uptime_seconds"] >= 0


def test_status_before_any_cycle(runtime: HarvesterRuntime) -> None:
    response = TestClient(app).get("/status")

    assert response.status_code == 200
    body = response.json()
    assert body["cycle_running"] is False
    assert body["run_count"] == 0
    assert body["last_report"] is None


def test_status_includes_last_report(runtime: HarvesterRuntime) -> None:
    started = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    runtime.ledger.record(
        CycleReport(
            cycle_id="abc123",
            trigger="schedule",
            started_at=started,
            finished_at=started + timedelta(minutes=4),
            global_target=500,
            stats=EMPTY_STATS,
            runs=(),
            completed_waves=("fast",),
            skipped_waves=("critical", "long-tail"),
            stopped_on_quota=True,
        )
    )

    body = TestClient(app).get("/status").json()

    assert body["run_count"] == 1
    assert body["last_report"]["cycle_id"] == "abc123"
    assert body["last_report"]["skipped_waves"] == ["critical", "long-tail"]
    assert body["last_report"]["duration_seconds"] == 240.0


def test_database_stats_reports_totals_and_health(runtime: HarvesterRuntime) -> None:
    store = runtime.store
    assert isinstance(store, InMemoryStore)
    store.add_job("fp-1", "reed")
    store.add_job("fp-2", "adzuna")

    body = TestClient(app).get("/stats/database").json()

    assert body["total_jobs"] == 2
    assert body["source_breakdown"] == {"reed": 1, "adzuna": 1}
    assert body["health"]["healthy"] is True


def test_trigger_rejected_while_cycle_running(runtime: HarvesterRuntime) -> None:
    runtime.orchestrator._running = True

    response = TestClient(app).post("/cycles")

    assert response.status_code == 409


def test_trigger_accepted_when_idle(runtime: HarvesterRuntime) -> None:
    response = TestClient(app).post("/cycles")

    assert response.status_code == 202
    assert response.json() == {"accepted": True, "trigger": "manual"}


def test_recent_cycles_empty(runtime: HarvesterRuntime) -> None:
    response = TestClient(app).get("/cycles/recent")

    assert response.status_code == 200
    assert response.json() == []


def test_concurrent_triggers_start_exactly_one_cycle() -> None:
    gate = asyncio.Event()

    class GatedAdapter:
        async def run(self, source: SourceSpec, config: SourceConfig, timeout: float | None = None) -> SourceRun:
            await asyncio.wait_for(gate.wait(), timeout=5.0)
            return SourceRun(source_id=source.source_id, status="success", contributed_count=0, duration_seconds=0.0)

    catalog = SourceCatalog(
        sources={"reed": SourceSpec(source_id="reed", command=("unused",), timeout_seconds=5.0)},
        waves=(Wave(wave_id="critical", source_ids=("reed",)),),
    )
    runtime = build_runtime(Settings(lifecycle_enabled=False), store=InMemoryStore(), catalog=catalog)
    runtime.orchestrator.adapter = GatedAdapter()  # type: ignore[assignment]
    app.dependency_overrides[get_runtime] = lambda: runtime

    async def run() -> list[int]:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://harvester") as client:
            responses = await asyncio.gather(client.post("/cycles"), client.post("/cycles"))
        gate.set()
        loop = asyncio.get_running_loop()
        await asyncio.gather(*(task for task in app.state.background_tasks if task.get_loop() is loop))
        return sorted(response.status_code for response in responses)

    try:
        assert asyncio.run(run()) == [202, 409]
    finally:
        app.dependency_overrides.clear()

    assert runtime.ledger.totals().run_count == 1
    assert not runtime.orchestrator.is_running
