from fastapi import APIRouter, Depends

from harvester.jobs.health import check_store_health, database_stats
from harvester.schemas.status import CycleReportOut, DatabaseStatsOut, StatusOut, StoreHealthOut
from harvester.services.runtime import HarvesterRuntime, get_runtime

router = APIRouter()


@router.get("/status", response_model=StatusOut)
async def get_status(runtime: HarvesterRuntime = Depends(get_runtime)) -> StatusOut:
    totals = runtime.ledger.totals()
    last_report = runtime.ledger.last_report
    return StatusOut(
        cycle_running=runtime.orchestrator.is_running,
        embedding_refresh_running=runtime.embeddings.is_running,
        run_count=totals.run_count,
        failed_runs=totals.failed_runs,
        total_contributed=totals.total_contributed,
        last_run_at=totals.last_run_at,
        last_report=CycleReportOut.from_report(last_report) if last_report is not None else None,
    )


@router.get("/stats/database", response_model=DatabaseStatsOut)
async def get_database_stats(runtime: HarvesterRuntime = Depends(get_runtime)) -> DatabaseStatsOut:
    stats = await database_stats(runtime.store)
    health = await check_store_health(
        runtime.store,
        max_silence_hours=runtime.settings.store_health_max_silence_hours,
    )
    return DatabaseStatsOut(
        total_jobs=stats.total_jobs,
        recent_jobs=stats.recent_jobs,
        source_breakdown=stats.source_breakdown,
        health=StoreHealthOut(
            healthy=health.healthy,
            reason=health.reason,
            last_job_at=health.last_job_at,
            hours_since_last_job=health.hours_since_last_job,
        ),
    )
