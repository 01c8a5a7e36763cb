from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from harvester.jobs.orchestrator import CycleReport


class SourceRunOut(BaseModel):
    source_id: str
    status: str
    contributed_count: int
    duration_seconds: float
    count_origin: str
    exit_code: int | None = None
    error: str | None = None


class LifecycleOut(BaseModel):
    deactivated: int
    purged: int
    deactivate_failed: bool
    purge_failed: bool


class CycleReportOut(BaseModel):
    cycle_id: str
    trigger: str
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    global_target: int
    total_contributed: int
    total_unique_fingerprints: int
    per_source_counts: dict[str, int] = Field(default_factory=dict)
    completed_waves: list[str] = Field(default_factory=list)
    skipped_waves: list[str] = Field(default_factory=list)
    stopped_on_quota: bool
    embedding_refresh_triggered: bool
    lifecycle: LifecycleOut | None = None
    runs: list[SourceRunOut] = Field(default_factory=list)
    error: str | None = None

    @classmethod
    def from_report(cls, report: CycleReport) -> "CycleReportOut":
        lifecycle = None
        if report.lifecycle is not None:
            lifecycle = LifecycleOut(
                deactivated=report.lifecycle.deactivated,
                purged=report.lifecycle.purged,
                deactivate_failed=report.lifecycle.deactivate_failed,
                purge_failed=report.lifecycle.purge_failed,
            )
        return cls(
            cycle_id=report.cycle_id,
            trigger=report.trigger,
            started_at=report.started_at,
            finished_at=report.finished_at,
            duration_seconds=round(report.duration_seconds, 3),
            global_target=report.global_target,
            total_contributed=report.total_contributed,
            total_unique_fingerprints=report.stats.total_unique_fingerprints,
            per_source_counts=dict(report.stats.per_source_counts),
            completed_waves=list(report.completed_waves),
            skipped_waves=list(report.skipped_waves),
            stopped_on_quota=report.stopped_on_quota,
            embedding_refresh_triggered=report.embedding_refresh_triggered,
            lifecycle=lifecycle,
            runs=[
                SourceRunOut(
                    source_id=run.source_id,
                    status=run.status,
                    contributed_count=run.contributed_count,
                    duration_seconds=round(run.duration_seconds, 3),
                    count_origin=run.count_origin,
                    exit_code=run.exit_code,
                    error=run.error,
                )
                for run in report.runs
            ],
            error=report.error,
        )


class StatusOut(BaseModel):
    cycle_running: bool
    embedding_refresh_running: bool
    run_count: int
    failed_runs: int
    total_contributed: int
    last_run_at: datetime | None = None
    last_report: CycleReportOut | None = None


class StoreHealthOut(BaseModel):
    healthy: bool
    reason: str
    last_job_at: datetime | None = None
    hours_since_last_job: float | None = None


class DatabaseStatsOut(BaseModel):
    total_jobs: int
    recent_jobs: int
    source_breakdown: dict[str, int] = Field(default_factory=dict)
    health: StoreHealthOut


class CycleTriggerOut(BaseModel):
    accepted: bool
    trigger: str
