from __future__ import annotations

import asyncio
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Protocol

import asyncpg  # type: ignore[import-untyped]

from harvester.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryQueryError(RepositoryError):
    """Raised when a query against the store fails."""


@dataclass(slots=True)
class JobTotals:
    total: int
    recent: int
    by_source: dict[str, int] = field(default_factory=dict)


class JobStore(Protocol):
    async def fetch_fingerprints_since(self, since: datetime) -> list[tuple[str, str]]: ...

    async def count_source_jobs_since(self, source: str, since: datetime) -> int: ...

    async def deactivate_stale_jobs(self, cutoff: datetime) -> int: ...

    async def select_purgeable_fingerprints(self, cutoff: datetime, limit: int) -> list[str]: ...

    async def delete_embedding_queue_entries(self, fingerprints: Sequence[str]) -> int: ...

    async def delete_matches(self, fingerprints: Sequence[str]) -> int: ...

    async def delete_jobs(self, fingerprints: Sequence[str]) -> int: ...

    async def latest_job_created_at(self) -> datetime | None: ...

    async def job_totals(self, recent_since: datetime) -> JobTotals: ...

    async def close(self) -> None: ...


_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*(\.[a-z_][a-z0-9_]*)?$")
# command_timeout surfaces as asyncio.TimeoutError, which is not an OSError before 3.11.
_QUERY_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


def _identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"invalid table name: {name!r}")
    return name


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 12" or "DELETE 3".
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        *,
        jobs_table: str = "jobs",
        embedding_queue_table: str = "embedding_queue",
        matches_table: str = "matches",
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.jobs_table = _identifier(jobs_table)
        self.embedding_queue_table = _identifier(embedding_queue_table)
        self.matches_table = _identifier(matches_table)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def fetch_fingerprints_since(self, since: datetime) -> list[tuple[str, str]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select fingerprint, source
                from {self.jobs_table}
                where created_at >= $1
                order by created_at asc
                """,
                since,
            )
        except _QUERY_ERRORS as exc:
            raise RepositoryQueryError("failed to fetch fingerprints") from exc
        return [(str(row["fingerprint"]), str(row["source"])) for row in rows]

    async def count_source_jobs_since(self, source: str, since: datetime) -> int:
        pool = await self._get_pool()
        try:
            value = await pool.fetchval(
                f"""
                select count(distinct fingerprint)
                from {self.jobs_table}
                where source = $1
                  and created_at >= $2
                """,
                source,
                since,
            )
        except _QUERY_ERRORS as exc:
            raise RepositoryQueryError(f"failed to count jobs for source={source}") from exc
        return int(value or 0)

    async def deactivate_stale_jobs(self, cutoff: datetime) -> int:
        pool = await self._get_pool()
        try:
            status = await pool.execute(
                f"""
                update {self.jobs_table}
                set is_active = false
                where is_active = true
                  and last_seen_at < $1
                """,
                cutoff,
            )
        except _QUERY_ERRORS as exc:
            raise RepositoryQueryError("failed to deactivate stale jobs") from exc
        return _affected_rows(status)

    async def select_purgeable_fingerprints(self, cutoff: datetime, limit: int) -> list[str]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select fingerprint
                from {self.jobs_table}
                where is_active = false
                  and last_seen_at < $1
                order by last_seen_at asc
                limit $2
                """,
                cutoff,
                max(1, limit),
            )
        except _QUERY_ERRORS as exc:
            raise RepositoryQueryError("failed to select purgeable jobs") from exc
        return [str(row["fingerprint"]) for row in rows]

    async def delete_embedding_queue_entries(self, fingerprints: Sequence[str]) -> int:
        return await self._delete_by_fingerprints(self.embedding_queue_table, fingerprints)

    async def delete_matches(self, fingerprints: Sequence[str]) -> int:
        return await self._delete_by_fingerprints(self.matches_table, fingerprints)

    async def delete_jobs(self, fingerprints: Sequence[str]) -> int:
        return await self._delete_by_fingerprints(self.jobs_table, fingerprints)

    async def latest_job_created_at(self) -> datetime | None:
        pool = await self._get_pool()
        try:
            return await pool.fetchval(f"select max(created_at) from {self.jobs_table}")
        except _QUERY_ERRORS as exc:
            raise RepositoryQueryError("failed to read latest job timestamp") from exc

    async def job_totals(self, recent_since: datetime) -> JobTotals:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select
                  source,
                  count(*) as total,
                  count(*) filter (where created_at >= $1) as recent
                from {self.jobs_table}
                group by source
                """,
                recent_since,
            )
        except _QUERY_ERRORS as exc:
            raise RepositoryQueryError("failed to read job totals") from exc

        by_source = {str(row["source"]): int(row["total"]) for row in rows}
        return JobTotals(
            total=sum(by_source.values()),
            recent=sum(int(row["recent"]) for row in rows),
            by_source=by_source,
        )

    async def _delete_by_fingerprints(self, table: str, fingerprints: Sequence[str]) -> int:
        if not fingerprints:
            return 0
        pool = await self._get_pool()
        try:
            status = await pool.execute(
                f"delete from {table} where fingerprint = any($1::text[])",
                list(fingerprints),
            )
        except _QUERY_ERRORS as exc:
            raise RepositoryQueryError(f"failed to delete from {table}") from exc
        return _affected_rows(status)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("HARVESTER_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=60,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        jobs_table=settings.jobs_table,
        embedding_queue_table=settings.embedding_queue_table,
        matches_table=settings.matches_table,
    )
