from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from harvester.services.repository import JobTotals, RepositoryQueryError


@dataclass(slots=True)
class JobRow:
    fingerprint: str
    source: str
    created_at: datetime
    last_seen_at: datetime
    is_active: bool = True


class InMemoryStore:
    """Store with the repository contract, kept in process memory.

    Backs tests and local dry runs; source subprocesses cannot write to it.
    """

    def __init__(self) -> None:
        self.jobs: dict[str, JobRow] = {}
        self.embedding_queue: dict[str, datetime] = {}
        self.matches: list[dict[str, str]] = []
        self.query_count = 0
        self.fail_queries = False

    def add_job(
        self,
        fingerprint: str,
        source: str,
        *,
        created_at: datetime | None = None,
        last_seen_at: datetime | None = None,
        is_active: bool = True,
        enqueue_embedding: bool = True,
    ) -> JobRow:
        created = created_at or datetime.now(timezone.utc)
        existing = self.jobs.get(fingerprint)
        if existing is not None:
            # Re-observation refreshes last_seen_at only; the first source keeps credit.
            existing.last_seen_at = last_seen_at or created
            return existing
        row = JobRow(
            fingerprint=fingerprint,
            source=source,
            created_at=created,
            last_seen_at=last_seen_at or created,
            is_active=is_active,
        )
        self.jobs[fingerprint] = row
        if enqueue_embedding:
            self.embedding_queue[fingerprint] = created
        return row

    def add_match(self, fingerprint: str, user_email: str) -> None:
        self.matches.append({"fingerprint": fingerprint, "user_email": user_email})

    async def close(self) -> None:
        return None

    async def fetch_fingerprints_since(self, since: datetime) -> list[tuple[str, str]]:
        self._touch()
        rows = sorted((row for row in self.jobs.values() if row.created_at >= since), key=lambda row: row.created_at)
        return [(row.fingerprint, row.source) for row in rows]

    async def count_source_jobs_since(self, source: str, since: datetime) -> int:
        self._touch()
        return sum(1 for row in self.jobs.values() if row.source == source and row.created_at >= since)

    async def deactivate_stale_jobs(self, cutoff: datetime) -> int:
        self._touch()
        affected = 0
        for row in self.jobs.values():
            if row.is_active and row.last_seen_at < cutoff:
                row.is_active = False
                affected += 1
        return affected

    async def select_purgeable_fingerprints(self, cutoff: datetime, limit: int) -> list[str]:
        self._touch()
        rows = sorted(
            (row for row in self.jobs.values() if not row.is_active and row.last_seen_at < cutoff),
            key=lambda row: row.last_seen_at,
        )
        return [row.fingerprint for row in rows[: max(1, limit)]]

    async def delete_embedding_queue_entries(self, fingerprints: Sequence[str]) -> int:
        self._touch()
        removed = 0
        for fingerprint in fingerprints:
            if self.embedding_queue.pop(fingerprint, None) is not None:
                removed += 1
        return removed

    async def delete_matches(self, fingerprints: Sequence[str]) -> int:
        self._touch()
        targets = set(fingerprints)
        before = len(self.matches)
        self.matches = [match for match in self.matches if match["fingerprint"] not in targets]
        return before - len(self.matches)

    async def delete_jobs(self, fingerprints: Sequence[str]) -> int:
        self._touch()
        removed = 0
        for fingerprint in fingerprints:
            if self.jobs.pop(fingerprint, None) is not None:
                removed += 1
        return removed

    async def latest_job_created_at(self) -> datetime | None:
        self._touch()
        if not self.jobs:
            return None
        return max(row.created_at for row in self.jobs.values())

    async def job_totals(self, recent_since: datetime) -> JobTotals:
        self._touch()
        by_source: dict[str, int] = {}
        recent = 0
        for row in self.jobs.values():
            by_source[row.source] = by_source.get(row.source, 0) + 1
            if row.created_at >= recent_since:
                recent += 1
        return JobTotals(total=len(self.jobs), recent=recent, by_source=by_source)

    def _touch(self) -> None:
        self.query_count += 1
        if self.fail_queries:
            raise RepositoryQueryError("in-memory store configured to fail")
