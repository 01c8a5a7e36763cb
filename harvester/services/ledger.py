from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from harvester.jobs.orchestrator import CycleReport


@dataclass(slots=True)
class LedgerTotals:
    run_count: int
    failed_runs: int
    total_contributed: int
    last_run_at: datetime | None


class CycleLedger:
    """Accumulates finished cycle reports for status reporting."""

    def __init__(self, history_size: int = 20) -> None:
        self._history: deque[CycleReport] = deque(maxlen=max(1, history_size))
        self.run_count = 0
        self.failed_runs = 0
        self.total_contributed = 0
        self.last_run_at: datetime | None = None

    def record(self, report: CycleReport) -> None:
        self._history.append(report)
        self.run_count += 1
        self.total_contributed += report.total_contributed
        self.last_run_at = report.finished_at
        if report.error is not None:
            self.failed_runs += 1

    @property
    def last_report(self) -> CycleReport | None:
        return self._history[-1] if self._history else None

    def recent(self) -> list[CycleReport]:
        return list(self._history)

    def totals(self) -> LedgerTotals:
        return LedgerTotals(
            run_count=self.run_count,
            failed_runs=self.failed_runs,
            total_contributed=self.total_contributed,
            last_run_at=self.last_run_at,
        )
