from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

from harvester.jobs.stats import CycleStats


class QuotaManager:
    """Stop conditions for a cycle. A target of ``0`` means unlimited."""

    def __init__(self, global_target: int = 0, source_targets: Mapping[str, int] | None = None) -> None:
        self._global_target = max(0, int(global_target))
        self._source_targets = MappingProxyType(
            {source_id: max(0, int(target)) for source_id, target in (source_targets or {}).items()}
        )

    @property
    def global_target(self) -> int:
        return self._global_target

    @property
    def source_targets(self) -> Mapping[str, int]:
        return self._source_targets

    def should_stop_cycle(self, stats: CycleStats) -> bool:
        return self._global_target > 0 and stats.total_unique_fingerprints >= self._global_target

    def has_source_reached_target(self, stats: CycleStats, source_id: str) -> bool:
        # Advisory: only decides whether the source is attempted again in a later wave.
        target = self._source_targets.get(source_id, 0)
        return target > 0 and stats.count_for(source_id) >= target

    def remaining(self, stats: CycleStats) -> int | None:
        if self._global_target == 0:
            return None
        return max(0, self._global_target - stats.total_unique_fingerprints)
