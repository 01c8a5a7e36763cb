from types import MappingProxyType

from harvester.jobs.quota import QuotaManager
from harvester.jobs.stats import CycleStats


def _stats(total: int, **per_source: int) -> CycleStats:
    return CycleStats(total_unique_fingerprints=total, per_source_counts=MappingProxyType(per_source))


def test_unlimited_global_target_never_stops() -> None:
    quota = QuotaManager(global_target=0)

    assert not quota.should_stop_cycle(_stats(0))
    assert not quota.should_stop_cycle(_stats(10_000_000))
    assert quota.remaining(_stats(10_000_000)) is None


def test_global_target_stops_when_reached_or_exceeded() -> None:
    quota = QuotaManager(global_target=500)

    assert not quota.should_stop_cycle(_stats(499))
    assert quota.should_stop_cycle(_stats(500))
    assert quota.should_stop_cycle(_stats(520))
    assert quota.remaining(_stats(120)) == 380
    assert quota.remaining(_stats(520)) == 0


def test_source_target_is_per_source_and_zero_means_unlimited() -> None:
    quota = QuotaManager(global_target=0, source_targets={"adzuna": 100, "reed": 0})
    stats = _stats(400, adzuna=100, reed=300)

    assert quota.has_source_reached_target(stats, "adzuna")
    assert not quota.has_source_reached_target(stats, "reed")
    assert not quota.has_source_reached_target(stats, "jooble")
    assert not quota.should_stop_cycle(stats)


def test_source_below_target_has_not_reached_it() -> None:
    quota = QuotaManager(source_targets={"adzuna": 100})

    assert not quota.has_source_reached_target(_stats(99, adzuna=99), "adzuna")


def test_negative_targets_are_treated_as_unlimited() -> None:
    quota = QuotaManager(global_target=-5, source_targets={"reed": -1})

    assert quota.global_target == 0
    assert quota.source_targets == {"reed": 0}
    assert not quota.should_stop_cycle(_stats(1))
    assert not quota.has_source_reached_target(_stats(1, reed=1), "reed")
