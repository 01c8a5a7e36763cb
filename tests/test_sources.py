from __future__ import annotations

import pytest

from harvester.core.config import Settings
from harvester.core.sources import (
    DEFAULT_SOURCES,
    DEFAULT_WAVES,
    SourceCatalog,
    SourceSpec,
    Wave,
    build_catalog,
    parse_command,
    source_config_from_settings,
)


def _settings(**overrides: object) -> Settings:
    return Settings(**overrides)  # type: ignore[arg-type]


def test_default_catalog_covers_every_wave_source_once() -> None:
    catalog = build_catalog(_settings())

    wave_sources = [source_id for wave in DEFAULT_WAVES for source_id in wave.source_ids]
    assert sorted(wave_sources) == sorted(spec.source_id for spec in DEFAULT_SOURCES)
    assert [wave.wave_id for wave in catalog.waves] == ["fast", "critical", "long-tail"]
    assert all(spec.enabled for spec in catalog.sources.values())


def test_disabled_and_allow_list_settings() -> None:
    catalog = build_catalog(_settings(enabled_sources=["reed", "adzuna", "jooble"], disabled_sources=["jooble"]))

    enabled = {source_id for source_id, spec in catalog.sources.items() if spec.enabled}
    assert enabled == {"reed", "adzuna"}


def test_timeout_overrides_apply_per_source() -> None:
    catalog = build_catalog(_settings(source_timeouts={"reed": 45}))

    assert catalog.get("reed").timeout_seconds == 45.0
    assert catalog.get("adzuna").timeout_seconds == 600.0


def test_unknown_source_lookup_raises() -> None:
    with pytest.raises(KeyError, match="ghost"):
        build_catalog(_settings()).get("ghost")


def test_validate_rejects_unknown_and_duplicate_sources() -> None:
    spec = SourceSpec(source_id="reed", command=("true",), timeout_seconds=1.0)

    with pytest.raises(ValueError, match="unknown source"):
        SourceCatalog(sources={"reed": spec}, waves=(Wave("a", ("reed", "ghost")),)).validate()
    with pytest.raises(ValueError, match="more than one wave"):
        SourceCatalog(sources={"reed": spec}, waves=(Wave("a", ("reed",)), Wave("b", ("reed",)))).validate()


def test_parse_command_splits_shell_words() -> None:
    assert parse_command("node scripts/process-embedding-queue.cjs --limit '50 rows'") == (
        "node",
        "scripts/process-embedding-queue.cjs",
        "--limit",
        "50 rows",
    )
    with pytest.raises(ValueError):
        parse_command("   ")


def test_source_config_from_settings_trims_and_keeps_absent_filters_absent() -> None:
    config = source_config_from_settings(_settings(target_cities=[" London ", "", "Leeds"]))

    assert config.cities == ("London", "Leeds")
    assert config.roles is None


def test_fallback_window_setting_applies_to_every_source() -> None:
    catalog = build_catalog(_settings(fallback_count_window_seconds=60.0, source_fallback_windows={}))

    assert {spec.fallback_window_seconds for spec in catalog.sources.values()} == {60.0}


def test_fallback_window_per_source_override_wins() -> None:
    catalog = build_catalog(_settings(fallback_count_window_seconds=120.0))

    assert catalog.get("jobspy-indeed").fallback_window_seconds == 600.0
    assert catalog.get("reed").fallback_window_seconds == 120.0
