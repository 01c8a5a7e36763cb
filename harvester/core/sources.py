from __future__ import annotations

import json
import re
import shlex
from dataclasses import dataclass, field, replace

from harvester.core.config import Settings


@dataclass(frozen=True, slots=True)
class SourceSpec:
    source_id: str
    command: tuple[str, ...]
    timeout_seconds: float
    count_pattern: re.Pattern[str] | None = None
    count_group: int = 1
    fallback_window_seconds: float = 300.0
    preflight_url: str | None = None
    enabled: bool = True
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SourceConfig:
    """Optional filters handed to every source; ``None`` lets the source use its defaults."""

    cities: tuple[str, ...] | None = None
    career_paths: tuple[str, ...] | None = None
    industries: tuple[str, ...] | None = None
    roles: tuple[str, ...] | None = None

    def to_env(self) -> dict[str, str]:
        env: dict[str, str] = {}
        for name, values in (
            ("TARGET_CITIES", self.cities),
            ("TARGET_CAREER_PATHS", self.career_paths),
            ("TARGET_INDUSTRIES", self.industries),
            ("TARGET_ROLES", self.roles),
        ):
            if values is not None:
                env[name] = json.dumps(list(values))
        return env


@dataclass(frozen=True, slots=True)
class Wave:
    wave_id: str
    source_ids: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class SourceCatalog:
    sources: dict[str, SourceSpec]
    waves: tuple[Wave, ...]

    def get(self, source_id: str) -> SourceSpec:
        try:
            return self.sources[source_id]
        except KeyError as exc:
            raise KeyError(f"unknown source: {source_id}") from exc

    def validate(self) -> None:
        seen: set[str] = set()
        for wave in self.waves:
            for source_id in wave.source_ids:
                if source_id not in self.sources:
                    raise ValueError(f"wave {wave.wave_id} references unknown source {source_id}")
                if source_id in seen:
                    raise ValueError(f"source {source_id} appears in more than one wave")
                seen.add(source_id)


def _marker(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.MULTILINE)


def _node(script: str) -> tuple[str, ...]:
    return ("node", script)


def _tsx(script: str) -> tuple[str, ...]:
    return ("npx", "-y", "tsx", script)


# Fast low-cost sources first, critical high-volume sources next, long tail last.
DEFAULT_SOURCES: tuple[SourceSpec, ...] = (
    SourceSpec(
        source_id="jobspy-indeed",
        command=_node("scrapers/wrappers/jobspy-wrapper.cjs"),
        timeout_seconds=600.0,
        count_pattern=_marker(r"Saved (\d+) jobs"),
    ),
    SourceSpec(
        source_id="themuse",
        command=_tsx("scrapers/muse-scraper.ts"),
        timeout_seconds=180.0,
        count_pattern=_marker(r"^\S*\s*Muse:\s+(\d+)\s+jobs saved to database$"),
    ),
    SourceSpec(
        source_id="adzuna",
        command=_node("scrapers/wrappers/adzuna-wrapper.cjs"),
        timeout_seconds=600.0,
        count_pattern=_marker(r"Adzuna: (\d+) jobs saved to database"),
    ),
    SourceSpec(
        source_id="reed",
        command=_node("scrapers/wrappers/reed-wrapper.cjs"),
        timeout_seconds=300.0,
        count_pattern=_marker(r"Reed: (\d+) jobs saved to database"),
    ),
    SourceSpec(
        source_id="greenhouse",
        command=_node("scrapers/greenhouse-standardized.js"),
        timeout_seconds=600.0,
        count_pattern=_marker(r"\[greenhouse\]\s+source=greenhouse\s+found=(\d+)\s+upserted=(\d+)"),
        count_group=2,
    ),
    SourceSpec(
        source_id="jsearch",
        command=_tsx("scrapers/jsearch-scraper.ts"),
        timeout_seconds=300.0,
        count_pattern=_marker(r"^\S*\s*JSearch:\s+(\d+)\s+jobs saved to database$"),
    ),
    SourceSpec(
        source_id="jooble",
        command=_tsx("scrapers/jooble.ts"),
        timeout_seconds=300.0,
        count_pattern=_marker(r"^\S*\s*Jooble:\s+(\d+)\s+jobs saved to database$"),
    ),
    SourceSpec(
        source_id="ashby",
        command=_node("scrapers/ashby.cjs"),
        timeout_seconds=300.0,
        count_pattern=_marker(r"^\S*\s*Ashby:\s+(\d+)\s+jobs saved to database$"),
    ),
    SourceSpec(
        source_id="serpapi",
        command=_tsx("scrapers/serp-api-scraper.ts"),
        timeout_seconds=600.0,
        count_pattern=_marker(r"SERP API: (\d+) jobs saved to database"),
    ),
    SourceSpec(
        source_id="rapidapi-internships",
        command=_tsx("scrapers/rapidapi-internships.ts"),
        timeout_seconds=300.0,
        count_pattern=_marker(r"inserted:\s*(\d+)"),
    ),
)

DEFAULT_WAVES: tuple[Wave, ...] = (
    Wave(wave_id="fast", source_ids=("jobspy-indeed", "themuse")),
    Wave(wave_id="critical", source_ids=("adzuna", "reed", "greenhouse")),
    Wave(wave_id="long-tail", source_ids=("jsearch", "jooble", "ashby", "serpapi", "rapidapi-internships")),
)


def build_catalog(
    settings: Settings,
    *,
    sources: tuple[SourceSpec, ...] = DEFAULT_SOURCES,
    waves: tuple[Wave, ...] = DEFAULT_WAVES,
) -> SourceCatalog:
    """Apply per-source enablement, timeout and fallback-window overrides from settings."""
    enabled = set(settings.enabled_sources) if settings.enabled_sources is not None else None
    disabled = set(settings.disabled_sources)
    resolved: dict[str, SourceSpec] = {}
    for spec in sources:
        is_enabled = spec.enabled and spec.source_id not in disabled
        if enabled is not None:
            is_enabled = is_enabled and spec.source_id in enabled
        timeout = settings.source_timeouts.get(spec.source_id, spec.timeout_seconds)
        window = settings.source_fallback_windows.get(spec.source_id, settings.fallback_count_window_seconds)
        resolved[spec.source_id] = replace(
            spec,
            enabled=is_enabled,
            timeout_seconds=max(0.1, float(timeout)),
            fallback_window_seconds=max(1.0, float(window)),
        )

    catalog = SourceCatalog(sources=resolved, waves=waves)
    catalog.validate()
    return catalog


def parse_command(raw: str) -> tuple[str, ...]:
    parts = tuple(shlex.split(raw))
    if not parts:
        raise ValueError("command must not be empty")
    return parts


def source_config_from_settings(settings: Settings) -> SourceConfig:
    return SourceConfig(
        cities=_as_tuple(settings.target_cities),
        career_paths=_as_tuple(settings.target_career_paths),
        industries=_as_tuple(settings.target_industries),
        roles=_as_tuple(settings.target_roles),
    )


def _as_tuple(values: list[str] | None) -> tuple[str, ...] | None:
    if values is None:
        return None
    return tuple(value.strip() for value in values if value.strip())
