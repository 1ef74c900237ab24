"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class CacheConfig:
    """Staleness settings for cached parses and hints."""

    parse_max_age_days: int
    hint_max_age_days: int

    @property
    def parse_max_age(self) -> timedelta:
        return timedelta(days=self.parse_max_age_days)

    @property
    def hint_max_age(self) -> timedelta:
        return timedelta(days=self.hint_max_age_days)


@dataclass(frozen=True)
class PipelineConfig:
    """Stage pipeline settings consumed by the orchestrator."""

    default_engine: str
    locale: str = "ru_RU"
    max_hint_level: int = 3
    max_detect_tasks: int = 3
