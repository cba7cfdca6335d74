"""
Scheduler and compliance configuration.

Typed, frozen config objects with production defaults, plus a loader for
JSON configuration files validated against ``scheduler.schema.json``.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from random import Random
from types import MappingProxyType
from typing import Any

from archflow.domain.models import JobKind
from archflow.schemas import validate_scheduler_config


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient failures.

    max_attempts counts the first call: 3 means one call plus two retries.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.25

    def delay(self, attempt: int, rng: Random) -> float:
        """Delay before the retry that follows the given (1-based) attempt."""
        capped = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return capped + rng.uniform(0.0, self.jitter)


@dataclass(frozen=True)
class BreakerConfig:
    window_size: int = 20
    min_calls: int = 5
    error_threshold: float = 0.5
    cooldown_seconds: float = 30.0


@dataclass(frozen=True)
class KindConfig:
    concurrency: int
    queue_capacity: int
    deadline_seconds: float
    breaker: BreakerConfig = field(default_factory=BreakerConfig)


DEFAULT_KIND_CONFIGS: Mapping[JobKind, KindConfig] = MappingProxyType(
    {
        JobKind.ANALYZE: KindConfig(concurrency=4, queue_capacity=32, deadline_seconds=30.0),
        JobKind.RENDER: KindConfig(concurrency=2, queue_capacity=16, deadline_seconds=120.0),
        # Walkthrough video generation
        JobKind.SIMULATE_LIGHTING: KindConfig(
            concurrency=1, queue_capacity=4, deadline_seconds=300.0
        ),
        JobKind.CHECK_COMPLIANCE: KindConfig(
            concurrency=4, queue_capacity=32, deadline_seconds=60.0
        ),
        JobKind.EXPORT: KindConfig(concurrency=2, queue_capacity=16, deadline_seconds=120.0),
    }
)


@dataclass(frozen=True)
class SchedulerConfig:
    kinds: Mapping[JobKind, KindConfig] = field(default_factory=lambda: DEFAULT_KIND_CONFIGS)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    poll_interval: float = 0.25  # Deadline monitor period

    def for_kind(self, kind: JobKind) -> KindConfig:
        return self.kinds.get(kind, DEFAULT_KIND_CONFIGS[kind])

    def with_kind(self, kind: JobKind, **changes: Any) -> "SchedulerConfig":
        """Copy with one kind's settings changed."""
        kinds = dict(self.kinds)
        kinds[kind] = replace(self.for_kind(kind), **changes)
        return replace(self, kinds=MappingProxyType(kinds))


@dataclass(frozen=True)
class ComplianceConfig:
    """Which rule-sets exist, which are always evaluated and in what order."""

    rule_set_order: tuple[str, ...] = ("fire", "accessibility", "energy", "spatial")
    mandatory_rule_sets: tuple[str, ...] = ("fire", "accessibility")
    timeout: float = 90.0  # Overall wait for the blocking evaluate()


def scheduler_config_from_dict(data: dict[str, Any]) -> SchedulerConfig:
    """Build a SchedulerConfig from a validated dictionary.

    Raises:
        jsonschema.ValidationError: If the dictionary does not match the schema
    """
    validate_scheduler_config(data)

    defaults = SchedulerConfig()
    kinds = dict(DEFAULT_KIND_CONFIGS)
    for name, overrides in data.get("kinds", {}).items():
        kind = JobKind(name)
        base = kinds[kind]
        breaker = replace(base.breaker, **overrides.get("breaker", {}))
        plain = {k: v for k, v in overrides.items() if k != "breaker"}
        kinds[kind] = replace(base, breaker=breaker, **plain)

    return SchedulerConfig(
        kinds=MappingProxyType(kinds),
        retry=replace(defaults.retry, **data.get("retry", {})),
        poll_interval=data.get("poll_interval", defaults.poll_interval),
    )


def load_scheduler_config(path: str | Path) -> SchedulerConfig:
    """Load and validate a scheduler configuration file."""
    with open(path) as f:
        data = json.load(f)
    return scheduler_config_from_dict(data)
