"""Per-request fetch metrics. Observational only; nothing here drives control flow."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any


@dataclass
class FetchMetrics:
    total: int = 0
    cached: int = 0
    fetched: int = 0
    ranking: int = 0
    errors: int = 0
    deduplicated: int = 0
    unpersisted: int = 0
    error_codes: dict[str, int] = field(default_factory=dict)
    phase_durations_ms: dict[str, float] = field(default_factory=dict)
    clock: Callable[[], float] = field(default=time.perf_counter, repr=False)

    @contextmanager
    def phase(self, name: str) -> Iterator[None]:
        started = self.clock()
        try:
            yield
        finally:
            elapsed = (self.clock() - started) * 1000
            self.phase_durations_ms[name] = round(
                self.phase_durations_ms.get(name, 0.0) + elapsed, 2
            )

    def record_error(self, code: str) -> None:
        self.errors += 1
        self.error_codes[code] = self.error_codes.get(code, 0) + 1

    @property
    def cache_hit_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.cached / self.total, 4)

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return round((self.total - self.errors) / self.total, 4)

    def to_log_fields(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "cached": self.cached,
            "fetched": self.fetched,
            "ranking": self.ranking,
            "errors": self.errors,
            "deduplicated": self.deduplicated,
            "unpersisted": self.unpersisted,
            "error_codes": dict(self.error_codes),
            "cache_hit_rate": self.cache_hit_rate,
            "success_rate": self.success_rate,
            "phase_durations_ms": dict(self.phase_durations_ms),
        }
