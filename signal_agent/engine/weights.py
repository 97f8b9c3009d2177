"""Adaptive Weight Manager — per-indicator weights learned from trade outcomes.

Update rule: once an indicator's bounded history is full, every new outcome
moves its weight by (avg_performance - 0.5) * step_size, clamped to
[min_weight, max_weight]. Replaying the same outcome log always reproduces
the same weights.

Concurrency: each record is an immutable snapshot swapped by reference, so
readers never take a lock. Writers hold a per-indicator lock, which
serializes updates to the same name without blocking other names.
"""

import math
import threading
from dataclasses import dataclass, field
from typing import Iterable

from loguru import logger

from signal_agent.config import WeightConfig
from signal_agent.errors import InvalidInputError


@dataclass(frozen=True)
class IndicatorWeight:
    name: str
    current_weight: float
    performance_history: tuple[float, ...] = field(default_factory=tuple)

    @property
    def avg_performance(self) -> float | None:
        if not self.performance_history:
            return None
        return sum(self.performance_history) / len(self.performance_history)


class AdaptiveWeightManager:
    def __init__(self, config: WeightConfig | None = None):
        self.config = config or WeightConfig()
        self._records: dict[str, IndicatorWeight] = {
            name: IndicatorWeight(name=name, current_weight=self._clamp(w))
            for name, w in self.config.defaults.items()
        }
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _clamp(self, weight: float) -> float:
        return max(self.config.min_weight, min(self.config.max_weight, weight))

    def _lock_for(self, name: str) -> threading.Lock:
        lock = self._locks.get(name)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(name, threading.Lock())
        return lock

    # --- Read path (lock-free) ---

    def get_weight(self, name: str) -> float:
        """Current weight, else the documented default, else the global fallback."""
        record = self._records.get(name)
        if record is not None:
            return record.current_weight
        return self.config.defaults.get(name, self.config.fallback_weight)

    def get_record(self, name: str) -> IndicatorWeight | None:
        return self._records.get(name)

    def snapshot(self) -> dict[str, IndicatorWeight]:
        return dict(self._records)

    # --- Write path (serialized per indicator) ---

    def record_outcome(self, name: str, outcome_score: float) -> IndicatorWeight:
        """Append a realized outcome score in [0, 1] and adapt the weight."""
        if not isinstance(outcome_score, (int, float)) or math.isnan(outcome_score):
            raise InvalidInputError(f"Outcome score for {name} must be a number, got {outcome_score!r}")
        if not 0.0 <= outcome_score <= 1.0:
            raise InvalidInputError(f"Outcome score for {name} must be in [0, 1], got {outcome_score}")

        cap = self.config.history_size
        with self._lock_for(name):
            prev = self._records.get(name)
            if prev is None:
                prev = IndicatorWeight(name=name, current_weight=self._clamp(self.get_weight(name)))

            history = (prev.performance_history + (float(outcome_score),))[-cap:]
            weight = prev.current_weight
            if len(history) >= cap:
                avg = sum(history) / len(history)
                weight = self._clamp(weight + (avg - 0.5) * self.config.step_size)

            updated = IndicatorWeight(name=name, current_weight=weight, performance_history=history)
            self._records[name] = updated

        if weight != prev.current_weight:
            logger.debug(f"Weight {name}: {prev.current_weight:.4f} -> {weight:.4f}")
        return updated

    def restore(self, name: str, outcomes: Iterable[float]) -> IndicatorWeight | None:
        """Replay an outcome log (oldest first) for one indicator."""
        record = None
        for score in outcomes:
            record = self.record_outcome(name, score)
        return record

    def reset(self):
        """Restore default weights once every in-flight update has finished."""
        # Holding the guard stops new per-name locks from being created meanwhile
        with self._locks_guard:
            held = [self._locks[name] for name in sorted(self._locks)]
            for lock in held:
                lock.acquire()
            try:
                self._records = {
                    name: IndicatorWeight(name=name, current_weight=self._clamp(w))
                    for name, w in self.config.defaults.items()
                }
            finally:
                for lock in reversed(held):
                    lock.release()
        logger.info("Indicator weights reset to defaults")
