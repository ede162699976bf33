from __future__ import annotations

import time
from typing import Callable, cast

from loguru import logger

from .schemas import ScheduleEntry, TrainingItem
from .store import ExampleStore

SECONDS_PER_HOUR = 3600.0

BASE_MULTIPLIER = 2.5
STREAK_BONUS = 0.5


class MemoryScheduler:
    """Spaced-repetition scheduler over an append-only example store.

    A correct review stretches the next interval by ``2.5 + 0.5 * (streak - 1)``
    times the effective interval; any miss resets the streak and falls back to
    ``initial_interval_hours``. ``correct_streak >= ltm_threshold`` marks an
    entry as promoted to long-term memory.
    """

    def __init__(
        self,
        capacity: int = 10000,
        ltm_threshold: int = 5,
        *,
        initial_interval_hours: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        if float(initial_interval_hours) <= 0.0:
            raise ValueError(f"initial_interval_hours must be > 0, got {initial_interval_hours}")
        self._store = ExampleStore(capacity)
        self.ltm_threshold = int(ltm_threshold)
        self.initial_interval_hours = float(initial_interval_hours)
        self._clock = clock

    @property
    def capacity(self) -> int:
        return self._store.capacity

    def __len__(self) -> int:
        return len(self._store)

    def entry(self, index: int) -> ScheduleEntry:
        """Copy of the entry at ``index``; mutate through ``update`` only."""
        return cast(ScheduleEntry, self._store[index]).copy()

    def _valid(self, index: int) -> bool:
        return 0 <= int(index) < len(self._store)

    def add(self, item: TrainingItem) -> int:
        now = float(self._clock())
        entry = ScheduleEntry.from_item(item, index=len(self._store))
        entry.is_correct = False
        entry.attempts = 0
        entry.correct_streak = 0
        entry.last_reviewed = now
        entry.next_review = now + self.initial_interval_hours * SECONDS_PER_HOUR
        return self._store.append(entry)

    def next_due(self) -> ScheduleEntry | None:
        """Earliest-due entry with ``next_review <= now``; ties go to the first inserted."""
        now = float(self._clock())
        best: ScheduleEntry | None = None
        for e in self._store:
            if e.next_review > now:
                continue
            if best is None or e.next_review < best.next_review:
                best = e  # type: ignore[assignment]
        return None if best is None else best.copy()

    def due_count(self) -> int:
        now = float(self._clock())
        return sum(1 for e in self._store if e.next_review <= now)

    def update(self, index: int, is_correct: bool) -> bool:
        if not self._valid(index):
            logger.warning(f"MemoryScheduler.update: index {index} out of range (size={len(self._store)}); ignored")
            return False

        e = self._store[int(index)]
        now = float(self._clock())
        elapsed_hours = max(0.0, (now - e.last_reviewed) / SECONDS_PER_HOUR)

        e.attempts += 1
        e.is_correct = bool(is_correct)
        if is_correct:
            e.correct_streak += 1
            multiplier = BASE_MULTIPLIER + max(0, e.correct_streak - 1) * STREAK_BONUS
            effective_hours = max(self.initial_interval_hours, elapsed_hours)
            e.next_review = now + effective_hours * multiplier * SECONDS_PER_HOUR
        else:
            e.correct_streak = 0
            e.next_review = now + self.initial_interval_hours * SECONDS_PER_HOUR
        e.last_reviewed = now
        return True

    def is_in_long_term_memory(self, index: int) -> bool:
        if not self._valid(index):
            return False
        return self._store[int(index)].correct_streak >= self.ltm_threshold

    def long_term_count(self) -> int:
        return sum(1 for e in self._store if e.correct_streak >= self.ltm_threshold)
