from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable

from loguru import logger

from .schemas import TrainingItem
from .store import ExampleStore

DEFAULT_MASTERY_THRESHOLD = 0.85


class LevelName(IntEnum):
    """Named difficulty levels, from basic piece movement up to infinite variants."""

    PRESCHOOL = 0  # basic piece movements
    KINDERGARTEN = 1  # simple captures
    ELEMENTARY = 2  # basic checkmates
    MIDDLE_SCHOOL = 3  # tactical patterns
    HIGH_SCHOOL = 4  # strategic concepts
    UNDERGRAD = 5  # complex tactics
    GRADUATE = 6  # advanced strategy
    MASTER = 7
    GRANDMASTER = 8
    INFINITE = 9  # infinite chess variants


def level_name(index: int) -> str:
    try:
        return LevelName(index).name.lower()
    except ValueError:
        return f"level_{index}"


@dataclass
class DifficultyLevel:
    index: int
    store: ExampleStore
    mastery_threshold: float = DEFAULT_MASTERY_THRESHOLD
    accuracy: float = 0.0
    examples_seen: int = field(default=0)


class DifficultyController:
    """Curriculum over ``num_levels`` ordered difficulty levels.

    The current level starts at 0 and only ever moves up by one via
    ``advance()``; the last level is absorbing.
    """

    def __init__(
        self,
        num_levels: int,
        *,
        mastery_threshold: float = DEFAULT_MASTERY_THRESHOLD,
        examples_per_level: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        if int(num_levels) < 1:
            raise ValueError(f"num_levels must be >= 1, got {num_levels}")
        if not 0.0 <= float(mastery_threshold) <= 1.0:
            raise ValueError(f"mastery_threshold must be in [0, 1], got {mastery_threshold}")

        self._clock = clock
        self._current = 0
        self._levels = [
            DifficultyLevel(
                index=i,
                store=ExampleStore(examples_per_level),
                mastery_threshold=float(mastery_threshold),
            )
            for i in range(int(num_levels))
        ]

    @property
    def num_levels(self) -> int:
        return len(self._levels)

    def level(self, index: int) -> DifficultyLevel:
        return self._levels[index]

    def current_level(self) -> int:
        return self._current

    def current_store(self) -> ExampleStore:
        return self._levels[self._current].store

    def is_terminal(self) -> bool:
        return self._current >= self.num_levels - 1

    def add_example(self, item: TrainingItem, level: int) -> bool:
        """Copy ``item`` into ``level``'s store.

        Out-of-range levels are rejected silently (returns False, nothing stored).
        """
        if not 0 <= int(level) < self.num_levels:
            logger.debug(f"add_example: level {level} out of range [0, {self.num_levels}); ignored")
            return False

        now = float(self._clock())
        fresh = item.copy()
        fresh.is_correct = False
        fresh.attempts = 0
        fresh.correct_streak = 0
        fresh.last_reviewed = now
        fresh.next_review = now
        self._levels[int(level)].store.append(fresh)
        return True

    def should_advance(self, accuracy: float) -> bool:
        current = self._levels[self._current]
        current.accuracy = float(accuracy)
        if self.is_terminal():
            return False
        return float(accuracy) >= current.mastery_threshold

    def advance(self) -> None:
        if self.is_terminal():
            return
        self._current += 1
        logger.info(f"Curriculum advanced to level {self._current} ({level_name(self._current)})")
