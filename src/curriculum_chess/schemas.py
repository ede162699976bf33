from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

import numpy as np


def _as_vector(values: Any) -> np.ndarray:
    return np.array(values, dtype=np.float64).reshape(-1)


@dataclass
class TrainingItem:
    input: np.ndarray  # (input_size,)
    target: np.ndarray  # (output_size,)
    difficulty: float = 0.0  # [0,1]

    is_correct: bool = False
    attempts: int = 0
    correct_streak: int = 0
    last_reviewed: float = 0.0  # epoch seconds
    next_review: float = 0.0  # epoch seconds

    def __post_init__(self) -> None:
        self.input = _as_vector(self.input)
        self.target = _as_vector(self.target)
        self.difficulty = float(self.difficulty)

    @property
    def input_size(self) -> int:
        return int(self.input.shape[0])

    @property
    def target_size(self) -> int:
        return int(self.target.shape[0])

    def copy(self) -> "TrainingItem":
        """Deep copy: vectors are duplicated, never shared between stores."""
        return replace(self, input=self.input.copy(), target=self.target.copy())

    def to_dict(self) -> dict[str, Any]:
        return {
            "input": self.input.tolist(),
            "target": self.target.tolist(),
            "difficulty": self.difficulty,
            "is_correct": bool(self.is_correct),
            "attempts": int(self.attempts),
            "correct_streak": int(self.correct_streak),
            "last_reviewed": float(self.last_reviewed),
            "next_review": float(self.next_review),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TrainingItem":
        return cls(
            input=d["input"],
            target=d["target"],
            difficulty=float(d.get("difficulty", 0.0)),
            is_correct=bool(d.get("is_correct", False)),
            attempts=int(d.get("attempts", 0)),
            correct_streak=int(d.get("correct_streak", 0)),
            last_reviewed=float(d.get("last_reviewed", 0.0)),
            next_review=float(d.get("next_review", 0.0)),
        )


@dataclass
class ScheduleEntry(TrainingItem):
    # position in the scheduler's backing store
    index: int = -1

    @classmethod
    def from_item(cls, item: TrainingItem, index: int) -> "ScheduleEntry":
        return cls(
            input=item.input.copy(),
            target=item.target.copy(),
            difficulty=item.difficulty,
            is_correct=item.is_correct,
            attempts=item.attempts,
            correct_streak=item.correct_streak,
            last_reviewed=item.last_reviewed,
            next_review=item.next_review,
            index=int(index),
        )


@dataclass
class TrainingStatistics:
    """Counters owned by the orchestrator.

    ``accuracy`` is the latest curriculum pass; ``review_accuracy`` is the
    running share of correct spaced-repetition reviews.
    """

    epoch: int = 0
    current_loss: float = 0.0
    average_loss: float = 0.0
    accuracy: float = 0.0
    current_level: int = 0
    examples_seen: int = 0
    training_time: float = 0.0  # seconds
    validation_accuracy: float = 0.0
    non_finite_steps: int = 0
    review_accuracy: float = 0.0
