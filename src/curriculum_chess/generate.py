from __future__ import annotations

import math

import numpy as np

from .math_utils import clamp
from .schemas import TrainingItem


def _rng(seed: int | None) -> np.random.Generator:
    return np.random.default_rng(seed)


class PuzzleGenerator:
    """Synthetic board puzzles whose complexity grows with the curriculum level.

    An input is a board of ``input_size`` squares, most of them empty; the
    number of occupied squares grows from 1 at level 0 to about a third of
    the board at the last level. The target is a fixed (seeded) projection
    of the board squashed into (-0.9, 0.9), so every level shares the same
    underlying mapping and only gets harder to read.
    """

    def __init__(
        self,
        num_levels: int = 10,
        *,
        input_size: int = 64,
        output_size: int = 8,
        seed: int | None = 0,
    ):
        if int(num_levels) < 1:
            raise ValueError(f"num_levels must be >= 1, got {num_levels}")
        if int(input_size) < 1 or int(output_size) < 1:
            raise ValueError(f"input_size/output_size must be positive, got ({input_size},{output_size})")

        self.num_levels = int(num_levels)
        self.input_size = int(input_size)
        self.output_size = int(output_size)
        self._rng = _rng(seed)
        # Shared across levels; columns are unit-norm.
        proj = self._rng.normal(0.0, 1.0, size=(self.output_size, self.input_size))
        self._proj = proj / (np.linalg.norm(proj, axis=0, keepdims=True) + 1e-9)
        self.puzzle_count = 0

    def _difficulty(self, level: int) -> float:
        if self.num_levels == 1:
            return 0.0
        return level / (self.num_levels - 1)

    def _active_squares(self, level: int) -> int:
        max_active = max(1, self.input_size // 3)
        return 1 + int(round(self._difficulty(level) * (max_active - 1)))

    def create_puzzle(self, level: int) -> TrainingItem:
        level = int(clamp(int(level), 0, self.num_levels - 1))
        n_active = self._active_squares(level)

        x = np.zeros(self.input_size, dtype=np.float64)
        squares = self._rng.choice(self.input_size, size=n_active, replace=False)
        # Piece values: sign = side, magnitude = piece weight.
        x[squares] = self._rng.choice([-1.0, 1.0], size=n_active) * self._rng.uniform(0.2, 1.0, size=n_active)

        y = np.tanh(self._proj @ x / math.sqrt(n_active)) * 0.9

        self.puzzle_count += 1
        return TrainingItem(input=x, target=y, difficulty=self._difficulty(level))

    def create_progressive_puzzle(self, difficulty: float) -> TrainingItem:
        """Map ``difficulty`` in [0, 1] onto a level (floor, clamped) and create a puzzle there."""
        level = int(math.floor(clamp(float(difficulty), 0.0, 1.0) * (self.num_levels - 1)))
        return self.create_puzzle(level)


def generate_many(
    *,
    n: int,
    seed: int = 0,
    num_levels: int = 10,
    input_size: int = 64,
    output_size: int = 8,
) -> list[tuple[int, TrainingItem]]:
    """``n`` puzzles spread evenly over the levels, as (level, item) rows."""
    gen = PuzzleGenerator(num_levels, input_size=input_size, output_size=output_size, seed=seed)
    rows: list[tuple[int, TrainingItem]] = []
    for i in range(int(n)):
        level = i % gen.num_levels
        rows.append((level, gen.create_puzzle(level)))
    return rows
