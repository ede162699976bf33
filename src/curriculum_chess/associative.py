"""Pavlovian (classical conditioning) association learning.

Board positions act as conditioned stimuli (CS) and game outcomes as
unconditioned stimuli (US). Each (CS, US) pair carries a scalar strength
updated with the Rescorla-Wagner rule:

    lambda   = sign(us.reward)
    strength = clamp(strength + lr * (lambda - strength), -1, 1)

Only the valence of the reward drives the error term, not its magnitude.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

import numpy as np

from .math_utils import clamp, sign, vectors_match


def _vec(values: Any) -> np.ndarray:
    return np.array(values, dtype=np.float64).reshape(-1)


@dataclass
class ConditionedStimulus:
    vector: np.ndarray
    intensity: float = 1.0
    timestamp: float = 0.0
    occurrence_count: int = 1

    def __post_init__(self) -> None:
        self.vector = _vec(self.vector)


@dataclass
class UnconditionedStimulus:
    vector: np.ndarray
    reward: float = 0.0  # >0 reward, <0 punishment
    intensity: float = 1.0
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        self.vector = _vec(self.vector)
        self.reward = float(self.reward)


@dataclass
class Association:
    cs: ConditionedStimulus
    us: UnconditionedStimulus
    strength: float = 0.0  # [-1,1]
    learning_rate: float = 0.1
    pairings: int = 0
    last_pairing_time: float = field(default=0.0)


def outcome_stimulus(outcome: float) -> UnconditionedStimulus:
    """US for a finished game: 1.0 = win, 0.0 = draw, -1.0 = loss."""
    return UnconditionedStimulus(vector=[float(outcome)], reward=float(outcome))


class AssociativeLearner:
    def __init__(
        self,
        learning_rate: float = 0.1,
        *,
        decay_rate: float = 0.01,
        tolerance: float = 0.01,
        clock: Callable[[], float] = time.time,
    ):
        if not 0.0 <= float(decay_rate) <= 1.0:
            raise ValueError(f"decay_rate must be in [0, 1], got {decay_rate}")
        if float(tolerance) < 0.0:
            raise ValueError(f"tolerance must be >= 0, got {tolerance}")
        self.learning_rate = float(learning_rate)
        self.decay_rate = float(decay_rate)
        self.tolerance = float(tolerance)
        self._clock = clock
        self._associations: list[Association] = []

    def __len__(self) -> int:
        return len(self._associations)

    def associations(self) -> Iterator[Association]:
        return iter(self._associations)

    def _matching_cs(self, cs: ConditionedStimulus) -> Iterator[Association]:
        for a in self._associations:
            if vectors_match(a.cs.vector, cs.vector, self.tolerance):
                yield a

    def _find_or_create(self, cs: ConditionedStimulus, us: UnconditionedStimulus) -> Association:
        for a in self._matching_cs(cs):
            if vectors_match(a.us.vector, us.vector, self.tolerance):
                return a

        now = float(self._clock())
        a = Association(
            cs=ConditionedStimulus(vector=cs.vector.copy(), intensity=cs.intensity, timestamp=now, occurrence_count=0),
            us=UnconditionedStimulus(vector=us.vector.copy(), reward=us.reward, intensity=us.intensity, timestamp=now),
            strength=0.0,
            learning_rate=self.learning_rate,
            pairings=0,
            last_pairing_time=now,
        )
        self._associations.append(a)
        return a

    def pair(self, cs: ConditionedStimulus, us: UnconditionedStimulus) -> float:
        a = self._find_or_create(cs, us)
        target = sign(us.reward)
        a.strength = clamp(a.strength + a.learning_rate * (target - a.strength), -1.0, 1.0)
        a.pairings += 1
        a.cs.occurrence_count += 1
        a.last_pairing_time = float(self._clock())
        return a.strength

    def association_strength(self, cs: ConditionedStimulus, us: UnconditionedStimulus) -> float:
        # Lookup creates a zero-strength association when the pair is new.
        return self._find_or_create(cs, us).strength

    def extinguish(self, cs: ConditionedStimulus) -> None:
        for a in self._matching_cs(cs):
            a.strength *= 1.0 - self.decay_rate

    def expected_reward(self, cs: ConditionedStimulus) -> float:
        best_strength = 0.0
        best_reward = 0.0
        for a in self._matching_cs(cs):
            if abs(a.strength) > abs(best_strength):
                best_strength = a.strength
                best_reward = a.us.reward
        return best_strength * best_reward

    def reward(self, cs: ConditionedStimulus, value: float) -> float:
        us = UnconditionedStimulus(vector=cs.vector.copy(), reward=float(value))
        return self.pair(cs, us)

    def punish(self, cs: ConditionedStimulus, value: float) -> float:
        us = UnconditionedStimulus(vector=cs.vector.copy(), reward=-float(value))
        return self.pair(cs, us)

    # ---- instrumental conditioning: the action is folded into the CS ----
    @staticmethod
    def _action_stimulus(cs: ConditionedStimulus, action: Any) -> ConditionedStimulus:
        return ConditionedStimulus(vector=np.concatenate([cs.vector, _vec(action)]), intensity=cs.intensity)

    def reinforce_action(self, cs: ConditionedStimulus, action: Any, reward: float) -> float:
        return self.reward(self._action_stimulus(cs, action), reward)

    def punish_action(self, cs: ConditionedStimulus, action: Any, punishment: float) -> float:
        return self.punish(self._action_stimulus(cs, action), punishment)
