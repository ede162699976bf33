# tests/conftest.py
from __future__ import annotations

import pytest
from loguru import logger

from curriculum_chess.nn.predictor import Predictor
from curriculum_chess.schemas import TrainingItem


@pytest.fixture(autouse=True)
def disable_file_logger():
    logger.remove()
    logger.add(lambda msg: None)  # or sys.stderr
    yield


class FakeClock:
    """Manually advanced wall clock (epoch seconds)."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)

    def advance_hours(self, hours: float) -> None:
        self.advance(hours * 3600.0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def predictor() -> Predictor:
    return Predictor.create(input_size=4, hidden_size=8, output_size=2, seed=0)


@pytest.fixture
def item() -> TrainingItem:
    return TrainingItem(input=[0.5, 0.5, 0.5, 0.5], target=[0.0, 0.0])
