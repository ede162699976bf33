from __future__ import annotations

from typing import Iterator

from loguru import logger

from .schemas import TrainingItem


class ExampleStore:
    """Append-only collection of training items.

    Items are copied in on ``append`` and never shared with another store.
    Capacity doubles whenever the store fills up.
    """

    def __init__(self, capacity: int = 1000):
        if int(capacity) < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = int(capacity)
        self._items: list[TrainingItem] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, item: TrainingItem) -> int:
        if len(self._items) >= self._capacity:
            self._capacity *= 2
            logger.debug(f"ExampleStore grew to capacity={self._capacity}")
        self._items.append(item.copy())
        return len(self._items) - 1

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, idx: int) -> TrainingItem:
        return self._items[idx]

    def __iter__(self) -> Iterator[TrainingItem]:
        return iter(self._items)
