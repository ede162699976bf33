from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

import numpy as np
import torch
from torch.utils.data import Dataset

from ..schemas import TrainingItem


@dataclass(frozen=True)
class ItemBatch:
    inputs: torch.Tensor  # (B,input_size) float32
    targets: torch.Tensor  # (B,output_size) float32
    levels: torch.Tensor  # (B,) int64


class ItemDataset(Dataset):
    """Training items as (level, TrainingItem) pairs.

    Built either from a JSONL file (one ``{"level", "item"}`` row per line)
    or from an in-memory sequence of items.
    """

    def __init__(self, rows: Sequence[tuple[int, TrainingItem]]):
        self.rows = list(rows)
        if not self.rows:
            raise ValueError("Empty dataset")

        # Basic schema sanity
        _, item0 = self.rows[0]
        self.input_size = item0.input_size
        self.output_size = item0.target_size
        for level, item in self.rows:
            if item.input_size != self.input_size or item.target_size != self.output_size:
                raise ValueError(
                    f"Inconsistent item widths at level {level}: "
                    f"({item.input_size},{item.target_size}) vs ({self.input_size},{self.output_size})"
                )

    @classmethod
    def from_jsonl(cls, jsonl_path: str | Path) -> "ItemDataset":
        path = Path(jsonl_path)
        rows: list[tuple[int, TrainingItem]] = []
        with path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                rows.append(row_to_item(json.loads(line)))
        if not rows:
            raise ValueError(f"Empty dataset: {path}")
        return cls(rows)

    @classmethod
    def from_items(cls, items: Sequence[TrainingItem], level: int = 0) -> "ItemDataset":
        return cls([(int(level), it) for it in items])

    @property
    def num_levels(self) -> int:
        return 1 + max(level for level, _ in self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    def __getitem__(self, idx: int) -> tuple[int, TrainingItem]:
        return self.rows[idx]


def collate_items(batch: list[tuple[int, TrainingItem]]) -> ItemBatch:
    inputs = np.stack([item.input for _, item in batch]).astype(np.float32)
    targets = np.stack([item.target for _, item in batch]).astype(np.float32)
    levels = np.asarray([level for level, _ in batch], dtype=np.int64)
    return ItemBatch(
        inputs=torch.as_tensor(inputs),
        targets=torch.as_tensor(targets),
        levels=torch.as_tensor(levels),
    )


def row_to_item(d: dict[str, Any]) -> tuple[int, TrainingItem]:
    return int(d.get("level", 0)), TrainingItem.from_dict(d["item"])
