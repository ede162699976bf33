from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

import numpy as np
import torch
from torch.utils.data import DataLoader

from .data import ItemDataset, collate_items
from .model import HybridPredictor
from .plots import write_metric
from .predictor import Predictor

HALLUCINATION_BOUND = 10.0


@dataclass(frozen=True)
class EvalConfig:
    data_path: str
    ckpt_path: str
    out_dir: str | None = None

    batch_size: int = 32
    correct_threshold: float = 0.1
    hallucination_bound: float = HALLUCINATION_BOUND


def _device() -> torch.device:
    return torch.device("cuda" if torch.cuda.is_available() else "cpu")


def correct_mask(outputs: torch.Tensor, targets: torch.Tensor, threshold: float) -> torch.Tensor:
    """(B,D),(B,D) -> (B,) bool. Non-finite rows are never correct."""
    finite = torch.isfinite(outputs).all(dim=-1)
    close = ((outputs - targets).abs() <= threshold).all(dim=-1)
    return finite & close


def hallucination_mask(outputs: torch.Tensor, bound: float = HALLUCINATION_BOUND) -> torch.Tensor:
    """(B,D) -> (B,) bool: any component non-finite or outside [-bound, bound]."""
    bad = ~torch.isfinite(outputs)
    out_of_range = outputs.abs() > bound
    return (bad | out_of_range).any(dim=-1)


@torch.no_grad()
def evaluate_items(
    *,
    model: HybridPredictor,
    dataset: ItemDataset,
    batch_size: int = 32,
    correct_threshold: float = 0.1,
    hallucination_bound: float = HALLUCINATION_BOUND,
    device: torch.device | None = None,
) -> dict[str, Any]:
    """Accuracy/loss of independent predictions, each from a zero recurrent state."""
    device = device or next(model.parameters()).device
    was_training = model.training
    model.eval()

    dl = DataLoader(dataset, batch_size=max(1, int(batch_size)), shuffle=False, collate_fn=collate_items)

    n = 0
    correct = 0
    halluc = 0
    loss_sum = 0.0
    n_loss = 0
    by_level_correct: dict[int, int] = {}
    by_level_total: dict[int, int] = {}

    for b in dl:
        x = b.inputs.to(device)
        y = b.targets.to(device)
        out, _ = model(x)

        ok = correct_mask(out, y, correct_threshold)
        hm = hallucination_mask(out, hallucination_bound)
        n += int(x.shape[0])
        correct += int(ok.sum().item())
        halluc += int(hm.sum().item())

        finite_rows = torch.isfinite(out).all(dim=-1)
        if bool(finite_rows.any()):
            per_row = ((out - y) ** 2).mean(dim=-1)[finite_rows]
            loss_sum += float(per_row.sum().item())
            n_loss += int(per_row.shape[0])

        for level, hit in zip(b.levels.tolist(), ok.tolist()):
            by_level_total[level] = by_level_total.get(level, 0) + 1
            by_level_correct[level] = by_level_correct.get(level, 0) + int(hit)

    if was_training:
        model.train()

    return {
        "n": n,
        "accuracy": float(correct / max(1, n)),
        "loss": float(loss_sum / n_loss) if n_loss else float("nan"),
        "hallucination_rate": float(halluc / max(1, n)),
        "accuracy_by_level": {
            int(k): float(by_level_correct[k] / max(1, by_level_total[k])) for k in sorted(by_level_total)
        },
    }


@torch.no_grad()
def hallucination_flags(
    *,
    model: HybridPredictor,
    inputs: Sequence[Any],
    bound: float = HALLUCINATION_BOUND,
    batch_size: int = 32,
) -> list[bool]:
    device = next(model.parameters()).device
    flags: list[bool] = []
    if len(inputs) == 0:
        return flags
    arr = np.stack([np.asarray(x, dtype=np.float32).reshape(-1) for x in inputs])
    if arr.shape[1] != model.input_size:
        raise ValueError(f"input width mismatch: expected {model.input_size}, got {arr.shape[1]}")
    bs = max(1, int(batch_size))
    for i in range(0, arr.shape[0], bs):
        out, _ = model(torch.as_tensor(arr[i : i + bs], device=device))
        flags.extend(bool(v) for v in hallucination_mask(out, bound).tolist())
    return flags


def evaluate(cfg: EvalConfig) -> dict[str, Any]:
    device = _device()
    predictor = Predictor.from_checkpoint(cfg.ckpt_path, device=device)
    ds = ItemDataset.from_jsonl(cfg.data_path)
    if ds.input_size != predictor.input_size or ds.output_size != predictor.output_size:
        raise ValueError(
            f"Dataset widths ({ds.input_size},{ds.output_size}) do not match checkpoint "
            f"({predictor.input_size},{predictor.output_size})"
        )

    res = evaluate_items(
        model=predictor.model,
        dataset=ds,
        batch_size=cfg.batch_size,
        correct_threshold=cfg.correct_threshold,
        hallucination_bound=cfg.hallucination_bound,
        device=device,
    )

    if cfg.out_dir is not None:
        metrics_path = Path(cfg.out_dir) / "eval_metrics.jsonl"
        if metrics_path.exists():
            metrics_path.unlink()
        for name in ["accuracy", "loss", "hallucination_rate"]:
            write_metric(path=metrics_path, phase="eval", epoch=0, split="val", name=name, value=float(res[name]))
        for level, acc in res["accuracy_by_level"].items():
            write_metric(path=metrics_path, phase="eval", epoch=0, split="val", name="accuracy", value=acc, level=level)
        res["metrics_path"] = str(metrics_path)

    return res
