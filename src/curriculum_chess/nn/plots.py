from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from ..curriculum import level_name


@dataclass(frozen=True)
class MetricRow:
    phase: str
    epoch: int
    split: str
    name: str
    value: float
    level: int | None = None


def read_metrics(path: str | Path) -> list[MetricRow]:
    rows: list[MetricRow] = []
    p = Path(path)
    if not p.exists():
        return rows
    with p.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            d = json.loads(line)
            if "name" not in d or "value" not in d:
                continue
            rows.append(
                MetricRow(
                    phase=str(d.get("phase", "?")),
                    epoch=int(d.get("epoch", 0)),
                    split=str(d.get("split", "train")),
                    name=str(d["name"]),
                    value=float(d["value"]),
                    level=(int(d["level"]) if d.get("level") is not None else None),
                )
            )
    return rows


def write_metric(
    *,
    path: Path,
    phase: str,
    epoch: int,
    split: str,
    name: str,
    value: float,
    level: int | None = None,
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    row = {"phase": phase, "epoch": int(epoch), "split": split, "name": name, "value": float(value)}
    if level is not None:
        row["level"] = int(level)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(row, ensure_ascii=False) + "\n")


def plot_metrics(metrics_path: str | Path, out_dir: str | Path, *, subdir: str = "plots") -> list[Path]:
    """Render line charts from metrics.jsonl.

    One PNG per metric name (train/val lines), plus accuracy faceted by
    curriculum level when per-level rows exist.
    """

    # Import lazily to keep core training usable without plotting deps.
    import matplotlib.pyplot as plt

    # Prettier defaults (safe fallbacks if a style is unavailable)
    for style in ["seaborn-v0_8-whitegrid", "seaborn-whitegrid", "ggplot"]:
        try:
            plt.style.use(style)
            break
        except OSError:
            pass

    rows = read_metrics(metrics_path)
    if not rows:
        return []

    out = Path(out_dir) / subdir
    out.mkdir(parents=True, exist_ok=True)

    def _series(filter_fn):
        pts: list[tuple[int, float]] = []
        for r in rows:
            if filter_fn(r):
                pts.append((int(r.epoch), float(r.value)))
        # Always sort by epoch so lines don't zig-zag if the jsonl is out of order.
        pts.sort(key=lambda t: t[0])
        return [p[0] for p in pts], [p[1] for p in pts]

    saved: list[Path] = []

    # 1) Global curves: loss, accuracy, level, examples seen...
    names = sorted({r.name for r in rows if r.level is None})
    for name in names:
        plt.figure()
        has_line = False
        for split in ["train", "val"]:
            xs, ys = _series(lambda r, n=name, s=split: r.name == n and r.split == s and r.level is None)
            if xs:
                # Level changes are steps, not trends.
                if name == "level":
                    plt.step(xs, ys, where="post", label=split, linewidth=2)
                else:
                    plt.plot(xs, ys, label=split, linewidth=2)
                has_line = True
        if not has_line:
            plt.close()
            continue
        plt.title(name)
        plt.xlabel("epoch")
        plt.ylabel(name)
        plt.legend()
        p = out / f"{name}.png"
        plt.grid(True, alpha=0.25)
        plt.tight_layout()
        plt.savefig(p, dpi=160)
        plt.close()
        saved.append(p)

    # 2) Accuracy by curriculum level (facets)
    levels = sorted({r.level for r in rows if r.level is not None and r.name == "accuracy"})
    if levels:
        n = len(levels)
        fig, axes = plt.subplots(n, 1, figsize=(7.2, max(2.0, 1.8 * n)), sharex=True)
        if n == 1:
            axes = [axes]
        any_line = False
        for ax, lv in zip(axes, levels):
            xs, ys = _series(lambda r, ll=lv: r.name == "accuracy" and r.level == ll)
            if xs:
                ax.plot(xs, ys, marker="o", markersize=3, linewidth=2)
                any_line = True
            ax.set_title(level_name(int(lv)))
            ax.set_ylabel("accuracy")
            ax.grid(True, alpha=0.25)
        axes[-1].set_xlabel("epoch")
        fig.suptitle("accuracy by level")
        fig.tight_layout()
        if any_line:
            p = out / "accuracy_by_level.png"
            fig.savefig(p, dpi=170)
            saved.append(p)
        plt.close(fig)

    return saved
