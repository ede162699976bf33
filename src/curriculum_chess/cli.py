from __future__ import annotations

from pathlib import Path

import pandas as pd
import typer
from loguru import logger
from tqdm import tqdm

from .curriculum import level_name
from .dataset import make_item_row, write_jsonl
from .generate import generate_many

app = typer.Typer(no_args_is_help=True)


@app.callback()
def _root() -> None:
    """Curriculum chess: puzzle generation + adaptive predictor training."""
    return


@app.command("generate-puzzles")
def generate_puzzles(
    out: Path = typer.Option(..., help="Output JSONL path (one {level, item} row per line)"),
    out_summary: Path | None = typer.Option(None, help="Optional per-puzzle summary CSV"),
    n: int = typer.Option(1000, help="Number of puzzles"),
    seed: int = typer.Option(0, help="Random seed"),
    num_levels: int = typer.Option(10, help="Number of curriculum levels"),
    input_size: int = typer.Option(64, help="Board encoding width"),
    output_size: int = typer.Option(8, help="Target width"),
) -> None:
    if n < 1:
        raise typer.BadParameter(f"n must be >= 1, got {n}")

    try:
        puzzles = generate_many(n=n, seed=seed, num_levels=num_levels, input_size=input_size, output_size=output_size)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    rows = []
    summary_rows = []
    for i, (level, item) in enumerate(tqdm(puzzles, desc="Exporting")):
        rows.append(make_item_row(level, item, meta={"seed": int(seed), "index": i}))
        if out_summary is not None:
            summary_rows.append(
                {
                    "index": i,
                    "level": level,
                    "level_name": level_name(level),
                    "difficulty": item.difficulty,
                    "active_squares": int((item.input != 0).sum()),
                    "target_min": float(item.target.min()),
                    "target_max": float(item.target.max()),
                }
            )

    write_jsonl(out, rows)
    typer.echo(f"Wrote {len(rows)} rows -> {out}")

    if out_summary is not None:
        out_summary.parent.mkdir(parents=True, exist_ok=True)
        pd.DataFrame(summary_rows).to_csv(out_summary, index=False)
        typer.echo(f"Wrote {len(summary_rows)} rows -> {out_summary}")


@app.command("version")
def version() -> None:
    from . import __version__

    typer.echo(__version__)


@app.command("train")
def train(
    data: Path = typer.Option(..., help="Training JSONL written by generate-puzzles"),
    out_dir: Path = typer.Option(Path("runs/run1"), help="Output directory (ckpt/metrics/config/plots)"),
    val_data: Path | None = typer.Option(None, help="Optional held-out JSONL evaluated after training"),
    hidden_size: int = typer.Option(64, help="Recurrent hidden size"),
    optimizer: str = typer.Option("adam", help="sgd | momentum | adagrad | rmsprop | adam"),
    lr: float = typer.Option(1e-3, help="Learning rate"),
    momentum: float = typer.Option(0.9, help="Momentum (momentum optimizer only)"),
    weight_decay: float = typer.Option(1e-4, help="Weight decay"),
    batch_size: int = typer.Option(32, help="Evaluation batch size"),
    max_epochs: int = typer.Option(100, help="Maximum epochs"),
    early_stop_loss: float = typer.Option(1e-3, help="Stop once an epoch loss is below this"),
    patience: int = typer.Option(10, help="Early-stop patience (<=0 disables)"),
    mastery_threshold: float = typer.Option(0.85, help="Accuracy needed to advance a level"),
    correct_threshold: float = typer.Option(0.1, help="Per-component absolute error counted as correct"),
    curriculum: bool = typer.Option(True, help="Enable curriculum levels"),
    spaced_repetition: bool = typer.Option(True, help="Enable spaced-repetition reviews"),
    seed: int = typer.Option(0, help="Random seed"),
) -> None:
    """Train a predictor over curriculum levels with spaced-repetition reviews."""

    from .nn.data import ItemDataset
    from .nn.predictor import Predictor
    from .nn.train import TrainConfig, TrainingOrchestrator

    try:
        ds = ItemDataset.from_jsonl(data)
    except (OSError, ValueError) as e:
        raise typer.BadParameter(f"Cannot load {data}: {e}")

    cfg = TrainConfig(
        optimizer=str(optimizer),
        learning_rate=float(lr),
        momentum=float(momentum),
        weight_decay=float(weight_decay),
        batch_size=int(batch_size),
        max_epochs=int(max_epochs),
        early_stop_loss=float(early_stop_loss),
        patience=int(patience),
        use_curriculum=bool(curriculum),
        use_spaced_repetition=bool(spaced_repetition),
        use_pavlovian=False,
        mastery_threshold=float(mastery_threshold),
        num_levels=ds.num_levels,
        correct_threshold=float(correct_threshold),
        seed=int(seed),
        out_dir=str(out_dir),
    )

    predictor = Predictor.create(
        input_size=ds.input_size,
        hidden_size=int(hidden_size),
        output_size=ds.output_size,
        seed=int(seed),
    )
    try:
        orch = TrainingOrchestrator(predictor, cfg)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    # Widths come from the same dataset, so add_example cannot reject them.
    for level, item in ds.rows:
        orch.add_example(item, level)

    stats = orch.train()
    typer.echo(
        f"Training done. epochs={stats.epoch} level={stats.current_level}({level_name(stats.current_level)}) "
        f"acc={stats.accuracy:.4f} review_acc={stats.review_accuracy:.4f} "
        f"loss={stats.current_loss:.6f} time={stats.training_time:.1f}s"
    )

    if val_data is not None:
        try:
            val = ItemDataset.from_jsonl(val_data)
            acc = orch.evaluate([item for _, item in val.rows])
        except (OSError, ValueError) as e:
            raise typer.BadParameter(f"Cannot evaluate {val_data}: {e}")
        typer.echo(f"Validation accuracy: {acc:.4f}")
        # Refresh the checkpoint so it carries validation_accuracy.
        orch.save_checkpoint(out_dir / "ckpt_final.pt")

    typer.echo(f"Final checkpoint: {out_dir / 'ckpt_final.pt'}")


@app.command("eval")
def eval_cmd(
    data: Path = typer.Option(..., help="JSONL to evaluate on"),
    ckpt: Path = typer.Option(..., help="Checkpoint path (e.g. runs/run1/ckpt_final.pt)"),
    out_dir: Path = typer.Option(Path("runs/eval"), help="Output directory (eval_metrics/plots)"),
    batch_size: int = typer.Option(32, help="Evaluation batch size"),
    correct_threshold: float = typer.Option(0.1, help="Per-component absolute error counted as correct"),
) -> None:
    """Accuracy and hallucination rate of a checkpoint."""

    from .nn.eval import EvalConfig, evaluate
    from .nn.plots import plot_metrics

    cfg = EvalConfig(
        data_path=str(data),
        ckpt_path=str(ckpt),
        out_dir=str(out_dir),
        batch_size=int(batch_size),
        correct_threshold=float(correct_threshold),
    )
    try:
        res = evaluate(cfg)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    try:
        plot_metrics(res["metrics_path"], out_dir, subdir="plots_eval")
    except Exception as e:
        logger.warning(f"Plotting failed: {e}")

    typer.echo(
        f"n={res['n']} accuracy={res['accuracy']:.4f} loss={res['loss']:.6f} "
        f"hallucination_rate={res['hallucination_rate']:.4f}"
    )
    for level, acc in res["accuracy_by_level"].items():
        typer.echo(f"  level {level} ({level_name(level)}): {acc:.4f}")
    typer.echo(f"Wrote eval metrics -> {res['metrics_path']}")


@app.command("plot-run")
def plot_run(
    run_dir: Path = typer.Option(..., help="Run directory containing metrics.jsonl"),
    subdir: str = typer.Option("plots", help="Plot subdirectory"),
) -> None:
    """Re-render line charts from a run's metrics.jsonl."""

    from .nn.plots import plot_metrics

    metrics_path = run_dir / "metrics.jsonl"
    if not metrics_path.exists():
        raise typer.BadParameter(f"metrics.jsonl not found in {run_dir}")
    saved = plot_metrics(metrics_path, run_dir, subdir=subdir)
    for p in saved:
        typer.echo(f"Wrote {p}")


if __name__ == "__main__":
    app()
