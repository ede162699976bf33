from __future__ import annotations

import json
import math
import threading
import time
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Callable, Sequence

import numpy as np
import torch
from loguru import logger
from tqdm import tqdm

from ..associative import AssociativeLearner, ConditionedStimulus, UnconditionedStimulus
from ..curriculum import DifficultyController, level_name
from ..math_utils import all_finite
from ..scheduler import MemoryScheduler
from ..schemas import TrainingItem, TrainingStatistics
from .data import ItemDataset
from .eval import HALLUCINATION_BOUND, evaluate_items, hallucination_flags
from .optim import StepOptimizer, build_optimizer
from .plots import plot_metrics, write_metric
from .predictor import Predictor


@dataclass(frozen=True)
class TrainConfig:
    # Optimizer
    optimizer: str = "adam"  # sgd | momentum | adagrad | rmsprop | adam
    learning_rate: float = 1e-3
    momentum: float = 0.9
    weight_decay: float = 1e-4
    max_grad_norm: float = 1.0

    batch_size: int = 32  # evaluation batches
    max_epochs: int = 100

    # Stop as soon as an epoch's loss drops below this.
    early_stop_loss: float = 1e-3
    # Patience-based stop on the epoch loss; patience <= 0 disables it.
    early_stop_min_delta: float = 1e-4
    patience: int = 10

    use_curriculum: bool = True
    use_spaced_repetition: bool = True
    use_pavlovian: bool = True

    # Curriculum
    num_levels: int = 10
    mastery_threshold: float = 0.85
    correct_threshold: float = 0.1  # per-component absolute error

    # Spaced repetition
    scheduler_capacity: int = 10000
    ltm_threshold: int = 5
    initial_interval_hours: float = 1.0

    # Pavlovian learning rate; None -> the learner's default (0.1).
    association_rate: float | None = None

    seed: int = 0
    out_dir: str | None = None


class TrainingOrchestrator:
    """Drives one Predictor from curriculum levels, due reviews and CS/US pairings.

    Components not passed in are created from the config toggles; a disabled
    component is ``None`` and its training mode is skipped. Every step is
    forward -> correctness -> backward -> optimizer step, strictly in order.
    """

    def __init__(
        self,
        predictor: Predictor,
        cfg: TrainConfig | None = None,
        *,
        controller: DifficultyController | None = None,
        scheduler: MemoryScheduler | None = None,
        learner: AssociativeLearner | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg or TrainConfig()
        self.predictor = predictor
        self._clock = clock

        if controller is None and self.cfg.use_curriculum:
            controller = DifficultyController(
                self.cfg.num_levels,
                mastery_threshold=self.cfg.mastery_threshold,
                clock=clock,
            )
        if scheduler is None and self.cfg.use_spaced_repetition:
            scheduler = MemoryScheduler(
                self.cfg.scheduler_capacity,
                self.cfg.ltm_threshold,
                initial_interval_hours=self.cfg.initial_interval_hours,
                clock=clock,
            )
        if learner is None and self.cfg.use_pavlovian:
            if self.cfg.association_rate is None:
                learner = AssociativeLearner(clock=clock)
            else:
                learner = AssociativeLearner(self.cfg.association_rate, clock=clock)

        self.controller = controller
        self.scheduler = scheduler
        self.learner = learner

        opt = build_optimizer(
            self.cfg.optimizer,
            predictor.parameters(),
            lr=float(self.cfg.learning_rate),
            momentum=float(self.cfg.momentum),
            weight_decay=float(self.cfg.weight_decay),
        )
        self.optimizer = StepOptimizer(opt, max_grad_norm=self.cfg.max_grad_norm)

        self._stats = TrainingStatistics()
        if self.controller is not None:
            self._stats.current_level = self.controller.current_level()
        self._cancel = threading.Event()

        self._loss_total = 0.0
        self._loss_count = 0
        self._reviews = 0
        self._correct_reviews = 0
        self._epoch_losses: list[float] = []
        self._last_pass: tuple[int, float] | None = None

    # ------------------------------------------------------------------
    # Observability

    @property
    def stats(self) -> TrainingStatistics:
        """Snapshot of the statistics; safe to read while an epoch runs."""
        return replace(self._stats)

    def cancel(self) -> None:
        """Request a stop at the next epoch boundary (callable from any thread)."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ------------------------------------------------------------------
    # Data intake

    def add_example(self, item: TrainingItem, level: int = 0) -> None:
        """Feed ``item`` to every enabled data source (curriculum level + review queue)."""
        if item.input_size != self.predictor.input_size or item.target_size != self.predictor.output_size:
            raise ValueError(
                f"Item widths ({item.input_size},{item.target_size}) do not match predictor "
                f"({self.predictor.input_size},{self.predictor.output_size})"
            )
        if self.controller is not None:
            self.controller.add_example(item, level)
        if self.scheduler is not None:
            self.scheduler.add(item)

    # ------------------------------------------------------------------
    # Single step

    def _is_correct(self, output: np.ndarray, target: np.ndarray) -> bool:
        return bool(np.all(np.abs(output - target) <= float(self.cfg.correct_threshold)))

    def _reject_step(self, what: str) -> None:
        self.predictor.discard()
        self.optimizer.discard()
        self._stats.non_finite_steps += 1
        logger.warning(
            f"Non-finite {what} at epoch {self._stats.epoch}; step counted incorrect and skipped "
            f"(total={self._stats.non_finite_steps})"
        )

    def _train_step(self, x: Any, target: Any) -> tuple[bool, float | None]:
        """forward -> backward -> correctness -> step.

        Returns ``(is_correct, loss)``; ``loss`` is None when the output or
        the loss was non-finite, in which case no update is applied.
        """
        target = np.asarray(target, dtype=np.float64).reshape(-1)
        output = self.predictor.forward(x)
        if not all_finite(output):
            self._reject_step("output")
            return False, None

        # backward validates the target width before the comparison below.
        loss = self.predictor.backward(target)
        if not math.isfinite(loss):
            self._reject_step("loss")
            return False, None
        ok = self._is_correct(output, target)

        self.optimizer.step()
        self._record_loss(loss)
        return ok, loss

    def _record_loss(self, loss: float) -> None:
        self._epoch_losses.append(float(loss))
        self._loss_total += float(loss)
        self._loss_count += 1
        self._stats.current_loss = float(loss)
        self._stats.average_loss = self._loss_total / self._loss_count

    # ------------------------------------------------------------------
    # Training modes

    def train_curriculum_epoch(self) -> None:
        """One pass over the current level's store, then the mastery check."""
        if self.controller is None:
            return
        store = self.controller.current_store()
        level = self.controller.current_level()
        total = len(store)
        if total == 0:
            logger.debug(f"Curriculum level {level} is empty; nothing to train")
            return

        current = self.controller.level(level)
        correct = 0
        for item in store:
            ok, loss = self._train_step(item.input, item.target)
            # A rejected reading counts as a miss but leaves the item's history alone.
            if loss is not None:
                item.attempts += 1
                item.is_correct = ok
                item.correct_streak = item.correct_streak + 1 if ok else 0
                item.last_reviewed = float(self._clock())
            correct += int(ok)
            current.examples_seen += 1
            self._stats.examples_seen += 1

        accuracy = correct / total
        self._stats.accuracy = accuracy
        self._last_pass = (level, accuracy)
        if self.controller.should_advance(accuracy):
            self.controller.advance()
        self._stats.current_level = self.controller.current_level()

    def train_spaced_repetition_step(self) -> bool:
        """Review the earliest due entry. False when nothing is due."""
        if self.scheduler is None:
            return False
        entry = self.scheduler.next_due()
        if entry is None:
            return False

        ok, loss = self._train_step(entry.input, entry.target)
        if loss is not None:
            self.scheduler.update(entry.index, ok)
        self._reviews += 1
        self._correct_reviews += int(ok)
        self._stats.review_accuracy = self._correct_reviews / self._reviews
        self._stats.examples_seen += 1
        return True

    def train_pavlovian(self, cs: ConditionedStimulus, us: UnconditionedStimulus) -> float | None:
        """Pair (cs, us), then fit the predictor to ``expected_reward(cs)`` on the CS vector."""
        if self.learner is None:
            logger.warning("train_pavlovian called with Pavlovian learning disabled; ignored")
            return None

        self.learner.pair(cs, us)
        expected = self.learner.expected_reward(cs)
        target = np.full(self.predictor.output_size, expected, dtype=np.float64)
        _, loss = self._train_step(cs.vector, target)
        self._stats.examples_seen += 1
        return loss

    def train_epoch(self) -> float:
        """Curriculum pass then one due review. Returns the mean step loss (nan if idle)."""
        self._stats.epoch += 1
        self._epoch_losses = []
        self._last_pass = None

        self.train_curriculum_epoch()
        self.train_spaced_repetition_step()

        if not self._epoch_losses:
            return float("nan")
        epoch_loss = float(np.mean(self._epoch_losses))
        self._stats.current_loss = epoch_loss
        return epoch_loss

    def train(self, max_epochs: int | None = None) -> TrainingStatistics:
        cfg = self.cfg
        n_epochs = int(cfg.max_epochs if max_epochs is None else max_epochs)

        out_dir = Path(cfg.out_dir) if cfg.out_dir is not None else None
        metrics_path: Path | None = None
        if out_dir is not None:
            out_dir.mkdir(parents=True, exist_ok=True)
            (out_dir / "config.json").write_text(json.dumps(asdict(cfg), ensure_ascii=False, indent=2), encoding="utf-8")
            metrics_path = out_dir / "metrics.jsonl"
            if metrics_path.exists():
                metrics_path.unlink()

        best = float("inf")
        bad_epochs = 0
        pbar = tqdm(range(n_epochs), desc="Train")
        for _ in pbar:
            if self._cancel.is_set():
                logger.info(f"Training cancelled after epoch {self._stats.epoch}")
                break

            level_before = self._stats.current_level
            t0 = time.perf_counter()
            epoch_loss = self.train_epoch()
            self._stats.training_time += time.perf_counter() - t0

            st = self._stats
            pbar.set_postfix({"loss": epoch_loss, "acc": st.accuracy, "level": st.current_level})
            if metrics_path is not None:
                self._write_epoch_metrics(metrics_path, epoch_loss)

            tqdm.write(
                f"[train epoch={st.epoch}] loss={epoch_loss:.6f} acc={st.accuracy:.4f} "
                f"level={st.current_level}({level_name(st.current_level)}) seen={st.examples_seen}"
            )

            if math.isfinite(epoch_loss) and epoch_loss < float(cfg.early_stop_loss):
                logger.info(f"Early stop at epoch {st.epoch}: loss {epoch_loss:.6g} < {cfg.early_stop_loss}")
                break

            # A new level restarts the loss curve.
            if st.current_level != level_before:
                best = float("inf")
                bad_epochs = 0
            elif math.isfinite(epoch_loss) and epoch_loss < best - float(cfg.early_stop_min_delta):
                best = epoch_loss
                bad_epochs = 0
            else:
                bad_epochs += 1
                if cfg.patience > 0 and bad_epochs >= int(cfg.patience):
                    logger.info(f"No improvement for {bad_epochs} epochs; stopping at epoch {st.epoch}")
                    break

        self._cancel.clear()

        if out_dir is not None:
            self.save_checkpoint(out_dir / "ckpt_final.pt")
            try:
                plot_metrics(metrics_path, out_dir, subdir="plots")
            except Exception as e:
                logger.warning(f"Plotting failed: {e}")

        return self.stats

    def _write_epoch_metrics(self, path: Path, epoch_loss: float) -> None:
        st = self._stats
        values = {
            "loss": epoch_loss,
            "accuracy": st.accuracy,
            "review_accuracy": st.review_accuracy,
            "level": st.current_level,
            "examples_seen": st.examples_seen,
            "non_finite_steps": st.non_finite_steps,
            "lr": self.optimizer.lr,
        }
        for name, value in values.items():
            if isinstance(value, float) and not math.isfinite(value):
                continue
            write_metric(path=path, phase="train", epoch=st.epoch, split="train", name=name, value=float(value))
        if self._last_pass is not None:
            level, acc = self._last_pass
            write_metric(path=path, phase="train", epoch=st.epoch, split="train", name="accuracy", value=acc, level=level)
        if self.scheduler is not None:
            write_metric(
                path=path,
                phase="train",
                epoch=st.epoch,
                split="train",
                name="long_term_items",
                value=float(self.scheduler.long_term_count()),
            )

    # ------------------------------------------------------------------
    # Read-only evaluation

    def evaluate(self, items: Sequence[TrainingItem]) -> float:
        """Accuracy of independent predictions (zero recurrent state); training state is untouched."""
        if len(items) == 0:
            return 0.0
        ds = ItemDataset.from_items(items)
        if ds.input_size != self.predictor.input_size or ds.output_size != self.predictor.output_size:
            raise ValueError(
                f"Item widths ({ds.input_size},{ds.output_size}) do not match predictor "
                f"({self.predictor.input_size},{self.predictor.output_size})"
            )
        res = evaluate_items(
            model=self.predictor.model,
            dataset=ds,
            batch_size=self.cfg.batch_size,
            correct_threshold=self.cfg.correct_threshold,
            device=self.predictor.device,
        )
        self._stats.validation_accuracy = float(res["accuracy"])
        return float(res["accuracy"])

    def validate_predictions(self, inputs: Sequence[Any]) -> list[bool]:
        """True for every input whose prediction is non-finite or outside [-10, 10]."""
        flags = hallucination_flags(
            model=self.predictor.model,
            inputs=inputs,
            bound=HALLUCINATION_BOUND,
            batch_size=self.cfg.batch_size,
        )
        n_bad = sum(flags)
        if n_bad:
            logger.warning(f"{n_bad}/{len(flags)} predictions out of range or non-finite")
        return flags

    # ------------------------------------------------------------------
    # Checkpoints

    def save_checkpoint(self, path: str | Path) -> Path:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        torch.save(
            {
                "model": self.predictor.state_dict(),
                "model_config": self.predictor.model_config(),
                "optimizer": self.optimizer.opt.state_dict(),
                "stats": asdict(self._stats),
                "config": asdict(self.cfg),
            },
            p,
        )
        logger.debug(f"Saved checkpoint -> {p}")
        return p

    def load_checkpoint(self, path: str | Path) -> None:
        ckpt = torch.load(Path(path), map_location=self.predictor.device)
        self.predictor.model.load_state_dict(ckpt["model"])
        if "optimizer" in ckpt:
            self.optimizer.opt.load_state_dict(ckpt["optimizer"])
        self.predictor.reset_state()
        self._stats = TrainingStatistics(**ckpt.get("stats", {}))

        # Curriculum level only moves forward.
        if self.controller is not None:
            while self.controller.current_level() < self._stats.current_level and not self.controller.is_terminal():
                self.controller.advance()
            self._stats.current_level = self.controller.current_level()
        logger.info(f"Loaded checkpoint {path} (epoch={self._stats.epoch}, level={self._stats.current_level})")
