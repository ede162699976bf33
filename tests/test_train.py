import json
import threading

import numpy as np
import pytest
import torch

from curriculum_chess.associative import AssociativeLearner, ConditionedStimulus, UnconditionedStimulus
from curriculum_chess.curriculum import DifficultyController
from curriculum_chess.nn.plots import read_metrics
from curriculum_chess.nn.predictor import Predictor
from curriculum_chess.nn.train import TrainConfig, TrainingOrchestrator, TrainingStatistics
from curriculum_chess.schemas import TrainingItem

X = [0.5, 0.5, 0.5, 0.5]


def _orch(predictor, clock, **kw) -> TrainingOrchestrator:
    return TrainingOrchestrator(predictor, TrainConfig(**kw), clock=clock)


def _poison(predictor: Predictor) -> None:
    with torch.no_grad():
        predictor.model.head.bias.fill_(float("nan"))


def test_components_follow_toggles(predictor, clock):
    orch = _orch(predictor, clock, use_curriculum=False, use_spaced_repetition=True, use_pavlovian=False)
    assert orch.controller is None
    assert orch.scheduler is not None
    assert orch.learner is None


def test_injected_components_are_used(predictor, clock):
    controller = DifficultyController(2, clock=clock)
    learner = AssociativeLearner(0.3)
    orch = TrainingOrchestrator(predictor, TrainConfig(), controller=controller, learner=learner, clock=clock)
    assert orch.controller is controller
    assert orch.learner is learner


def test_unknown_optimizer_fails_at_construction(predictor, clock):
    with pytest.raises(ValueError):
        _orch(predictor, clock, optimizer="newton")


def test_one_correct_item_advances_one_level(predictor, clock, item):
    orch = _orch(
        predictor,
        clock,
        num_levels=5,
        correct_threshold=10.0,
        use_spaced_repetition=False,
        use_pavlovian=False,
    )
    orch.controller.add_example(item, 0)
    orch.train_curriculum_epoch()

    st = orch.stats
    assert st.accuracy == 1.0
    assert st.examples_seen == 1
    assert orch.controller.current_level() == 1
    assert st.current_level == 1

    stored = orch.controller.level(0).store[0]
    assert stored.attempts == 1
    assert stored.is_correct is True
    assert stored.correct_streak == 1
    assert orch.controller.level(0).examples_seen == 1


def test_failed_level_does_not_advance(predictor, clock, item):
    orch = _orch(predictor, clock, num_levels=3, correct_threshold=0.0, use_spaced_repetition=False)
    orch.controller.add_example(item, 0)
    orch.train_curriculum_epoch()
    assert orch.stats.accuracy == 0.0
    assert orch.controller.current_level() == 0


def test_empty_sources_are_silent_noops(predictor, clock):
    orch = _orch(predictor, clock)
    orch.train_curriculum_epoch()
    assert orch.train_spaced_repetition_step() is False
    loss = orch.train_epoch()

    st = orch.stats
    assert np.isnan(loss)
    assert st.epoch == 1
    assert st.examples_seen == 0
    assert st.current_level == 0


def test_curriculum_step_updates_weights(predictor, clock, item):
    orch = _orch(predictor, clock, learning_rate=0.05, use_spaced_repetition=False)
    orch.controller.add_example(item, 0)
    before = [p.detach().clone() for p in predictor.parameters()]
    orch.train_curriculum_epoch()
    after = list(predictor.parameters())
    assert any(not torch.equal(b, a) for b, a in zip(before, after))
    assert orch.optimizer.steps == 1
    assert orch.stats.average_loss > 0.0


def test_spaced_repetition_reviews_due_items(predictor, clock, item):
    orch = _orch(predictor, clock, use_curriculum=False, correct_threshold=10.0)
    orch.add_example(item)
    assert orch.train_spaced_repetition_step() is False

    clock.advance_hours(1.0)
    assert orch.train_spaced_repetition_step() is True
    e = orch.scheduler.entry(0)
    assert e.attempts == 1
    assert e.correct_streak == 1
    assert e.next_review == pytest.approx(clock.now + 2.5 * 3600.0)
    assert orch.stats.examples_seen == 1

    # No longer due.
    assert orch.train_spaced_repetition_step() is False


def test_non_finite_output_is_counted_incorrect(predictor, clock, item):
    orch = _orch(predictor, clock, num_levels=2)
    orch.add_example(item, 0)
    clock.advance_hours(1.0)
    _poison(predictor)

    orch.train_epoch()
    st = orch.stats
    assert st.non_finite_steps == 2  # curriculum item + due review
    assert st.examples_seen == 2
    assert st.accuracy == 0.0
    assert orch.optimizer.steps == 0
    assert orch.optimizer.has_gradients() is False

    assert st.review_accuracy == 0.0

    # Unreliable readings leave review history untouched.
    e = orch.scheduler.entry(0)
    assert e.attempts == 0
    assert e.next_review == clock.now
    assert orch.controller.level(0).store[0].attempts == 0


def test_non_finite_review_keeps_long_term_memory(predictor, clock, item):
    orch = _orch(predictor, clock, use_curriculum=False, ltm_threshold=5)
    orch.add_example(item)
    for _ in range(5):
        orch.scheduler.update(0, True)
    assert orch.scheduler.is_in_long_term_memory(0)
    before = orch.scheduler.entry(0)

    clock.advance_hours(10_000.0)
    _poison(predictor)
    assert orch.train_spaced_repetition_step() is True

    after = orch.scheduler.entry(0)
    assert orch.scheduler.is_in_long_term_memory(0)
    assert after.correct_streak == 5
    assert after.attempts == before.attempts
    assert after.next_review == before.next_review
    assert orch.stats.non_finite_steps == 1
    assert orch.stats.review_accuracy == 0.0


def test_non_finite_curriculum_step_keeps_item_streak(predictor, clock, item):
    orch = _orch(predictor, clock, num_levels=1, correct_threshold=10.0, use_spaced_repetition=False)
    orch.add_example(item)
    orch.train_curriculum_epoch()
    assert orch.stats.accuracy == 1.0

    _poison(predictor)
    orch.train_curriculum_epoch()
    stored = orch.controller.current_store()[0]
    assert orch.stats.accuracy == 0.0
    assert stored.correct_streak == 1
    assert stored.attempts == 1
    assert stored.is_correct is True


def test_review_accuracy_tracks_spaced_repetition(predictor, clock, item):
    orch = _orch(predictor, clock, use_curriculum=False, correct_threshold=10.0)
    orch.add_example(item)
    orch.add_example(TrainingItem(input=X, target=[50.0, 50.0]))
    clock.advance_hours(1.0)
    assert orch.train_spaced_repetition_step() is True
    assert orch.train_spaced_repetition_step() is True
    assert orch.stats.review_accuracy == pytest.approx(0.5)
    assert orch.stats.accuracy == 0.0


@pytest.mark.parametrize("bad", [TrainingItem(input=[1.0], target=[0.0, 0.0]), TrainingItem(input=X, target=[0.0])])
def test_add_example_rejects_wrong_widths(predictor, clock, bad):
    orch = _orch(predictor, clock)
    with pytest.raises(ValueError):
        orch.add_example(bad)
    assert len(orch.controller.level(0).store) == 0
    assert len(orch.scheduler) == 0


def test_evaluate_rejects_wrong_widths(predictor, clock):
    orch = _orch(predictor, clock)
    with pytest.raises(ValueError):
        orch.evaluate([TrainingItem(input=[1.0, 2.0], target=[0.0, 0.0])])
    assert orch.stats.validation_accuracy == 0.0


def test_pavlovian_pairs_then_fits_expected_reward(predictor, clock):
    orch = _orch(predictor, clock, use_curriculum=False, use_spaced_repetition=False)
    cs = ConditionedStimulus(vector=X)
    us = UnconditionedStimulus(vector=[1.0], reward=1.0)

    before = [p.detach().clone() for p in predictor.parameters()]
    loss = orch.train_pavlovian(cs, us)

    assert loss is not None and loss >= 0.0
    assert orch.learner.association_strength(cs, us) == pytest.approx(0.1)
    assert orch.learner.expected_reward(cs) == pytest.approx(0.1)
    assert orch.stats.examples_seen == 1
    assert any(not torch.equal(b, a) for b, a in zip(before, predictor.parameters()))


def test_pavlovian_disabled_returns_none(predictor, clock):
    orch = _orch(predictor, clock, use_pavlovian=False)
    cs = ConditionedStimulus(vector=X)
    assert orch.train_pavlovian(cs, UnconditionedStimulus(vector=[1.0], reward=1.0)) is None
    assert orch.stats.examples_seen == 0


def test_pavlovian_rejects_wrong_stimulus_width(predictor, clock):
    orch = _orch(predictor, clock)
    with pytest.raises(ValueError):
        orch.train_pavlovian(ConditionedStimulus(vector=[1.0]), UnconditionedStimulus(vector=[1.0], reward=1.0))


def test_stats_are_snapshots(predictor, clock):
    orch = _orch(predictor, clock)
    snap = orch.stats
    assert isinstance(snap, TrainingStatistics)
    snap.epoch = 99
    assert orch.stats.epoch == 0


def test_cancel_before_train_stops_immediately(predictor, clock, item):
    orch = _orch(predictor, clock)
    orch.add_example(item)
    orch.cancel()
    st = orch.train(max_epochs=5)
    assert st.epoch == 0
    assert orch.cancelled is False


def test_cancel_from_another_thread(predictor, clock, item):
    orch = _orch(predictor, clock, early_stop_loss=0.0, patience=0)
    orch.add_example(item)
    t = threading.Thread(target=orch.cancel)
    t.start()
    t.join()
    assert orch.train(max_epochs=50).epoch == 0


def test_early_stop_on_loss(predictor, clock, item):
    orch = _orch(predictor, clock, early_stop_loss=1e9, correct_threshold=0.0, use_spaced_repetition=False)
    orch.add_example(item)
    st = orch.train(max_epochs=10)
    assert st.epoch == 1
    assert st.training_time >= 0.0


def test_patience_stop(predictor, clock, item):
    orch = _orch(
        predictor,
        clock,
        num_levels=2,
        correct_threshold=0.0,
        early_stop_loss=0.0,
        early_stop_min_delta=1e9,
        patience=2,
        use_spaced_repetition=False,
    )
    orch.add_example(item)
    assert orch.train(max_epochs=20).epoch == 3


def test_train_runs_max_epochs_without_stops(predictor, clock, item):
    orch = _orch(predictor, clock, early_stop_loss=0.0, patience=0, correct_threshold=0.0)
    orch.add_example(item)
    assert orch.train(max_epochs=4).epoch == 4


def test_train_writes_run_artifacts(tmp_path, predictor, clock, item):
    out = tmp_path / "run"
    orch = _orch(predictor, clock, early_stop_loss=0.0, patience=0, correct_threshold=0.0, out_dir=str(out))
    orch.add_example(item)
    orch.train(max_epochs=3)

    assert (out / "ckpt_final.pt").exists()
    cfg = json.loads((out / "config.json").read_text(encoding="utf-8"))
    assert cfg["optimizer"] == "adam"

    rows = read_metrics(out / "metrics.jsonl")
    loss_epochs = [r.epoch for r in rows if r.name == "loss" and r.level is None]
    assert loss_epochs == [1, 2, 3]
    assert any(r.name == "accuracy" and r.level == 0 for r in rows)


def test_checkpoint_roundtrip(tmp_path, predictor, clock, item):
    orch = _orch(predictor, clock, num_levels=4, correct_threshold=10.0, use_spaced_repetition=False)
    orch.add_example(item)
    orch.train_epoch()
    assert orch.stats.current_level == 1
    path = orch.save_checkpoint(tmp_path / "ckpt.pt")

    fresh = Predictor.create(input_size=4, hidden_size=8, output_size=2, seed=123)
    other = _orch(fresh, clock, num_levels=4, use_spaced_repetition=False)
    other.load_checkpoint(path)

    assert other.stats == orch.stats
    assert other.controller.current_level() == 1
    for a, b in zip(fresh.parameters(), predictor.parameters()):
        assert torch.equal(a, b)


def test_evaluate_does_not_touch_training_state(predictor, clock, item):
    orch = _orch(predictor, clock, correct_threshold=10.0)
    predictor.forward(X)
    with predictor.preserve_state():
        before = predictor.forward(X)

    acc = orch.evaluate([item, item])
    assert acc == 1.0
    assert orch.stats.validation_accuracy == 1.0
    assert orch.stats.examples_seen == 0

    with predictor.preserve_state():
        after = predictor.forward(X)
    np.testing.assert_allclose(before, after)


def test_evaluate_empty_is_zero(predictor, clock):
    assert _orch(predictor, clock).evaluate([]) == 0.0


def test_validate_predictions_flags_out_of_range(predictor, clock):
    orch = _orch(predictor, clock)
    assert orch.validate_predictions([X, X]) == [False, False]

    with torch.no_grad():
        predictor.model.head.bias.fill_(50.0)
    assert orch.validate_predictions([X]) == [True]

    _poison(predictor)
    assert orch.validate_predictions([X]) == [True]


def test_training_item_counters_in_store_are_updated(predictor, clock):
    orch = _orch(predictor, clock, correct_threshold=0.0, use_spaced_repetition=False)
    orch.add_example(TrainingItem(input=X, target=[5.0, 5.0]))
    orch.train_curriculum_epoch()
    orch.train_curriculum_epoch()
    stored = orch.controller.current_store()[0]
    assert stored.attempts == 2
    assert stored.correct_streak == 0
    assert stored.last_reviewed == clock.now
