from __future__ import annotations

import math

import pytest

from unblock.policy import TrustPolicy, classify_confusion
from unblock.schemas import ConfusionOutcome
from unblock.trust import INITIAL_SCORE, MAX_HISTORY, TrustStore, score_to_tier, tier_info


@pytest.mark.parametrize(
    ("score", "tier"),
    [(100, 1), (80, 1), (79, 2), (40, 2), (39, 3), (15, 3), (14, 4), (0, 4)],
)
def test_tier_boundaries(score: float, tier: int) -> None:
    assert score_to_tier(score) == tier


def test_tier_capabilities() -> None:
    assert tier_info(85).can_auto_approve is True
    assert tier_info(60).can_auto_approve is False
    assert tier_info(20).can_score_real_tasks is True
    assert tier_info(20).allocation_weight == 0.5
    suspended = tier_info(10)
    assert suspended.label == "suspended"
    assert suspended.can_score_real_tasks is False
    assert suspended.allocation_weight == 0.0


def test_records_are_seeded_lazily(clock) -> None:
    store = TrustStore(clock=clock)
    assert store.get("a") is None

    rec = store.get_or_create("a")
    assert rec.score == INITIAL_SCORE
    assert rec.tier == 2
    assert rec.last_updated_ms == clock.now_ms()
    assert store.get("a") is not None


def test_apply_delta_clamps_and_counts(clock) -> None:
    store = TrustStore(clock=clock)

    rec = store.apply_delta("a", 80, "t1", "big win")
    assert rec.score == 100
    assert rec.tier == 1
    assert rec.successful_tasks == 1

    rec = store.apply_delta("a", -250, "t2", "disaster")
    assert rec.score == 0
    assert rec.tier == 4
    assert rec.failed_tasks == 1

    rec = store.apply_delta("a", 0, "t3", "noop")
    assert rec.total_tasks == 3
    assert rec.successful_tasks == 1
    assert rec.failed_tasks == 1


def test_history_keeps_last_fifty(clock) -> None:
    store = TrustStore(clock=clock)
    for i in range(MAX_HISTORY + 7):
        store.apply_delta("a", 0.1, f"t{i}", "tick", proof=f"p{i}")

    rec = store.get_or_create("a")
    assert len(rec.history) == MAX_HISTORY
    assert rec.history[0].task_id == "t7"
    assert rec.history[-1].proof == f"p{MAX_HISTORY + 6}"


def test_reads_return_copies(clock) -> None:
    store = TrustStore(clock=clock)
    rec = store.apply_delta("a", 5, "t1", "ok")
    rec.score = 1
    rec.history.clear()

    fresh = store.get_or_create("a")
    assert fresh.score == 55
    assert len(fresh.history) == 1


def test_confusion_and_calibration_counters(clock) -> None:
    store = TrustStore(clock=clock)
    store.record_confusion_outcome("sup", ConfusionOutcome.TP)
    store.record_confusion_outcome("sup", ConfusionOutcome.FP)
    store.record_confusion_outcome("sup", ConfusionOutcome.FP)
    store.record_calibration_attempt("sup", True)
    store.record_calibration_attempt("sup", False)

    rec = store.get_or_create("sup")
    assert (rec.confusion_matrix.tp, rec.confusion_matrix.fp) == (1, 2)
    assert (rec.confusion_matrix.tn, rec.confusion_matrix.fn) == (0, 0)
    assert rec.calibration_attempts == 2
    assert rec.calibration_successes == 1
    # Counters alone never move the score.
    assert rec.score == INITIAL_SCORE


def test_meets_threshold_passes_unknown_agents(clock) -> None:
    store = TrustStore(clock=clock)
    assert store.meets_threshold("newcomer", 10) is True

    store.apply_delta("low", -45, "t1", "bad")
    assert store.meets_threshold("low", 10) is False
    assert store.meets_threshold("low", 5) is True


@pytest.mark.parametrize(
    ("passed", "agrees", "outcome", "delta"),
    [
        (True, True, ConfusionOutcome.TP, 3),
        (False, True, ConfusionOutcome.TN, 3),
        (True, False, ConfusionOutcome.FP, -8),
        (False, False, ConfusionOutcome.FN, -3),
    ],
)
def test_confusion_table(passed: bool, agrees: bool, outcome: ConfusionOutcome, delta: float) -> None:
    got = classify_confusion(passed_threshold=passed, verifier_agrees=agrees)
    assert got == outcome
    assert TrustPolicy().confusion_delta(got) == delta


@pytest.mark.parametrize("delta", [math.nan, math.inf, -math.inf])
def test_non_finite_delta_is_rejected(clock, delta: float) -> None:
    store = TrustStore(clock=clock)

    with pytest.raises(ValueError, match="finite"):
        store.apply_delta("a", delta, "t1", "bad")

    assert store.get("a") is None


def test_nan_delta_leaves_existing_score(clock) -> None:
    store = TrustStore(clock=clock)
    store.apply_delta("a", -20, "t1", "miss")

    with pytest.raises(ValueError):
        store.apply_delta("a", math.nan, "t2", "bad")

    rec = store.get_or_create("a")
    assert rec.score == 30
    assert rec.tier == 3
    assert rec.total_tasks == 1


def test_seed_sets_score_without_counting_a_task(clock) -> None:
    store = TrustStore(clock=clock)

    rec = store.seed("a", 85)

    assert rec.score == 85
    assert rec.tier == 1
    assert (rec.total_tasks, rec.successful_tasks, rec.failed_tasks) == (0, 0, 0)
    assert rec.history == []
    assert store.seed("b", 140).score == 100
    with pytest.raises(ValueError):
        store.seed("c", math.nan)
