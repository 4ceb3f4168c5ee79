from __future__ import annotations

import math

import structlog

from unblock.clock import Clock, SystemClock
from unblock.locks import KeyedLocks
from unblock.schemas import (
    ConfusionOutcome,
    SupervisorTier,
    TierInfo,
    TrustEvent,
    TrustRecord,
)

log = structlog.get_logger(__name__)

INITIAL_SCORE = 50.0
MAX_HISTORY = 50
SCORE_MIN = 0.0
SCORE_MAX = 100.0

_TIERS: dict[int, TierInfo] = {
    1: TierInfo(
        tier=1,
        label="autonomous",
        can_score_real_tasks=True,
        can_auto_approve=True,
        allocation_weight=1.0,
    ),
    2: TierInfo(
        tier=2,
        label="standard",
        can_score_real_tasks=True,
        can_auto_approve=False,
        allocation_weight=1.0,
    ),
    3: TierInfo(
        tier=3,
        label="probation",
        can_score_real_tasks=True,
        can_auto_approve=False,
        allocation_weight=0.5,
    ),
    4: TierInfo(
        tier=4,
        label="suspended",
        can_score_real_tasks=False,
        can_auto_approve=False,
        allocation_weight=0.0,
    ),
}


def score_to_tier(score: float) -> SupervisorTier:
    if score >= 80:
        return 1
    if score >= 40:
        return 2
    if score >= 15:
        return 3
    return 4


def tier_info(score: float) -> TierInfo:
    return _TIERS[score_to_tier(score)]


def _clamp(v: float, *, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


class TrustStore:
    """Per-agent reputation ledger.

    Records are created lazily at ``INITIAL_SCORE`` and live for the process
    lifetime. ``apply_delta`` is the only way task outcomes move a score and
    ``seed`` sets a starting score. Every mutation of a given agent's record
    runs under that agent's lock; reads hand out deep copies so callers
    never alias internal state.
    """

    def __init__(self, *, clock: Clock | None = None, locks: KeyedLocks | None = None) -> None:
        self._clock = clock or SystemClock()
        self._locks = locks or KeyedLocks()
        self._records: dict[str, TrustRecord] = {}

    def _record(self, agent_id: str) -> TrustRecord:
        rec = self._records.get(agent_id)
        if rec is None:
            rec = TrustRecord(
                agent_id=agent_id,
                score=INITIAL_SCORE,
                tier=score_to_tier(INITIAL_SCORE),
                last_updated_ms=self._clock.now_ms(),
            )
            self._records[agent_id] = rec
        return rec

    def get_or_create(self, agent_id: str) -> TrustRecord:
        with self._locks.hold(agent_id):
            return self._record(agent_id).model_copy(deep=True)

    def get(self, agent_id: str) -> TrustRecord | None:
        with self._locks.hold(agent_id):
            rec = self._records.get(agent_id)
            return None if rec is None else rec.model_copy(deep=True)

    def list(self) -> list[TrustRecord]:
        return [r.model_copy(deep=True) for r in list(self._records.values())]

    def get_tier(self, agent_id: str) -> TierInfo:
        with self._locks.hold(agent_id):
            return tier_info(self._record(agent_id).score)

    def apply_delta(
        self,
        agent_id: str,
        delta: float,
        task_id: str,
        reason: str,
        proof: str | None = None,
    ) -> TrustRecord:
        if not math.isfinite(delta):
            raise ValueError(f"trust delta must be finite, got {delta!r}")
        with self._locks.hold(agent_id):
            rec = self._record(agent_id)
            now = self._clock.now_ms()
            rec.score = _clamp(rec.score + delta, lo=SCORE_MIN, hi=SCORE_MAX)
            rec.tier = score_to_tier(rec.score)
            rec.total_tasks += 1
            if delta > 0:
                rec.successful_tasks += 1
            elif delta < 0:
                rec.failed_tasks += 1
            rec.last_updated_ms = now

            rec.history.append(
                TrustEvent(task_id=task_id, delta=delta, reason=reason, timestamp_ms=now, proof=proof)
            )
            if len(rec.history) > MAX_HISTORY:
                del rec.history[: len(rec.history) - MAX_HISTORY]

            log.info(
                "trust_updated",
                agent_id=agent_id,
                score=rec.score,
                tier=rec.tier,
                delta=delta,
                reason=reason,
                task_id=task_id,
            )
            return rec.model_copy(deep=True)

    def seed(self, agent_id: str, score: float) -> TrustRecord:
        """Set a starting score without counting a task or writing history."""
        if not math.isfinite(score):
            raise ValueError(f"trust score must be finite, got {score!r}")
        with self._locks.hold(agent_id):
            rec = self._record(agent_id)
            rec.score = _clamp(score, lo=SCORE_MIN, hi=SCORE_MAX)
            rec.tier = score_to_tier(rec.score)
            rec.last_updated_ms = self._clock.now_ms()
            log.info("trust_seeded", agent_id=agent_id, score=rec.score, tier=rec.tier)
            return rec.model_copy(deep=True)

    def record_confusion_outcome(self, agent_id: str, outcome: ConfusionOutcome) -> None:
        with self._locks.hold(agent_id):
            matrix = self._record(agent_id).confusion_matrix
            key = ConfusionOutcome(outcome).value.lower()
            setattr(matrix, key, getattr(matrix, key) + 1)

    def record_calibration_attempt(self, agent_id: str, success: bool) -> None:
        with self._locks.hold(agent_id):
            rec = self._record(agent_id)
            rec.calibration_attempts += 1
            if success:
                rec.calibration_successes += 1

    def meets_threshold(self, agent_id: str, threshold: float) -> bool:
        """Claim gate. Agents with no record yet pass by default."""
        with self._locks.hold(agent_id):
            rec = self._records.get(agent_id)
            return True if rec is None else rec.score >= threshold
