from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from unblock.clock import Clock, SystemClock
from unblock.errors import InvalidTransition, NotFound
from unblock.lifecycle import new_id
from unblock.schemas import CalibrationAttempt, CalibrationTask, VerifiedPaidTask

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CalibrationVerdict:
    passes_threshold: bool
    score_diff: float
    matches_ground_truth: bool


def evaluate_calibration_score(
    *,
    calibration: CalibrationTask,
    score: float,
    threshold: float,
    tolerance: float,
) -> CalibrationVerdict:
    """Match needs the right side of the threshold and a score within tolerance."""
    passes = score >= threshold
    diff = abs(score - calibration.ground_truth_score)
    return CalibrationVerdict(
        passes_threshold=passes,
        score_diff=diff,
        matches_ground_truth=passes == calibration.ground_truth_passes and diff <= tolerance,
    )


class CalibrationStore:
    """Practice tasks derived from verified real tasks.

    At most one calibration task exists per source task, and each supervisor
    sees a given calibration task at most once.
    """

    def __init__(self, *, clock: Clock | None = None, id_factory: Callable[[], str] = new_id) -> None:
        self._clock = clock or SystemClock()
        self._new_id = id_factory
        self._lock = threading.RLock()
        self._tasks: dict[str, CalibrationTask] = {}
        self._by_source: dict[str, str] = {}
        self._attempts: list[CalibrationAttempt] = []
        # calibration task id -> supervisor ids that already attempted it
        self._attempted_by: dict[str, set[str]] = {}

    def create_from_verified(self, task: VerifiedPaidTask, threshold: float) -> CalibrationTask:
        with self._lock:
            existing_id = self._by_source.get(task.id)
            if existing_id is not None:
                return self._tasks[existing_id]

            review = task.verifier_review
            ground_truth = review.ground_truth_score if review is not None else 0.0
            ct = CalibrationTask(
                id=self._new_id(),
                source_task_id=task.id,
                question=task.question,
                context=task.context,
                fulfillment_text=task.fulfillment.fulfillment_text,
                ground_truth_score=ground_truth,
                ground_truth_passes=ground_truth >= threshold,
                created_at_ms=self._clock.now_ms(),
            )
            self._tasks[ct.id] = ct
            self._by_source[task.id] = ct.id
            log.info(
                "calibration_task_created",
                calibration_task_id=ct.id,
                source_task_id=task.id,
                ground_truth_score=ground_truth,
            )
            return ct

    def get(self, calibration_task_id: str) -> CalibrationTask | None:
        with self._lock:
            return self._tasks.get(calibration_task_id)

    def must_get(self, calibration_task_id: str) -> CalibrationTask:
        ct = self.get(calibration_task_id)
        if ct is None:
            raise NotFound("calibration task", calibration_task_id)
        return ct

    def for_source(self, source_task_id: str) -> CalibrationTask | None:
        with self._lock:
            ct_id = self._by_source.get(source_task_id)
            return None if ct_id is None else self._tasks[ct_id]

    def list(self) -> list[CalibrationTask]:
        with self._lock:
            return list(self._tasks.values())

    def list_for(self, supervisor_agent_id: str) -> list[CalibrationTask]:
        with self._lock:
            return [
                ct
                for ct in self._tasks.values()
                if supervisor_agent_id not in self._attempted_by.get(ct.id, ())
            ]

    def has_attempted(self, calibration_task_id: str, supervisor_agent_id: str) -> bool:
        with self._lock:
            return supervisor_agent_id in self._attempted_by.get(calibration_task_id, ())

    def record_attempt(self, attempt: CalibrationAttempt) -> None:
        with self._lock:
            if attempt.calibration_task_id not in self._tasks:
                raise NotFound("calibration task", attempt.calibration_task_id)
            seen = self._attempted_by.setdefault(attempt.calibration_task_id, set())
            if attempt.supervisor_agent_id in seen:
                raise InvalidTransition(
                    task_id=attempt.calibration_task_id,
                    action="attempt calibration",
                    status="ATTEMPTED",
                    expected=("NOT_ATTEMPTED",),
                    detail=f"supervisor {attempt.supervisor_agent_id} already attempted it",
                )
            seen.add(attempt.supervisor_agent_id)
            self._attempts.append(attempt)

    def attempts_for(self, supervisor_agent_id: str) -> list[CalibrationAttempt]:
        with self._lock:
            return [a for a in self._attempts if a.supervisor_agent_id == supervisor_agent_id]
