from __future__ import annotations

from dataclasses import dataclass

from unblock.schemas import ConfusionOutcome


@dataclass(frozen=True)
class TrustPolicy:
    # Supervisor call vs. verifier verdict. False approval costs the most.
    tp_delta: float = 3.0
    tn_delta: float = 3.0
    fp_delta: float = -8.0
    fn_delta: float = -3.0

    auto_approve_supervisor_delta: float = 3.0
    auto_approve_subscriber_delta: float = 3.0
    verified_subscriber_delta: float = 5.0
    disputed_subscriber_delta: float = -10.0

    # Rehabilitation is a slow climb, one correct practice call at a time.
    calibration_correct_delta: float = 1.0

    def confusion_delta(self, outcome: ConfusionOutcome) -> float:
        return {
            ConfusionOutcome.TP: self.tp_delta,
            ConfusionOutcome.TN: self.tn_delta,
            ConfusionOutcome.FP: self.fp_delta,
            ConfusionOutcome.FN: self.fn_delta,
        }[outcome]


def classify_confusion(*, passed_threshold: bool, verifier_agrees: bool) -> ConfusionOutcome:
    """Classify a supervisor's pass/fail call against the verifier's verdict."""
    if passed_threshold:
        return ConfusionOutcome.TP if verifier_agrees else ConfusionOutcome.FP
    return ConfusionOutcome.TN if verifier_agrees else ConfusionOutcome.FN
