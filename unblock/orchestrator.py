from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog

from unblock.calibration import CalibrationStore, evaluate_calibration_score
from unblock.clock import Clock, SystemClock
from unblock.config import MarketSettings
from unblock.errors import CapabilityDenied, EscrowFailure, InvalidTransition
from unblock.escrow import Escrow, MockEscrow, split_amounts
from unblock.ledger import InMemoryLedger, Ledger
from unblock.lifecycle import TaskLifecycle, new_id
from unblock.locks import KeyedLocks
from unblock.policy import TrustPolicy, classify_confusion
from unblock.registry import AgentRegistry
from unblock.schemas import (
    AgentRegistration,
    CalibrationAttempt,
    CalibrationTask,
    ClaimedTask,
    ConfirmedPaidTask,
    ConfusionOutcome,
    CreateTaskRequest,
    DisputedTask,
    EventType,
    ExpiredRefundedTask,
    FulfilledTask,
    OpenTask,
    RegisterAgentRequest,
    RejectedRefundedTask,
    ScoredTask,
    Task,
    TaskStatus,
    TrustRecord,
    VerifiedPaidTask,
)
from unblock.store import TaskStore
from unblock.trust import TrustStore

log = structlog.get_logger(__name__)

_SETTLEABLE = (VerifiedPaidTask, ConfirmedPaidTask, RejectedRefundedTask, ExpiredRefundedTask)


class RandomSource(Protocol):
    """Uniform draws in [0, 1). ``random.Random`` satisfies this."""

    def random(self) -> float: ...


@dataclass(frozen=True)
class ScoreResult:
    task: Task
    auto_approved: bool = False
    audited: bool = False
    escrow_error: EscrowFailure | None = None


@dataclass(frozen=True)
class VerifyResult:
    task: Task
    outcome: ConfusionOutcome
    supervisor_delta: float
    new_task: OpenTask | None = None
    calibration_task: CalibrationTask | None = None
    escrow_error: EscrowFailure | None = None


@dataclass(frozen=True)
class SettleResult:
    task: Task
    escrow_error: EscrowFailure | None = None

    @property
    def settled(self) -> bool:
        return self.escrow_error is None


class Orchestrator:
    """Runs each external market event as one atomic unit against its task.

    Trust gating, audit sampling and payment-split policy all live here. Each
    handler holds the task's lock for its whole run; trust mutations are
    serialized per agent inside ``TrustStore``. The payment rail is only called
    after the new task snapshot is committed, and a failed payment never rolls
    that snapshot back: the task keeps its decided status with
    ``settled=False`` until ``retry_settlement`` succeeds.
    """

    def __init__(
        self,
        *,
        settings: MarketSettings | None = None,
        clock: Clock | None = None,
        tasks: TaskStore | None = None,
        trust: TrustStore | None = None,
        calibrations: CalibrationStore | None = None,
        escrow: Escrow | None = None,
        ledger: Ledger | None = None,
        registry: AgentRegistry | None = None,
        policy: TrustPolicy | None = None,
        rng: RandomSource | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._settings = settings or MarketSettings()
        self._clock = clock or SystemClock()
        self._new_id = id_factory or new_id
        self._tasks = tasks if tasks is not None else TaskStore()
        self._trust = trust if trust is not None else TrustStore(clock=self._clock)
        self._calibrations = (
            calibrations
            if calibrations is not None
            else CalibrationStore(clock=self._clock, id_factory=self._new_id)
        )
        self._escrow = escrow if escrow is not None else MockEscrow()
        self._ledger = ledger if ledger is not None else InMemoryLedger()
        self._registry = registry if registry is not None else AgentRegistry(clock=self._clock)
        self._policy = policy or TrustPolicy()
        self._rng = rng if rng is not None else random.Random()
        self._lifecycle = TaskLifecycle(clock=self._clock, id_factory=self._new_id)
        self._task_locks = KeyedLocks()

    @property
    def settings(self) -> MarketSettings:
        return self._settings

    @property
    def tasks(self) -> TaskStore:
        return self._tasks

    @property
    def trust(self) -> TrustStore:
        return self._trust

    @property
    def calibrations(self) -> CalibrationStore:
        return self._calibrations

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    # ── helpers ──

    def _audit(self, event_type: EventType, **payload: Any) -> None:
        ts = datetime.fromtimestamp(self._clock.now_ms() / 1000, tz=UTC)
        self._ledger.append(event_type, payload=payload, ts=ts)

    def _commit(self, task: Task) -> Task:
        self._tasks.upsert(task)
        return task

    def _adjust_trust(self, agent_id: str, delta: float, task_id: str, reason: str) -> TrustRecord:
        rec = self._trust.apply_delta(agent_id, delta, task_id, reason)
        self._audit(
            EventType.TRUST_UPDATED,
            agent_id=agent_id,
            task_id=task_id,
            delta=delta,
            score=rec.score,
            tier=rec.tier,
            reason=reason,
        )
        return rec

    def _settle(self, task: Task) -> SettleResult:
        """Move the funds a decided task calls for and record the proofs."""
        share = self._settings.subscriber_payment_share
        transfers: list[dict[str, Any]] = []

        def pay() -> dict[str, str]:
            if isinstance(task, VerifiedPaidTask):
                subscriber = self._registry.payout_address(task.subscriber_agent_id)
                if task.verifier_review is None:
                    proof = self._escrow.release_full(task, subscriber)
                    transfers.append(
                        {"recipient": subscriber, "amount": task.bounty_amount, "proof": proof}
                    )
                    return {"subscriber_payment_proof": proof}
                verifier = task.verifier_review.verifier
                split = self._escrow.release_split(task, subscriber, verifier, share)
                sub_amount, ver_amount = split_amounts(task.bounty_amount, share)
                transfers.append(
                    {"recipient": subscriber, "amount": sub_amount, "proof": split.subscriber_proof}
                )
                transfers.append(
                    {"recipient": verifier, "amount": ver_amount, "proof": split.verifier_proof}
                )
                return {
                    "subscriber_payment_proof": split.subscriber_proof,
                    "verifier_payment_proof": split.verifier_proof,
                }
            if isinstance(task, ConfirmedPaidTask):
                proof = self._escrow.release_full(task, task.resolver_address)
                transfers.append(
                    {"recipient": task.resolver_address, "amount": task.bounty_amount, "proof": proof}
                )
                return {"release_proof": proof}
            if isinstance(task, RejectedRefundedTask | ExpiredRefundedTask):
                proof = self._escrow.refund(task)
                transfers.append({"recipient": task.payer, "amount": task.bounty_amount, "proof": proof})
                return {"refund_proof": proof}
            raise InvalidTransition(
                task_id=task.id,
                action="settle",
                status=task.status,
                expected=tuple(cls.model_fields["status"].default for cls in _SETTLEABLE),
            )

        operation = "refund" if isinstance(task, RejectedRefundedTask | ExpiredRefundedTask) else "release"
        try:
            proofs = pay()
        except InvalidTransition:
            raise
        except EscrowFailure as e:
            error = e
        except Exception as e:
            error = EscrowFailure(operation, f"{type(e).__name__}: {e}")
        else:
            settled = self._commit(self._lifecycle.mark_settled(task, **proofs))
            event = EventType.REFUND_ISSUED if operation == "refund" else EventType.PAYMENT_RELEASED
            self._audit(event, task_id=task.id, status=task.status, transfers=transfers)
            return SettleResult(task=settled)

        log.warning(
            "escrow_failed",
            task_id=task.id,
            status=task.status,
            operation=error.operation,
            detail=error.detail,
        )
        self._audit(
            EventType.ESCROW_FAILED,
            task_id=task.id,
            status=task.status,
            operation=error.operation,
            detail=error.detail,
        )
        return SettleResult(task=task, escrow_error=error)

    # ── agents ──

    def register_agent(self, req: RegisterAgentRequest, *, agent_id: str | None = None) -> AgentRegistration:
        agent = self._registry.register(req, agent_id=agent_id)
        rec = self._trust.get_or_create(agent.agent_id)
        self._audit(
            EventType.AGENT_REGISTERED,
            agent_id=agent.agent_id,
            name=agent.name,
            role=agent.role.value,
            trust_score=rec.score,
        )
        return agent

    # ── task reads ──

    def get_task(self, task_id: str) -> Task:
        return self._tasks.must_get(task_id)

    def list_tasks(self, status: TaskStatus | str | None = None) -> list[Task]:
        return self._tasks.list(status)

    # ── supervised flow ──

    def create_task(self, req: CreateTaskRequest) -> OpenTask:
        if req.lock_proof and self._settings.verify_lock_proofs:
            try:
                check = self._escrow.verify_lock_proof(req.lock_proof, req.payer, req.bounty_amount)
            except EscrowFailure:
                raise
            except Exception as e:
                raise EscrowFailure("verify_lock_proof", f"{type(e).__name__}: {e}") from e
            if not check.ok:
                raise EscrowFailure("verify_lock_proof", check.error or "lock proof rejected")

        task = self._lifecycle.create(req)
        with self._task_locks.hold(task.id):
            self._commit(task)
            self._audit(
                EventType.TASK_CREATED,
                task_id=task.id,
                bounty_amount=task.bounty_amount,
                payer=task.payer,
                publisher_agent_id=task.publisher_agent_id,
            )
        log.info("task_created", task_id=task.id, bounty_amount=task.bounty_amount)
        return task

    def claim(self, task_id: str, subscriber_agent_id: str) -> ClaimedTask:
        min_trust = self._settings.subscriber_min_claim_trust
        if not self._trust.meets_threshold(subscriber_agent_id, min_trust):
            rec = self._trust.get(subscriber_agent_id)
            raise CapabilityDenied(
                agent_id=subscriber_agent_id,
                reason=f"subscriber trust below claim minimum {min_trust}",
                score=None if rec is None else rec.score,
            )
        with self._task_locks.hold(task_id):
            claimed = self._lifecycle.claim(self._tasks.must_get(task_id), subscriber_agent_id)
            self._commit(claimed)
            self._audit(EventType.TASK_CLAIMED, task_id=task_id, subscriber_agent_id=subscriber_agent_id)
            return claimed

    def fulfill(
        self,
        task_id: str,
        subscriber_agent_id: str,
        fulfillment_text: str,
        fulfillment_data: dict[str, Any] | None = None,
    ) -> FulfilledTask:
        with self._task_locks.hold(task_id):
            fulfilled = self._lifecycle.fulfill(
                self._tasks.must_get(task_id),
                subscriber_agent_id,
                fulfillment_text,
                fulfillment_data,
            )
            self._commit(fulfilled)
            self._audit(
                EventType.FULFILLMENT_SUBMITTED,
                task_id=task_id,
                subscriber_agent_id=subscriber_agent_id,
                fulfillment_id=fulfilled.fulfillment.id,
            )
            return fulfilled

    def score(
        self,
        task_id: str,
        supervisor_agent_id: str,
        score: float,
        reasoning: str,
    ) -> ScoreResult:
        tier = self._trust.get_tier(supervisor_agent_id)
        if not tier.can_score_real_tasks:
            raise CapabilityDenied(
                agent_id=supervisor_agent_id,
                reason=f"tier {tier.tier} ({tier.label}) supervisors must use calibration tasks",
            )

        with self._task_locks.hold(task_id):
            scored = self._lifecycle.submit_score(
                self._tasks.must_get(task_id),
                supervisor_agent_id,
                score,
                reasoning,
                self._settings.supervisor_score_threshold,
            )
            self._commit(scored)
            self._audit(
                EventType.SCORE_SUBMITTED,
                task_id=task_id,
                supervisor_agent_id=supervisor_agent_id,
                score=score,
                passes_threshold=scored.supervisor_score.passes_threshold,
                tier=tier.tier,
            )

            audited = False
            if tier.can_auto_approve and scored.supervisor_score.passes_threshold:
                # Snapshot read: a concurrent trust change may land right after this.
                subscriber = self._trust.get_or_create(scored.subscriber_agent_id)
                if subscriber.score >= self._settings.auto_approve_subscriber_min_trust:
                    audited = self._rng.random() < self._settings.audit_sample_rate
                    if not audited:
                        return self._auto_approve(scored)

            under_review = self._commit(self._lifecycle.assign_verifier(scored))
            self._audit(EventType.VERIFIER_ASSIGNED, task_id=task_id, audit_sample=audited)
            return ScoreResult(task=under_review, audited=audited)

    def _auto_approve(self, scored: ScoredTask) -> ScoreResult:
        approved = self._commit(self._lifecycle.auto_approve(scored))
        supervisor_id = scored.supervisor_score.supervisor_agent_id
        self._audit(
            EventType.TASK_AUTO_APPROVED,
            task_id=approved.id,
            supervisor_agent_id=supervisor_id,
            subscriber_agent_id=approved.subscriber_agent_id,
        )
        self._adjust_trust(
            supervisor_id,
            self._policy.auto_approve_supervisor_delta,
            approved.id,
            "auto-approve TP (tier 1 supervisor)",
        )
        self._trust.record_confusion_outcome(supervisor_id, ConfusionOutcome.TP)
        self._adjust_trust(
            approved.subscriber_agent_id,
            self._policy.auto_approve_subscriber_delta,
            approved.id,
            "auto-approved fulfillment",
        )
        log.info("task_auto_approved", task_id=approved.id, supervisor_agent_id=supervisor_id)
        settled = self._settle(approved)
        return ScoreResult(task=settled.task, auto_approved=True, escrow_error=settled.escrow_error)

    def verify(
        self,
        task_id: str,
        verifier: str,
        ground_truth_score: float,
        agrees_with_supervisor: bool,
        feedback: str,
    ) -> VerifyResult:
        with self._task_locks.hold(task_id):
            decided = self._commit(
                self._lifecycle.submit_verification(
                    self._tasks.must_get(task_id),
                    verifier,
                    ground_truth_score,
                    agrees_with_supervisor,
                    feedback,
                )
            )

            supervisor_score = decided.supervisor_score
            outcome = classify_confusion(
                passed_threshold=supervisor_score.passes_threshold,
                verifier_agrees=agrees_with_supervisor,
            )
            delta = self._policy.confusion_delta(outcome)
            self._audit(
                EventType.TASK_VERIFIED if isinstance(decided, VerifiedPaidTask) else EventType.TASK_DISPUTED,
                task_id=task_id,
                verifier=verifier,
                ground_truth_score=ground_truth_score,
                agrees_with_supervisor=agrees_with_supervisor,
                confusion_outcome=outcome.value,
            )
            self._adjust_trust(
                supervisor_score.supervisor_agent_id, delta, task_id, f"confusion:{outcome.value}"
            )
            self._trust.record_confusion_outcome(supervisor_score.supervisor_agent_id, outcome)

            if isinstance(decided, VerifiedPaidTask):
                self._adjust_trust(
                    decided.subscriber_agent_id,
                    self._policy.verified_subscriber_delta,
                    task_id,
                    "fulfillment verified and paid",
                )
                calibration = self._derive_calibration(decided)
                settled = self._settle(decided)
                return VerifyResult(
                    task=settled.task,
                    outcome=outcome,
                    supervisor_delta=delta,
                    calibration_task=calibration,
                    escrow_error=settled.escrow_error,
                )

            self._adjust_trust(
                decided.subscriber_agent_id,
                self._policy.disputed_subscriber_delta,
                task_id,
                "fulfillment disputed by verifier",
            )
            disputed, new_task = self._republish(decided)
            return VerifyResult(task=disputed, outcome=outcome, supervisor_delta=delta, new_task=new_task)

    def _republish(self, disputed: DisputedTask) -> tuple[DisputedTask, OpenTask]:
        # The original lock proof keeps backing the new attempt; nothing is
        # released or refunded at dispute time.
        marked, new_task = self._lifecycle.republish(disputed)
        with self._task_locks.hold(new_task.id):
            self._commit(new_task)
        self._commit(marked)
        self._audit(
            EventType.TASK_REPUBLISHED,
            task_id=marked.id,
            new_task_id=new_task.id,
            attempt_number=new_task.attempt_number,
        )
        log.info(
            "task_republished",
            task_id=marked.id,
            new_task_id=new_task.id,
            attempt_number=new_task.attempt_number,
        )
        return marked, new_task

    def _derive_calibration(self, task: VerifiedPaidTask) -> CalibrationTask:
        existed = self._calibrations.for_source(task.id) is not None
        ct = self._calibrations.create_from_verified(task, self._settings.supervisor_score_threshold)
        if not existed:
            self._audit(
                EventType.CALIBRATION_TASK_CREATED,
                calibration_task_id=ct.id,
                source_task_id=task.id,
                ground_truth_score=ct.ground_truth_score,
                ground_truth_passes=ct.ground_truth_passes,
            )
        return ct

    # ── calibration ──

    def list_calibration_tasks(self, supervisor_agent_id: str) -> list[CalibrationTask]:
        return self._calibrations.list_for(supervisor_agent_id)

    def score_calibration(
        self,
        calibration_task_id: str,
        supervisor_agent_id: str,
        score: float,
        reasoning: str = "",
    ) -> CalibrationAttempt:
        ct = self._calibrations.must_get(calibration_task_id)
        verdict = evaluate_calibration_score(
            calibration=ct,
            score=score,
            threshold=self._settings.supervisor_score_threshold,
            tolerance=self._settings.calibration_score_tolerance,
        )
        trust_delta = self._policy.calibration_correct_delta if verdict.matches_ground_truth else 0.0
        attempt = CalibrationAttempt(
            id=self._new_id(),
            calibration_task_id=ct.id,
            supervisor_agent_id=supervisor_agent_id,
            score=score,
            reasoning=reasoning,
            passes_threshold=verdict.passes_threshold,
            matches_ground_truth=verdict.matches_ground_truth,
            trust_delta=trust_delta,
            attempted_at_ms=self._clock.now_ms(),
        )
        # Raises on a repeat attempt before any trust bookkeeping happens.
        self._calibrations.record_attempt(attempt)

        if trust_delta > 0:
            self._adjust_trust(supervisor_agent_id, trust_delta, ct.source_task_id, "calibration: correct")
        self._trust.record_calibration_attempt(supervisor_agent_id, verdict.matches_ground_truth)
        self._audit(
            EventType.CALIBRATION_ATTEMPTED,
            calibration_task_id=ct.id,
            supervisor_agent_id=supervisor_agent_id,
            score=score,
            matches_ground_truth=verdict.matches_ground_truth,
            score_diff=verdict.score_diff,
            trust_delta=trust_delta,
        )
        return attempt

    # ── single-resolver flow ──

    def answer(self, task_id: str, resolver_address: str, answer_text: str) -> Task:
        with self._task_locks.hold(task_id):
            answered = self._commit(
                self._lifecycle.answer(self._tasks.must_get(task_id), resolver_address, answer_text)
            )
            self._audit(EventType.ANSWER_SUBMITTED, task_id=task_id, resolver_address=resolver_address)
            return answered

    def confirm(self, task_id: str) -> SettleResult:
        with self._task_locks.hold(task_id):
            confirmed = self._commit(self._lifecycle.confirm(self._tasks.must_get(task_id)))
            self._audit(EventType.TASK_CONFIRMED, task_id=task_id)
            return self._settle(confirmed)

    def reject(self, task_id: str) -> SettleResult:
        with self._task_locks.hold(task_id):
            rejected = self._commit(self._lifecycle.reject(self._tasks.must_get(task_id)))
            self._audit(EventType.TASK_REJECTED, task_id=task_id)
            return self._settle(rejected)

    # ── expiry & settlement retry ──

    def expire(self, task_id: str) -> SettleResult:
        with self._task_locks.hold(task_id):
            expired = self._commit(self._lifecycle.expire(self._tasks.must_get(task_id)))
            self._audit(EventType.TASK_EXPIRED, task_id=task_id, expires_at_ms=expired.expires_at_ms)
            return self._settle(expired)

    def expire_due(self) -> list[SettleResult]:
        """Expire every open or claimed task whose deadline has passed."""
        now = self._clock.now_ms()
        results: list[SettleResult] = []
        for task in self._tasks.list():
            if not isinstance(task, OpenTask | ClaimedTask):
                continue
            if task.expires_at_ms is None or now < task.expires_at_ms:
                continue
            try:
                results.append(self.expire(task.id))
            except InvalidTransition:
                # Claimed, answered or otherwise moved on since the listing.
                continue
        return results

    def retry_settlement(self, task_id: str) -> SettleResult:
        with self._task_locks.hold(task_id):
            task = self._tasks.must_get(task_id)
            if not isinstance(task, _SETTLEABLE):
                raise InvalidTransition(
                    task_id=task_id,
                    action="retry settlement for",
                    status=task.status,
                    expected=tuple(cls.model_fields["status"].default for cls in _SETTLEABLE),
                )
            if task.settled:
                raise InvalidTransition(
                    task_id=task_id,
                    action="retry settlement for",
                    status=task.status,
                    expected=(task.status,),
                    detail="already settled",
                )
            return self._settle(task)

    def unsettled(self) -> list[Task]:
        return [t for t in self._tasks.list() if isinstance(t, _SETTLEABLE) and not t.settled]
