"""Pure task state machine.

Each transition takes the current Task snapshot and returns a new one; nothing
here touches a store, the trust ledger or the payment rail. A transition that
does not apply raises before building anything, so the caller's snapshot is
left exactly as it was.

    OPEN -> CLAIMED -> FULFILLED -> SCORED -> UNDER_REVIEW -> VERIFIED_PAID | DISPUTED
                                    SCORED -> VERIFIED_PAID (auto-approve)
    DISPUTED -> new OPEN task linked by previous_task_id
    OPEN -> ANSWERED -> CONFIRMED_PAID | REJECTED_REFUNDED   (single-resolver flow)
    OPEN | CLAIMED -> EXPIRED_REFUNDED                        (past expires_at_ms)
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any

from unblock.clock import Clock
from unblock.errors import IdentityMismatch, InvalidTransition
from unblock.schemas import (
    AnsweredTask,
    ClaimedTask,
    ConfirmedPaidTask,
    CreateTaskRequest,
    DisputedTask,
    ExpiredRefundedTask,
    Fulfillment,
    FulfilledTask,
    OpenTask,
    RejectedRefundedTask,
    ScoredTask,
    SupervisorScore,
    Task,
    UnderReviewTask,
    VerifiedPaidTask,
    VerifierReview,
)


def _require(task: Task, action: str, *allowed: type) -> None:
    if not isinstance(task, allowed):
        raise InvalidTransition(
            task_id=task.id,
            action=action,
            status=task.status,
            expected=tuple(cls.model_fields["status"].default for cls in allowed),
        )


def _carry(task: Task) -> dict[str, Any]:
    fields = dict(task)
    fields.pop("status")
    return fields


def new_id() -> str:
    return str(uuid.uuid4())


class TaskLifecycle:
    def __init__(self, *, clock: Clock, id_factory: Callable[[], str] = new_id) -> None:
        self._clock = clock
        self._new_id = id_factory

    def create(self, req: CreateTaskRequest) -> OpenTask:
        now = self._clock.now_ms()
        return OpenTask(
            id=self._new_id(),
            created_at_ms=now,
            updated_at_ms=now,
            question=req.question,
            context=req.context,
            image_urls=list(req.image_urls),
            bounty_amount=req.bounty_amount,
            payer=req.payer,
            lock_proof=req.lock_proof,
            publisher_agent_id=req.publisher_agent_id,
            expires_at_ms=None if req.expires_in_sec is None else now + req.expires_in_sec * 1000,
        )

    # ── Supervised flow ──

    def claim(self, task: Task, subscriber_agent_id: str) -> ClaimedTask:
        _require(task, "claim", OpenTask)
        fields = _carry(task) | {"updated_at_ms": self._clock.now_ms()}
        return ClaimedTask(**fields, subscriber_agent_id=subscriber_agent_id)

    def fulfill(
        self,
        task: Task,
        subscriber_agent_id: str,
        fulfillment_text: str,
        fulfillment_data: dict[str, Any] | None = None,
    ) -> FulfilledTask:
        _require(task, "fulfill", ClaimedTask)
        if task.subscriber_agent_id != subscriber_agent_id:
            raise IdentityMismatch(
                task_id=task.id,
                role="subscriber",
                expected=task.subscriber_agent_id,
                actual=subscriber_agent_id,
            )
        now = self._clock.now_ms()
        fulfillment = Fulfillment(
            id=self._new_id(),
            task_id=task.id,
            subscriber_agent_id=subscriber_agent_id,
            fulfillment_text=fulfillment_text,
            fulfillment_data=fulfillment_data,
            submitted_at_ms=now,
        )
        fields = _carry(task) | {"updated_at_ms": now}
        return FulfilledTask(**fields, fulfillment=fulfillment)

    def submit_score(
        self,
        task: Task,
        supervisor_agent_id: str,
        score: float,
        reasoning: str,
        threshold: float,
    ) -> ScoredTask:
        _require(task, "score", FulfilledTask)
        now = self._clock.now_ms()
        supervisor_score = SupervisorScore(
            id=self._new_id(),
            task_id=task.id,
            fulfillment_id=task.fulfillment.id,
            supervisor_agent_id=supervisor_agent_id,
            score=score,
            reasoning=reasoning,
            passes_threshold=score >= threshold,
            scored_at_ms=now,
        )
        fields = _carry(task) | {"updated_at_ms": now}
        return ScoredTask(**fields, supervisor_score=supervisor_score)

    def assign_verifier(self, task: Task) -> UnderReviewTask:
        _require(task, "assign verifier to", ScoredTask)
        return UnderReviewTask(**(_carry(task) | {"updated_at_ms": self._clock.now_ms()}))

    def auto_approve(self, task: Task) -> VerifiedPaidTask:
        _require(task, "auto-approve", ScoredTask)
        fields = _carry(task) | {"updated_at_ms": self._clock.now_ms()}
        return VerifiedPaidTask(**fields, auto_approved=True)

    def submit_verification(
        self,
        task: Task,
        verifier: str,
        ground_truth_score: float,
        agrees_with_supervisor: bool,
        feedback: str,
    ) -> VerifiedPaidTask | DisputedTask:
        _require(task, "verify", UnderReviewTask)
        now = self._clock.now_ms()
        review = VerifierReview(
            id=self._new_id(),
            task_id=task.id,
            fulfillment_id=task.fulfillment.id,
            score_id=task.supervisor_score.id,
            verifier=verifier,
            ground_truth_score=ground_truth_score,
            agrees_with_supervisor=agrees_with_supervisor,
            feedback=feedback,
            reviewed_at_ms=now,
        )
        fields = _carry(task) | {"updated_at_ms": now}
        if agrees_with_supervisor:
            return VerifiedPaidTask(**fields, verifier_review=review)
        return DisputedTask(**fields, verifier_review=review)

    def republish(self, task: Task) -> tuple[DisputedTask, OpenTask]:
        """Open a fresh attempt for a disputed task.

        Returns the disputed task (now pointing at its successor) and the new
        OPEN task. A disputed task is republished at most once.
        """
        _require(task, "republish", DisputedTask)
        if task.republished_task_id is not None:
            raise InvalidTransition(
                task_id=task.id,
                action="republish",
                status=task.status,
                expected=(task.status,),
                detail=f"already republished as {task.republished_task_id}",
            )
        now = self._clock.now_ms()
        new_task = OpenTask(
            id=self._new_id(),
            created_at_ms=now,
            updated_at_ms=now,
            question=task.question,
            context=task.context,
            image_urls=list(task.image_urls),
            bounty_amount=task.bounty_amount,
            payer=task.payer,
            lock_proof=task.lock_proof,
            publisher_agent_id=task.publisher_agent_id,
            previous_task_id=task.id,
            attempt_number=(task.attempt_number or 1) + 1,
        )
        disputed = task.model_copy(update={"republished_task_id": new_task.id, "updated_at_ms": now})
        return disputed, new_task

    # ── Single-resolver flow ──

    def answer(self, task: Task, resolver_address: str, answer_text: str) -> AnsweredTask:
        _require(task, "answer", OpenTask)
        fields = _carry(task) | {"updated_at_ms": self._clock.now_ms()}
        return AnsweredTask(**fields, resolver_address=resolver_address, answer_text=answer_text)

    def confirm(self, task: Task) -> ConfirmedPaidTask:
        _require(task, "confirm", AnsweredTask)
        return ConfirmedPaidTask(**(_carry(task) | {"updated_at_ms": self._clock.now_ms()}))

    def reject(self, task: Task) -> RejectedRefundedTask:
        _require(task, "reject", AnsweredTask)
        return RejectedRefundedTask(**(_carry(task) | {"updated_at_ms": self._clock.now_ms()}))

    # ── Expiry ──

    def expire(self, task: Task) -> ExpiredRefundedTask:
        _require(task, "expire", OpenTask, ClaimedTask)
        now = self._clock.now_ms()
        if task.expires_at_ms is None or now < task.expires_at_ms:
            raise InvalidTransition(
                task_id=task.id,
                action="expire",
                status=task.status,
                expected=(task.status,),
                detail="task has not reached its expiry time",
            )
        return ExpiredRefundedTask(**(_carry(task) | {"updated_at_ms": now}))

    # ── Settlement bookkeeping ──

    def mark_settled(self, task: Task, **proofs: str | None) -> Task:
        """Record payment proofs on a decided task. Status does not change."""
        _require(
            task,
            "settle",
            VerifiedPaidTask,
            ConfirmedPaidTask,
            RejectedRefundedTask,
            ExpiredRefundedTask,
        )
        unknown = set(proofs) - set(type(task).model_fields)
        if unknown:
            raise ValueError(f"unknown proof fields for {task.status}: {sorted(unknown)}")
        return task.model_copy(
            update={**proofs, "settled": True, "updated_at_ms": self._clock.now_ms()}
        )
