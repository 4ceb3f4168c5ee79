from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class TaskStatus(str, Enum):
    OPEN = "OPEN"
    CLAIMED = "CLAIMED"
    FULFILLED = "FULFILLED"
    SCORED = "SCORED"
    UNDER_REVIEW = "UNDER_REVIEW"
    VERIFIED_PAID = "VERIFIED_PAID"
    DISPUTED = "DISPUTED"
    EXPIRED_REFUNDED = "EXPIRED_REFUNDED"

    # Single-resolver flow kept for older publishers.
    ANSWERED = "ANSWERED"
    CONFIRMED_PAID = "CONFIRMED_PAID"
    REJECTED_REFUNDED = "REJECTED_REFUNDED"


TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.VERIFIED_PAID,
        TaskStatus.DISPUTED,
        TaskStatus.EXPIRED_REFUNDED,
        TaskStatus.CONFIRMED_PAID,
        TaskStatus.REJECTED_REFUNDED,
    }
)


class AgentRole(str, Enum):
    PUBLISHER = "publisher"
    SUBSCRIBER = "subscriber"
    SUPERVISOR = "supervisor"


class ConfusionOutcome(str, Enum):
    TP = "TP"
    TN = "TN"
    FP = "FP"
    FN = "FN"


class EventType(str, Enum):
    AGENT_REGISTERED = "agent_registered"

    TASK_CREATED = "task_created"
    TASK_CLAIMED = "task_claimed"
    FULFILLMENT_SUBMITTED = "fulfillment_submitted"
    SCORE_SUBMITTED = "score_submitted"
    VERIFIER_ASSIGNED = "verifier_assigned"
    TASK_AUTO_APPROVED = "task_auto_approved"
    TASK_VERIFIED = "task_verified"
    TASK_DISPUTED = "task_disputed"
    TASK_REPUBLISHED = "task_republished"
    TASK_EXPIRED = "task_expired"

    ANSWER_SUBMITTED = "answer_submitted"
    TASK_CONFIRMED = "task_confirmed"
    TASK_REJECTED = "task_rejected"

    PAYMENT_RELEASED = "payment_released"
    REFUND_ISSUED = "refund_issued"
    ESCROW_FAILED = "escrow_failed"

    TRUST_UPDATED = "trust_updated"
    CALIBRATION_TASK_CREATED = "calibration_task_created"
    CALIBRATION_ATTEMPTED = "calibration_attempted"


class LedgerEvent(BaseModel):
    schema_version: int = Field(default=1, ge=1)
    event_id: str
    prev_hash: str | None = None
    hash: str
    ts: datetime
    type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)


# ── Task parts ──


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Fulfillment(_Frozen):
    id: str
    task_id: str
    subscriber_agent_id: str
    fulfillment_text: str
    fulfillment_data: dict[str, Any] | None = None
    submitted_at_ms: int


class SupervisorScore(_Frozen):
    id: str
    task_id: str
    fulfillment_id: str
    supervisor_agent_id: str
    score: float = Field(ge=0, le=100)
    reasoning: str
    passes_threshold: bool
    scored_at_ms: int


class VerifierReview(_Frozen):
    id: str
    task_id: str
    fulfillment_id: str
    score_id: str
    verifier: str
    ground_truth_score: float = Field(ge=0, le=100)
    agrees_with_supervisor: bool
    feedback: str
    reviewed_at_ms: int


# ── Task variants (one per status) ──


class _TaskBase(_Frozen):
    id: str
    created_at_ms: int
    updated_at_ms: int

    question: str
    context: str | None = None
    image_urls: list[str] = Field(default_factory=list)

    bounty_amount: int = Field(ge=1)
    payer: str
    lock_proof: str | None = None
    publisher_agent_id: str | None = None
    expires_at_ms: int | None = None

    previous_task_id: str | None = None
    attempt_number: int | None = Field(default=None, ge=1)


class OpenTask(_TaskBase):
    status: Literal["OPEN"] = "OPEN"


class ClaimedTask(_TaskBase):
    status: Literal["CLAIMED"] = "CLAIMED"
    subscriber_agent_id: str


class FulfilledTask(_TaskBase):
    status: Literal["FULFILLED"] = "FULFILLED"
    subscriber_agent_id: str
    fulfillment: Fulfillment


class ScoredTask(_TaskBase):
    status: Literal["SCORED"] = "SCORED"
    subscriber_agent_id: str
    fulfillment: Fulfillment
    supervisor_score: SupervisorScore


class UnderReviewTask(_TaskBase):
    status: Literal["UNDER_REVIEW"] = "UNDER_REVIEW"
    subscriber_agent_id: str
    fulfillment: Fulfillment
    supervisor_score: SupervisorScore


class VerifiedPaidTask(_TaskBase):
    status: Literal["VERIFIED_PAID"] = "VERIFIED_PAID"
    subscriber_agent_id: str
    fulfillment: Fulfillment
    supervisor_score: SupervisorScore
    verifier_review: VerifierReview | None = None
    auto_approved: bool = False

    # Outcome is decided on entry; settled flips once the escrow release succeeds.
    settled: bool = False
    subscriber_payment_proof: str | None = None
    verifier_payment_proof: str | None = None


class DisputedTask(_TaskBase):
    status: Literal["DISPUTED"] = "DISPUTED"
    subscriber_agent_id: str
    fulfillment: Fulfillment
    supervisor_score: SupervisorScore
    verifier_review: VerifierReview
    republished_task_id: str | None = None


class ExpiredRefundedTask(_TaskBase):
    status: Literal["EXPIRED_REFUNDED"] = "EXPIRED_REFUNDED"
    subscriber_agent_id: str | None = None
    settled: bool = False
    refund_proof: str | None = None


class AnsweredTask(_TaskBase):
    status: Literal["ANSWERED"] = "ANSWERED"
    resolver_address: str
    answer_text: str


class ConfirmedPaidTask(_TaskBase):
    status: Literal["CONFIRMED_PAID"] = "CONFIRMED_PAID"
    resolver_address: str
    answer_text: str
    settled: bool = False
    release_proof: str | None = None


class RejectedRefundedTask(_TaskBase):
    status: Literal["REJECTED_REFUNDED"] = "REJECTED_REFUNDED"
    resolver_address: str
    answer_text: str
    settled: bool = False
    refund_proof: str | None = None


Task = Annotated[
    OpenTask
    | ClaimedTask
    | FulfilledTask
    | ScoredTask
    | UnderReviewTask
    | VerifiedPaidTask
    | DisputedTask
    | ExpiredRefundedTask
    | AnsweredTask
    | ConfirmedPaidTask
    | RejectedRefundedTask,
    Field(discriminator="status"),
]

TaskAdapter: TypeAdapter[Task] = TypeAdapter(Task)


# ── Trust ──

SupervisorTier = Literal[1, 2, 3, 4]


class TierInfo(_Frozen):
    tier: SupervisorTier
    label: Literal["autonomous", "standard", "probation", "suspended"]
    can_score_real_tasks: bool
    can_auto_approve: bool
    allocation_weight: float


class TrustEvent(BaseModel):
    task_id: str
    delta: float
    reason: str
    timestamp_ms: int
    proof: str | None = None


class ConfusionMatrix(BaseModel):
    tp: int = 0
    tn: int = 0
    fp: int = 0
    fn: int = 0


class TrustRecord(BaseModel):
    agent_id: str
    score: float = Field(default=50.0, ge=0.0, le=100.0)
    tier: SupervisorTier = 2
    total_tasks: int = 0
    successful_tasks: int = 0
    failed_tasks: int = 0
    last_updated_ms: int = 0
    history: list[TrustEvent] = Field(default_factory=list)
    confusion_matrix: ConfusionMatrix = Field(default_factory=ConfusionMatrix)
    calibration_attempts: int = 0
    calibration_successes: int = 0


# ── Calibration ──


class CalibrationTask(_Frozen):
    id: str
    source_task_id: str
    question: str
    context: str | None = None
    fulfillment_text: str
    ground_truth_score: float = Field(ge=0, le=100)
    ground_truth_passes: bool
    created_at_ms: int


class CalibrationAttempt(_Frozen):
    id: str
    calibration_task_id: str
    supervisor_agent_id: str
    score: float = Field(ge=0, le=100)
    reasoning: str = ""
    passes_threshold: bool
    matches_ground_truth: bool
    trust_delta: float
    attempted_at_ms: int


# ── Agents ──


class AgentRegistration(BaseModel):
    agent_id: str
    name: str
    role: AgentRole
    payout_address: str
    registered_at_ms: int
    active: bool = True


# ── Requests (transport contract) ──


def _non_blank(v: str) -> str:
    if not v.strip():
        raise ValueError("must be a non-empty string")
    return v


class CreateTaskRequest(BaseModel):
    question: str = Field(min_length=1)
    context: str | None = Field(default=None, min_length=1)
    image_urls: list[str] = Field(default_factory=list)
    bounty_amount: int = Field(gt=0)
    payer: str = Field(min_length=10)
    lock_proof: str | None = Field(default=None, min_length=10)
    expires_in_sec: int | None = Field(default=None, gt=0)
    publisher_agent_id: str | None = Field(default=None, min_length=1)

    @field_validator("question")
    @classmethod
    def _question_non_blank(cls, v: str) -> str:
        return _non_blank(v)

    @field_validator("image_urls")
    @classmethod
    def _urls_non_empty(cls, v: list[str]) -> list[str]:
        for url in v:
            _non_blank(url)
        return v


class ClaimTaskRequest(BaseModel):
    subscriber_agent_id: str = Field(min_length=1)


class SubmitFulfillmentRequest(BaseModel):
    subscriber_agent_id: str = Field(min_length=1)
    fulfillment_text: str = Field(min_length=1)
    fulfillment_data: dict[str, Any] | None = None


class SubmitScoreRequest(BaseModel):
    supervisor_agent_id: str = Field(min_length=1)
    score: float = Field(ge=0, le=100)
    reasoning: str = Field(min_length=1)


class SubmitVerificationRequest(BaseModel):
    verifier: str = Field(min_length=10)
    ground_truth_score: float = Field(ge=0, le=100)
    agrees_with_supervisor: bool
    feedback: str = Field(min_length=1)


class SubmitAnswerRequest(BaseModel):
    resolver_address: str = Field(min_length=10)
    answer_text: str = Field(min_length=1)


class RegisterAgentRequest(BaseModel):
    name: str = Field(min_length=1)
    role: AgentRole
    payout_address: str = Field(min_length=10)


class SubmitCalibrationScoreRequest(BaseModel):
    supervisor_agent_id: str = Field(min_length=1)
    score: float = Field(ge=0, le=100)
    reasoning: str = Field(min_length=1)
