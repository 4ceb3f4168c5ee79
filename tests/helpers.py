from __future__ import annotations

from typing import Any

from unblock.clock import ManualClock
from unblock.config import MarketSettings
from unblock.escrow import LockCheck, MockEscrow, SplitRelease
from unblock.ledger import InMemoryLedger
from unblock.orchestrator import Orchestrator
from unblock.schemas import CreateTaskRequest, Task

START_MS = 1_700_000_000_000
PAYER = "payer-wallet-0001"
VERIFIER = "verifier-wallet-01"


class FixedRandom:
    """RandomSource that always draws the same value."""

    def __init__(self, value: float) -> None:
        self.value = value
        self.draws = 0

    def random(self) -> float:
        self.draws += 1
        return self.value


NO_AUDIT = 0.99
AUDIT = 0.0


class FailingEscrow(MockEscrow):
    """Escrow whose transfers raise until ``fail_times`` calls have failed."""

    def __init__(self, *, fail_times: int = 1_000_000) -> None:
        super().__init__()
        self.fail_times = fail_times
        self.failures = 0

    def _maybe_fail(self) -> None:
        if self.failures < self.fail_times:
            self.failures += 1
            raise ConnectionError("payment rail unavailable")

    def release_full(self, task: Task, recipient: str) -> str:
        self._maybe_fail()
        return super().release_full(task, recipient)

    def release_split(
        self,
        task: Task,
        subscriber_recipient: str,
        verifier_recipient: str,
        subscriber_share: float,
    ) -> SplitRelease:
        self._maybe_fail()
        return super().release_split(task, subscriber_recipient, verifier_recipient, subscriber_share)

    def refund(self, task: Task) -> str:
        self._maybe_fail()
        return super().refund(task)


class RejectingLockEscrow(MockEscrow):
    def verify_lock_proof(self, proof: str, payer: str, min_amount: int) -> LockCheck:
        _ = proof, payer, min_amount
        return LockCheck(ok=False, error="lock not found on chain")


def make_market(
    *,
    escrow: MockEscrow | None = None,
    draw: float = NO_AUDIT,
    rng: FixedRandom | None = None,
    **settings: Any,
) -> tuple[Orchestrator, ManualClock, MockEscrow]:
    clock = ManualClock(START_MS)
    escrow = escrow if escrow is not None else MockEscrow()
    market = Orchestrator(
        settings=MarketSettings(**settings),
        clock=clock,
        escrow=escrow,
        ledger=InMemoryLedger(),
        rng=rng if rng is not None else FixedRandom(draw),
    )
    return market, clock, escrow


def task_request(**overrides: Any) -> CreateTaskRequest:
    fields: dict[str, Any] = {
        "question": "Which button submits the form?",
        "bounty_amount": 100_000,
        "payer": PAYER,
    }
    fields.update(overrides)
    return CreateTaskRequest(**fields)


def set_trust(market: Orchestrator, agent_id: str, score: float) -> None:
    rec = market.trust.get_or_create(agent_id)
    market.trust.apply_delta(agent_id, score - rec.score, "setup", "test setup")


def fulfilled_task(market: Orchestrator, *, subscriber: str = "sub-1", **overrides: Any) -> str:
    task = market.create_task(task_request(**overrides))
    market.claim(task.id, subscriber)
    market.fulfill(task.id, subscriber, "The green one")
    return task.id


def under_review_task(
    market: Orchestrator,
    *,
    supervisor: str = "sup-1",
    score: float = 80,
    subscriber: str = "sub-1",
) -> str:
    task_id = fulfilled_task(market, subscriber=subscriber)
    result = market.score(task_id, supervisor, score, "looks right")
    assert result.task.status == "UNDER_REVIEW"
    return task_id
