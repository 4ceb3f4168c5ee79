from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import structlog

from unblock.schemas import Task

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SplitRelease:
    subscriber_proof: str
    verifier_proof: str


@dataclass(frozen=True)
class LockCheck:
    ok: bool
    error: str | None = None


@runtime_checkable
class Escrow(Protocol):
    """Payment rail capability.

    Release/refund calls return a transaction proof or raise. Implementations
    may raise ``EscrowFailure`` directly; anything else they raise is wrapped
    into one by the orchestrator.
    """

    def release_full(self, task: Task, recipient: str) -> str: ...

    def release_split(
        self,
        task: Task,
        subscriber_recipient: str,
        verifier_recipient: str,
        subscriber_share: float,
    ) -> SplitRelease: ...

    def refund(self, task: Task) -> str: ...

    def verify_lock_proof(self, proof: str, payer: str, min_amount: int) -> LockCheck: ...


def split_amounts(bounty: int, subscriber_share: float) -> tuple[int, int]:
    """Split a bounty into (subscriber, verifier) whole units; the remainder goes to the verifier."""
    if not 0.0 <= subscriber_share <= 1.0:
        raise ValueError("subscriber_share must be in [0, 1]")
    subscriber = min(bounty, max(0, round(bounty * subscriber_share)))
    return subscriber, bounty - subscriber


@dataclass(frozen=True)
class Transfer:
    kind: str
    task_id: str
    recipient: str
    amount: int
    proof: str


@dataclass
class MockEscrow:
    """In-process escrow that accepts every lock proof and records each transfer."""

    transfers: list[Transfer] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _record(self, kind: str, task: Task, recipient: str, amount: int, proof: str) -> str:
        with self._lock:
            self.transfers.append(
                Transfer(kind=kind, task_id=task.id, recipient=recipient, amount=amount, proof=proof)
            )
        log.info("escrow_mock_transfer", kind=kind, task_id=task.id, recipient=recipient, amount=amount)
        return proof

    def release_full(self, task: Task, recipient: str) -> str:
        return self._record("release", task, recipient, task.bounty_amount, f"MOCK_RELEASE_{task.id}")

    def release_split(
        self,
        task: Task,
        subscriber_recipient: str,
        verifier_recipient: str,
        subscriber_share: float,
    ) -> SplitRelease:
        sub_amount, ver_amount = split_amounts(task.bounty_amount, subscriber_share)
        return SplitRelease(
            subscriber_proof=self._record(
                "release", task, subscriber_recipient, sub_amount, f"MOCK_SPLIT_SUB_{task.id}"
            ),
            verifier_proof=self._record(
                "release", task, verifier_recipient, ver_amount, f"MOCK_SPLIT_VER_{task.id}"
            ),
        )

    def refund(self, task: Task) -> str:
        return self._record("refund", task, task.payer, task.bounty_amount, f"MOCK_REFUND_{task.id}")

    def verify_lock_proof(self, proof: str, payer: str, min_amount: int) -> LockCheck:
        log.info("escrow_mock_verify_lock", proof=proof, payer=payer, min_amount=min_amount)
        return LockCheck(ok=True)

    def paid_to(self, recipient: str) -> int:
        with self._lock:
            return sum(t.amount for t in self.transfers if t.recipient == recipient)
