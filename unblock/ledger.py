from __future__ import annotations

import hashlib
import json
import threading
import uuid
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from unblock.schemas import EventType, LedgerEvent


@runtime_checkable
class Ledger(Protocol):
    """Append-only, hash-chained audit log of market events."""

    def reset(self) -> None: ...

    def append(
        self,
        event_type: EventType,
        *,
        payload: dict[str, Any] | None = ...,
        ts: datetime | None = ...,
        schema_version: int = ...,
        event_id: str | None = ...,
    ) -> LedgerEvent: ...

    def iter_events(self) -> Iterator[LedgerEvent]: ...

    def verify_chain(self) -> None: ...

    def __len__(self) -> int: ...


def stable_json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _compute_event_hash(
    *,
    schema_version: int,
    event_id: str,
    prev_hash: str | None,
    ts: datetime,
    event_type: EventType,
    payload: dict[str, Any],
) -> str:
    to_hash = {
        "schema_version": schema_version,
        "event_id": event_id,
        "prev_hash": prev_hash,
        "ts": ts.isoformat(),
        "type": event_type.value,
        "payload": payload,
    }
    return hashlib.sha256(stable_json_dumps(to_hash).encode("utf-8")).hexdigest()


def _build_event(
    event_type: EventType,
    *,
    prev_hash: str | None,
    payload: dict[str, Any] | None = None,
    ts: datetime | None = None,
    schema_version: int = 1,
    event_id: str | None = None,
) -> LedgerEvent:
    payload = payload or {}
    ts = ts or datetime.now(tz=UTC)
    event_id = event_id or str(uuid.uuid4())
    return LedgerEvent(
        schema_version=schema_version,
        event_id=event_id,
        prev_hash=prev_hash,
        hash=_compute_event_hash(
            schema_version=schema_version,
            event_id=event_id,
            prev_hash=prev_hash,
            ts=ts,
            event_type=event_type,
            payload=payload,
        ),
        ts=ts,
        type=event_type,
        payload=payload,
    )


def _verify_event_chain(events: Iterable[LedgerEvent]) -> None:
    prev_hash: str | None = None
    for event in events:
        expected = _compute_event_hash(
            schema_version=event.schema_version,
            event_id=event.event_id,
            prev_hash=prev_hash,
            ts=event.ts,
            event_type=event.type,
            payload=event.payload,
        )
        if event.prev_hash != prev_hash:
            raise ValueError(f"ledger prev_hash mismatch at event {event.event_id}")
        if event.hash != expected:
            raise ValueError(f"ledger hash mismatch at event {event.event_id}")
        prev_hash = event.hash


class HashChainedLedger:
    """JSONL-backed ledger; one event per line."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._tail_hash: str | None = None

        if self._path.exists():
            self._tail_hash = self._read_last_hash()

    @property
    def path(self) -> Path:
        return self._path

    def reset(self) -> None:
        with self._lock:
            self._path.write_text("", encoding="utf-8")
            self._tail_hash = None

    def append(
        self,
        event_type: EventType,
        *,
        payload: dict[str, Any] | None = None,
        ts: datetime | None = None,
        schema_version: int = 1,
        event_id: str | None = None,
    ) -> LedgerEvent:
        with self._lock:
            event = _build_event(
                event_type,
                prev_hash=self._tail_hash,
                payload=payload,
                ts=ts,
                schema_version=schema_version,
                event_id=event_id,
            )
            with self._path.open("a", encoding="utf-8") as f:
                f.write(stable_json_dumps(event.model_dump(mode="json")))
                f.write("\n")
            self._tail_hash = event.hash
            return event

    def iter_events(self) -> Iterator[LedgerEvent]:
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                yield LedgerEvent.model_validate_json(line)

    def verify_chain(self) -> None:
        _verify_event_chain(self.iter_events())

    def __len__(self) -> int:
        return sum(1 for _ in self.iter_events())

    def _read_last_hash(self) -> str | None:
        last: str | None = None
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    last = line
        if last is None:
            return None
        return LedgerEvent.model_validate_json(last).hash


class InMemoryLedger:
    """Same interface as HashChainedLedger, kept in a list. Default for tests and simulations."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[LedgerEvent] = []
        self._tail_hash: str | None = None

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
            self._tail_hash = None

    def append(
        self,
        event_type: EventType,
        *,
        payload: dict[str, Any] | None = None,
        ts: datetime | None = None,
        schema_version: int = 1,
        event_id: str | None = None,
    ) -> LedgerEvent:
        with self._lock:
            event = _build_event(
                event_type,
                prev_hash=self._tail_hash,
                payload=payload,
                ts=ts,
                schema_version=schema_version,
                event_id=event_id,
            )
            self._events.append(event)
            self._tail_hash = event.hash
            return event

    def iter_events(self) -> Iterator[LedgerEvent]:
        with self._lock:
            events = list(self._events)
        for event in events:
            yield event.model_copy(deep=True)

    def verify_chain(self) -> None:
        with self._lock:
            events = list(self._events)
        _verify_event_chain(events)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class LedgerSummary(BaseModel):
    event_counts: dict[str, int] = Field(default_factory=dict)
    trust_scores: dict[str, float] = Field(default_factory=dict)
    task_status: dict[str, str] = Field(default_factory=dict)
    unsettled_task_ids: list[str] = Field(default_factory=list)


_STATUS_BY_EVENT = {
    EventType.TASK_CREATED: "OPEN",
    EventType.TASK_CLAIMED: "CLAIMED",
    EventType.FULFILLMENT_SUBMITTED: "FULFILLED",
    EventType.SCORE_SUBMITTED: "SCORED",
    EventType.VERIFIER_ASSIGNED: "UNDER_REVIEW",
    EventType.TASK_AUTO_APPROVED: "VERIFIED_PAID",
    EventType.TASK_VERIFIED: "VERIFIED_PAID",
    EventType.TASK_DISPUTED: "DISPUTED",
    EventType.TASK_EXPIRED: "EXPIRED_REFUNDED",
    EventType.ANSWER_SUBMITTED: "ANSWERED",
    EventType.TASK_CONFIRMED: "CONFIRMED_PAID",
    EventType.TASK_REJECTED: "REJECTED_REFUNDED",
}


def summarize_ledger(events: Iterable[LedgerEvent]) -> LedgerSummary:
    """Fold an event stream into final trust scores and task statuses."""
    summary = LedgerSummary()
    unsettled: dict[str, None] = {}
    for event in events:
        key = event.type.value
        summary.event_counts[key] = summary.event_counts.get(key, 0) + 1
        payload = event.payload

        if event.type == EventType.AGENT_REGISTERED:
            summary.trust_scores.setdefault(str(payload["agent_id"]), float(payload["trust_score"]))
        elif event.type == EventType.TRUST_UPDATED:
            summary.trust_scores[str(payload["agent_id"])] = float(payload["score"])
        elif event.type == EventType.TASK_REPUBLISHED:
            summary.task_status[str(payload["new_task_id"])] = "OPEN"
        elif event.type == EventType.ESCROW_FAILED:
            unsettled[str(payload["task_id"])] = None
        elif event.type in (EventType.PAYMENT_RELEASED, EventType.REFUND_ISSUED):
            unsettled.pop(str(payload["task_id"]), None)

        status = _STATUS_BY_EVENT.get(event.type)
        if status is not None:
            summary.task_status[str(payload["task_id"])] = status

    summary.unsettled_task_ids = list(unsettled)
    return summary
