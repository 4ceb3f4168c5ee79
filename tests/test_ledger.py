from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from tests.helpers import VERIFIER, FailingEscrow, make_market, set_trust, under_review_task
from unblock.ledger import HashChainedLedger, InMemoryLedger, stable_json_dumps, summarize_ledger
from unblock.orchestrator import Orchestrator
from unblock.schemas import EventType


def test_hash_chained_ledger_verifies_and_detects_tampering(tmp_path) -> None:
    ledger_path = tmp_path / "ledger.jsonl"
    ledger = HashChainedLedger(ledger_path)

    ledger.append(EventType.TASK_CREATED, payload={"task_id": "T1", "bounty_amount": 10})
    ledger.append(EventType.TASK_CLAIMED, payload={"task_id": "T1", "subscriber_agent_id": "s1"})
    ledger.verify_chain()

    lines = ledger_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    event1 = json.loads(lines[0])
    event1["payload"]["bounty_amount"] = 999  # tamper without recomputing hash
    lines[0] = stable_json_dumps(event1)
    ledger_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    with pytest.raises(ValueError, match="hash mismatch"):
        HashChainedLedger(ledger_path).verify_chain()


def test_hash_chained_ledger_resumes_chain(tmp_path) -> None:
    ledger_path = tmp_path / "ledger.jsonl"
    first = HashChainedLedger(ledger_path).append(EventType.TASK_CREATED, payload={"task_id": "T1"})

    reopened = HashChainedLedger(ledger_path)
    second = reopened.append(EventType.TASK_EXPIRED, payload={"task_id": "T1"})

    assert second.prev_hash == first.hash
    assert len(reopened) == 2
    reopened.verify_chain()


def test_removed_event_breaks_chain(tmp_path) -> None:
    ledger_path = tmp_path / "ledger.jsonl"
    ledger = HashChainedLedger(ledger_path)
    for i in range(3):
        ledger.append(EventType.TASK_CREATED, payload={"task_id": f"T{i}"})

    lines = ledger_path.read_text(encoding="utf-8").splitlines()
    ledger_path.write_text("\n".join([lines[0], lines[2]]) + "\n", encoding="utf-8")

    with pytest.raises(ValueError, match="prev_hash mismatch"):
        HashChainedLedger(ledger_path).verify_chain()


class TestInMemoryLedger:
    def test_append_uses_given_timestamp(self) -> None:
        ledger = InMemoryLedger()
        ts = datetime(2024, 1, 1, tzinfo=UTC)
        event = ledger.append(EventType.TASK_CREATED, payload={"task_id": "T1"}, ts=ts)

        assert event.ts == ts
        assert event.prev_hash is None
        assert len(ledger) == 1

    def test_verify_chain_detects_tampering(self) -> None:
        ledger = InMemoryLedger()
        ledger.append(EventType.TASK_CREATED, payload={"task_id": "T1", "bounty_amount": 5})
        ledger.append(EventType.TASK_CLAIMED, payload={"task_id": "T1"})

        ledger._events[0].payload["bounty_amount"] = 999

        with pytest.raises(ValueError, match="hash mismatch"):
            ledger.verify_chain()

    def test_iter_events_returns_copies(self) -> None:
        ledger = InMemoryLedger()
        ledger.append(EventType.TASK_CREATED, payload={"task_id": "T1", "bounty_amount": 5})

        events = list(ledger.iter_events())
        events[0].payload["bounty_amount"] = 999

        ledger.verify_chain()
        assert next(ledger.iter_events()).payload["bounty_amount"] == 5

    def test_reset_clears(self) -> None:
        ledger = InMemoryLedger()
        ledger.append(EventType.TASK_CREATED)
        ledger.reset()

        assert len(ledger) == 0
        assert ledger.append(EventType.TASK_CREATED).prev_hash is None


def test_market_writes_to_file_ledger(tmp_path) -> None:
    ledger = HashChainedLedger(tmp_path / "ledger.jsonl")
    market = Orchestrator(ledger=ledger)
    task_id = under_review_task(market)
    market.verify(task_id, VERIFIER, 85, True, "correct")

    ledger.verify_chain()
    types = [e.type for e in ledger.iter_events()]
    assert types[0] == EventType.TASK_CREATED
    assert EventType.PAYMENT_RELEASED in types


def test_summarize_ledger_tracks_trust_status_and_unsettled() -> None:
    market, _, _ = make_market(escrow=FailingEscrow())
    set_trust(market, "sup-1", 60)
    verified = under_review_task(market)
    market.verify(verified, VERIFIER, 85, True, "correct")
    disputed = under_review_task(market, subscriber="sub-2")
    result = market.verify(disputed, VERIFIER, 10, False, "wrong")
    assert result.new_task is not None

    summary = summarize_ledger(market.ledger.iter_events())

    assert summary.task_status[verified] == "VERIFIED_PAID"
    assert summary.task_status[disputed] == "DISPUTED"
    assert summary.task_status[result.new_task.id] == "OPEN"
    assert summary.unsettled_task_ids == [verified]
    assert summary.trust_scores["sup-1"] == market.trust.get_or_create("sup-1").score
    assert summary.trust_scores["sub-2"] == 40
    assert summary.event_counts["escrow_failed"] == 1
