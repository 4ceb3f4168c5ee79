from __future__ import annotations

from pathlib import Path

import pytest

from unblock.errors import CapabilityDenied
from unblock.scenario import load_scenario, run_scenario

DEMO = Path(__file__).resolve().parents[1] / "scenarios" / "demo.yaml"


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "scenario.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_demo_scenario_runs_end_to_end() -> None:
    spec = load_scenario(DEMO)
    market, report = run_scenario(spec)

    ids = report.task_ids
    login = market.get_task(ids["login"])
    assert login.status == "VERIFIED_PAID"
    assert login.auto_approved is True
    assert market.get_task(ids["captcha"]).status == "VERIFIED_PAID"
    assert market.get_task(ids["menu"]).status == "DISPUTED"
    retry = market.get_task(ids["menu-retry"])
    assert retry.status == "CLAIMED"
    assert retry.attempt_number == 2
    assert market.get_task(ids["stale"]).status == "EXPIRED_REFUNDED"

    assert market.trust.get_or_create("sup-1").score == 88
    # TP on captcha then FP on menu.
    assert market.trust.get_or_create("sup-2").score == 55
    assert market.trust.get_or_create("sup-3").score == 11

    refused = [o for o in report.outcomes if o.error]
    assert len(refused) == 1
    assert refused[0].action == "score"
    assert market.unsettled() == []
    market.ledger.verify_chain()


def test_load_rejects_unknown_action(tmp_path) -> None:
    path = _write(
        tmp_path,
        """
tasks:
  - {ref: t1, question: q, bounty_amount: 10, payer: payer-wallet-0001}
steps:
  - {action: teleport, task: t1}
""",
    )
    with pytest.raises(ValueError, match="unknown action"):
        load_scenario(path)


def test_load_rejects_unknown_settings(tmp_path) -> None:
    path = _write(
        tmp_path,
        """
settings: {turbo: true}
tasks:
  - {ref: t1, question: q, bounty_amount: 10, payer: payer-wallet-0001}
""",
    )
    with pytest.raises(ValueError, match="unknown settings"):
        load_scenario(path)


def test_load_validates_task_requests(tmp_path) -> None:
    path = _write(
        tmp_path,
        """
tasks:
  - {ref: t1, question: q, bounty_amount: 0, payer: payer-wallet-0001}
""",
    )
    with pytest.raises(ValueError):
        load_scenario(path)


def test_unexpected_refusal_propagates(tmp_path) -> None:
    path = _write(
        tmp_path,
        """
agents:
  - {id: sup-x, role: supervisor, payout_address: supx-wallet-001, trust: 5}
tasks:
  - {ref: t1, question: q, bounty_amount: 10, payer: payer-wallet-0001}
steps:
  - {action: claim, task: t1, subscriber: sub-1}
  - {action: fulfill, task: t1, subscriber: sub-1, text: a}
  - {action: score, task: t1, supervisor: sup-x, score: 90, reasoning: r}
""",
    )
    with pytest.raises(CapabilityDenied):
        run_scenario(load_scenario(path))


def test_expected_refusal_that_succeeds_is_an_error(tmp_path) -> None:
    path = _write(
        tmp_path,
        """
tasks:
  - {ref: t1, question: q, bounty_amount: 10, payer: payer-wallet-0001}
steps:
  - {action: claim, task: t1, subscriber: sub-1, expect_error: InvalidTransition}
""",
    )
    with pytest.raises(ValueError, match="expected InvalidTransition"):
        run_scenario(load_scenario(path))


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        ("{audit_sample_rate: '0.5'}", "settings.audit_sample_rate must be a number"),
        ("{verify_lock_proofs: 'no'}", "settings.verify_lock_proofs must be true or false"),
        ("{supervisor_score_threshold: 150}", "supervisor_score_threshold must be in"),
    ],
)
def test_load_rejects_bad_setting_values(tmp_path, settings: str, message: str) -> None:
    path = _write(
        tmp_path,
        f"""
settings: {settings}
tasks:
  - {{ref: t1, question: q, bounty_amount: 10, payer: payer-wallet-0001}}
""",
    )
    with pytest.raises(ValueError, match=message):
        load_scenario(path)


def test_seeded_trust_counts_no_tasks() -> None:
    market, _ = run_scenario(load_scenario(DEMO))

    # sup-3 only ever made a calibration attempt.
    rec = market.trust.get_or_create("sup-3")
    assert rec.total_tasks == 1
    assert [e.reason for e in rec.history if e.task_id == "scenario"] == []
    assert market.trust.get_or_create("pub-1").total_tasks == 0
