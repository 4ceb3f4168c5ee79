from __future__ import annotations

import pytest
from pydantic import ValidationError

from tests.helpers import task_request
from unblock.schemas import (
    CreateTaskRequest,
    OpenTask,
    RegisterAgentRequest,
    SubmitScoreRequest,
    SubmitVerificationRequest,
    TaskAdapter,
)


def test_create_task_request_accepts_minimal() -> None:
    req = task_request()
    assert req.image_urls == []
    assert req.lock_proof is None
    assert req.expires_in_sec is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"question": ""},
        {"question": "   "},
        {"bounty_amount": 0},
        {"payer": "short"},
        {"lock_proof": "abc"},
        {"expires_in_sec": 0},
        {"image_urls": ["https://example.com/a.png", " "]},
        {"context": ""},
    ],
)
def test_create_task_request_rejects(overrides) -> None:
    with pytest.raises(ValidationError):
        task_request(**overrides)


def test_score_and_verification_ranges() -> None:
    with pytest.raises(ValidationError):
        SubmitScoreRequest(supervisor_agent_id="sup-1", score=101, reasoning="x")
    with pytest.raises(ValidationError):
        SubmitScoreRequest(supervisor_agent_id="sup-1", score=50, reasoning="")
    with pytest.raises(ValidationError):
        SubmitVerificationRequest(
            verifier="short", ground_truth_score=50, agrees_with_supervisor=True, feedback="ok"
        )
    with pytest.raises(ValidationError):
        RegisterAgentRequest(name="Kim", role="auditor", payout_address="kim-wallet-0001")


def test_task_union_dispatches_on_status(lifecycle) -> None:
    task = lifecycle.claim(lifecycle.create(task_request()), "sub-1")

    restored = TaskAdapter.validate_python(task.model_dump())

    assert type(restored) is type(task)
    assert restored == task


def test_tasks_are_immutable_and_strict(lifecycle) -> None:
    task = lifecycle.create(task_request())
    assert isinstance(task, OpenTask)

    with pytest.raises(ValidationError):
        task.status = "CLAIMED"  # type: ignore[misc]
    with pytest.raises(ValidationError):
        OpenTask(**task.model_dump(), subscriber_agent_id="sub-1")


def test_claimed_status_requires_subscriber() -> None:
    req = CreateTaskRequest(question="q", bounty_amount=1, payer="payer-wallet-0001")
    data = {
        "id": "t1",
        "created_at_ms": 0,
        "updated_at_ms": 0,
        "question": req.question,
        "bounty_amount": req.bounty_amount,
        "payer": req.payer,
        "status": "CLAIMED",
    }
    with pytest.raises(ValidationError):
        TaskAdapter.validate_python(data)
