from __future__ import annotations

import pytest

from tests.helpers import PAYER, task_request
from unblock.escrow import Escrow, MockEscrow, split_amounts


@pytest.mark.parametrize(
    ("bounty", "share", "expected"),
    [
        (100_000, 0.7, (70_000, 30_000)),
        (100_000, 1.0, (100_000, 0)),
        (100_000, 0.0, (0, 100_000)),
        (3, 0.7, (2, 1)),
        (1, 0.7, (1, 0)),
    ],
)
def test_split_amounts(bounty: int, share: float, expected: tuple[int, int]) -> None:
    sub, ver = split_amounts(bounty, share)
    assert (sub, ver) == expected
    assert sub + ver == bounty


def test_split_rejects_bad_share() -> None:
    with pytest.raises(ValueError):
        split_amounts(100, 1.2)


def test_mock_escrow_records_transfers(lifecycle) -> None:
    escrow = MockEscrow()
    assert isinstance(escrow, Escrow)
    task = lifecycle.create(task_request(bounty_amount=10))

    split = escrow.release_split(task, "sub-wallet", "ver-wallet", 0.7)
    refund = escrow.refund(task)

    assert split.subscriber_proof == f"MOCK_SPLIT_SUB_{task.id}"
    assert split.verifier_proof == f"MOCK_SPLIT_VER_{task.id}"
    assert refund == f"MOCK_REFUND_{task.id}"
    assert escrow.paid_to("sub-wallet") == 7
    assert escrow.paid_to("ver-wallet") == 3
    assert escrow.paid_to(PAYER) == 10
    assert [t.kind for t in escrow.transfers] == ["release", "release", "refund"]
    assert escrow.verify_lock_proof("lock-proof-0001", PAYER, 10).ok is True
