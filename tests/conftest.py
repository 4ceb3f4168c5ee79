from __future__ import annotations

import sys
from pathlib import Path

import pytest

from unblock.clock import ManualClock
from unblock.lifecycle import TaskLifecycle


def pytest_configure() -> None:
    project_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(project_root))


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(1_700_000_000_000)


@pytest.fixture
def lifecycle(clock: ManualClock) -> TaskLifecycle:
    counter = iter(range(1, 1_000_000))
    return TaskLifecycle(clock=clock, id_factory=lambda: f"id-{next(counter)}")
