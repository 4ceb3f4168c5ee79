from __future__ import annotations

from unblock.calibration import CalibrationStore, evaluate_calibration_score
from unblock.clock import Clock, ManualClock, SystemClock
from unblock.config import MarketSettings, load_settings
from unblock.errors import (
    CapabilityDenied,
    EscrowFailure,
    IdentityMismatch,
    InvalidTransition,
    NotFound,
    UnblockError,
)
from unblock.escrow import Escrow, MockEscrow, split_amounts
from unblock.ledger import HashChainedLedger, InMemoryLedger, Ledger, summarize_ledger
from unblock.lifecycle import TaskLifecycle
from unblock.orchestrator import Orchestrator, ScoreResult, SettleResult, VerifyResult
from unblock.policy import TrustPolicy, classify_confusion
from unblock.registry import AgentRegistry
from unblock.scenario import ScenarioSpec, load_scenario, run_scenario
from unblock.schemas import (
    AgentRole,
    CalibrationAttempt,
    CalibrationTask,
    ConfusionOutcome,
    CreateTaskRequest,
    EventType,
    LedgerEvent,
    Task,
    TaskAdapter,
    TaskStatus,
    TierInfo,
    TrustRecord,
)
from unblock.store import TaskStore
from unblock.trust import TrustStore, score_to_tier, tier_info

__all__ = [
    "__version__",
    # Orchestration
    "Orchestrator",
    "ScoreResult",
    "VerifyResult",
    "SettleResult",
    "TaskLifecycle",
    # Stores
    "TaskStore",
    "TrustStore",
    "CalibrationStore",
    "AgentRegistry",
    # Trust policy
    "TrustPolicy",
    "classify_confusion",
    "score_to_tier",
    "tier_info",
    "evaluate_calibration_score",
    # Payment rail
    "Escrow",
    "MockEscrow",
    "split_amounts",
    # Ledger
    "Ledger",
    "HashChainedLedger",
    "InMemoryLedger",
    "summarize_ledger",
    # Schemas
    "Task",
    "TaskAdapter",
    "TaskStatus",
    "CreateTaskRequest",
    "AgentRole",
    "ConfusionOutcome",
    "TierInfo",
    "TrustRecord",
    "CalibrationTask",
    "CalibrationAttempt",
    "EventType",
    "LedgerEvent",
    # Errors
    "UnblockError",
    "NotFound",
    "InvalidTransition",
    "IdentityMismatch",
    "CapabilityDenied",
    "EscrowFailure",
    # Clock & config
    "Clock",
    "SystemClock",
    "ManualClock",
    "MarketSettings",
    "load_settings",
    # Scenario
    "ScenarioSpec",
    "load_scenario",
    "run_scenario",
]

__version__ = "0.1.0"
