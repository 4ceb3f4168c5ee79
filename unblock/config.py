from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import find_dotenv, load_dotenv


def repo_root() -> Path:
    # Project root is the directory that contains the `unblock/` package.
    return Path(__file__).resolve().parents[1]


def load_env() -> None:
    # Prefer a project-local `.env`; fall back to searching upward from CWD.
    root_env = repo_root() / ".env"
    env_path = str(root_env) if root_env.exists() else (find_dotenv(usecwd=True) or str(root_env))
    load_dotenv(env_path)


@dataclass(frozen=True)
class MarketSettings:
    supervisor_score_threshold: float = 60.0
    subscriber_payment_share: float = 0.7
    audit_sample_rate: float = 0.20
    auto_approve_subscriber_min_trust: float = 40.0
    subscriber_min_claim_trust: float = 10.0
    calibration_score_tolerance: float = 15.0

    # Check lock proofs against the escrow before opening a task.
    verify_lock_proofs: bool = True

    log_format: str = "console"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not 0.0 <= self.supervisor_score_threshold <= 100.0:
            raise ValueError("supervisor_score_threshold must be in [0, 100]")
        if not 0.0 <= self.subscriber_payment_share <= 1.0:
            raise ValueError("subscriber_payment_share must be in [0, 1]")
        if not 0.0 <= self.audit_sample_rate <= 1.0:
            raise ValueError("audit_sample_rate must be in [0, 1]")
        if self.calibration_score_tolerance < 0:
            raise ValueError("calibration_score_tolerance must be >= 0")
        if self.log_format not in ("console", "json"):
            raise ValueError("log_format must be 'console' or 'json'")

    @property
    def verifier_payment_share(self) -> float:
        return 1.0 - self.subscriber_payment_share


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def load_settings() -> MarketSettings:
    load_env()
    return MarketSettings(
        supervisor_score_threshold=_env_float("SUPERVISOR_SCORE_THRESHOLD", 60.0),
        subscriber_payment_share=_env_float("SUBSCRIBER_PAYMENT_SHARE", 0.7),
        audit_sample_rate=_env_float("AUDIT_SAMPLE_RATE", 0.20),
        auto_approve_subscriber_min_trust=_env_float("AUTO_APPROVE_SUBSCRIBER_MIN_TRUST", 40.0),
        subscriber_min_claim_trust=_env_float("SUBSCRIBER_MIN_CLAIM_TRUST", 10.0),
        calibration_score_tolerance=_env_float("CALIBRATION_SCORE_TOLERANCE", 15.0),
        verify_lock_proofs=_env_bool("VERIFY_LOCK_PROOFS", True),
        log_format=(os.getenv("UNBLOCK_LOG_FORMAT") or "console").strip().lower(),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
    )
