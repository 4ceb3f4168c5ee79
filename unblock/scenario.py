"""Scripted market runs loaded from YAML.

A scenario names agents and tasks, then lists the events to replay against an
Orchestrator in order::

    scenario_id: demo
    seed: 7
    settings: {audit_sample_rate: 0.0}
    agents:
      - {id: sup-1, name: Ada, role: supervisor, payout_address: ada-payout-0001, trust: 85}
    tasks:
      - {ref: t1, question: "What colour is the button?", bounty_amount: 100000, payer: pub-wallet-0001}
    steps:
      - {action: claim, task: t1, subscriber: sub-1}
      - {action: fulfill, task: t1, subscriber: sub-1, text: "Blue"}
      - {action: score, task: t1, supervisor: sup-1, score: 90, reasoning: "clear"}
      - {action: verify, task: t1, verifier: verifier-wallet, ground_truth_score: 40,
         agrees: false, feedback: "wrong", as: t1-retry}
      - {action: calibrate, of: t1, supervisor: sup-2, score: 50, reasoning: "practice"}
      - {action: advance_clock, ms: 60000}
      - {action: expire, task: t2}

A step may carry ``expect_error: <ErrorClassName>`` to assert that the market
refuses it.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

import structlog
import yaml
from pydantic import BaseModel

from unblock import errors
from unblock.clock import ManualClock
from unblock.config import MarketSettings
from unblock.ledger import Ledger
from unblock.orchestrator import Orchestrator
from unblock.schemas import (
    AgentRole,
    ClaimTaskRequest,
    CreateTaskRequest,
    RegisterAgentRequest,
    SubmitAnswerRequest,
    SubmitCalibrationScoreRequest,
    SubmitFulfillmentRequest,
    SubmitScoreRequest,
    SubmitVerificationRequest,
)

log = structlog.get_logger(__name__)

ACTIONS = (
    "claim",
    "fulfill",
    "score",
    "verify",
    "calibrate",
    "answer",
    "confirm",
    "reject",
    "expire",
    "retry_settlement",
    "advance_clock",
)


@dataclass(frozen=True)
class ScenarioAgent:
    agent_id: str
    request: RegisterAgentRequest
    trust: float | None = None


@dataclass(frozen=True)
class ScenarioStep:
    action: str
    task_ref: str | None = None
    request: BaseModel | None = None
    alias: str | None = None
    advance_ms: int = 0
    expect_error: str | None = None


@dataclass(frozen=True)
class ScenarioSpec:
    scenario_id: str
    title: str
    seed: int | None
    start_ms: int
    settings: dict[str, Any]
    agents: list[ScenarioAgent]
    tasks: dict[str, CreateTaskRequest]
    steps: list[ScenarioStep]


@dataclass
class StepOutcome:
    index: int
    action: str
    task_ref: str | None
    status: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class ScenarioReport:
    scenario_id: str
    task_ids: dict[str, str]
    outcomes: list[StepOutcome]


def _require_str(raw: dict[str, Any], key: str, *, where: str) -> str:
    value = raw.get(key)
    if value is None or not str(value).strip():
        raise ValueError(f"{where}: '{key}' is required")
    return str(value)


def _parse_step(raw: Any, *, index: int) -> ScenarioStep:
    where = f"steps[{index}]"
    if not isinstance(raw, dict):
        raise ValueError(f"{where}: each step must be a mapping")
    action = _require_str(raw, "action", where=where)
    if action not in ACTIONS:
        raise ValueError(f"{where}: unknown action {action!r}")

    expect_error = raw.get("expect_error")
    if expect_error is not None and not isinstance(getattr(errors, str(expect_error), None), type):
        raise ValueError(f"{where}: unknown error class {expect_error!r}")
    expect = None if expect_error is None else str(expect_error)

    if action == "advance_clock":
        ms = int(raw.get("ms") or 0)
        if ms <= 0:
            raise ValueError(f"{where}: advance_clock needs a positive 'ms'")
        return ScenarioStep(action=action, advance_ms=ms, expect_error=expect)

    if action == "calibrate":
        return ScenarioStep(
            action=action,
            task_ref=_require_str(raw, "of", where=where),
            request=SubmitCalibrationScoreRequest(
                supervisor_agent_id=_require_str(raw, "supervisor", where=where),
                score=raw.get("score"),
                reasoning=str(raw.get("reasoning") or "calibration"),
            ),
            expect_error=expect,
        )

    task_ref = _require_str(raw, "task", where=where)
    request: BaseModel | None = None
    if action == "claim":
        request = ClaimTaskRequest(subscriber_agent_id=_require_str(raw, "subscriber", where=where))
    elif action == "fulfill":
        request = SubmitFulfillmentRequest(
            subscriber_agent_id=_require_str(raw, "subscriber", where=where),
            fulfillment_text=_require_str(raw, "text", where=where),
            fulfillment_data=raw.get("data"),
        )
    elif action == "score":
        request = SubmitScoreRequest(
            supervisor_agent_id=_require_str(raw, "supervisor", where=where),
            score=raw.get("score"),
            reasoning=_require_str(raw, "reasoning", where=where),
        )
    elif action == "verify":
        request = SubmitVerificationRequest(
            verifier=_require_str(raw, "verifier", where=where),
            ground_truth_score=raw.get("ground_truth_score"),
            agrees_with_supervisor=bool(raw.get("agrees")),
            feedback=_require_str(raw, "feedback", where=where),
        )
    elif action == "answer":
        request = SubmitAnswerRequest(
            resolver_address=_require_str(raw, "resolver", where=where),
            answer_text=_require_str(raw, "text", where=where),
        )

    alias = raw.get("as")
    return ScenarioStep(
        action=action,
        task_ref=task_ref,
        request=request,
        alias=None if alias is None else str(alias),
        expect_error=expect,
    )


def _check_settings(raw: dict[str, Any]) -> MarketSettings:
    fields = MarketSettings.__dataclass_fields__
    unknown = set(raw) - set(fields)
    if unknown:
        raise ValueError(f"unknown settings: {sorted(unknown)}")

    for key, value in raw.items():
        # Annotations are strings under postponed evaluation.
        kind = str(fields[key].type)
        if kind == "float" and (isinstance(value, bool) or not isinstance(value, int | float)):
            raise ValueError(f"settings.{key} must be a number, got {value!r}")
        if kind == "bool" and not isinstance(value, bool):
            raise ValueError(f"settings.{key} must be true or false, got {value!r}")
        if kind == "str" and not isinstance(value, str):
            raise ValueError(f"settings.{key} must be a string, got {value!r}")

    try:
        return MarketSettings(**raw)
    except TypeError as e:
        raise ValueError(f"invalid settings: {e}") from e


def load_scenario(path: Path) -> ScenarioSpec:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("scenario must be a YAML mapping")

    scenario_id = str(data.get("scenario_id") or data.get("id") or path.stem)
    title = str(data.get("title") or scenario_id)
    seed = data.get("seed")

    raw_settings = data.get("settings") or {}
    if not isinstance(raw_settings, dict):
        raise ValueError("scenario.settings must be a mapping")
    _check_settings(raw_settings)

    agents: list[ScenarioAgent] = []
    for i, raw in enumerate(data.get("agents") or []):
        where = f"agents[{i}]"
        if not isinstance(raw, dict):
            raise ValueError(f"{where}: each agent must be a mapping")
        agent_id = _require_str(raw, "id", where=where)
        trust = raw.get("trust")
        agents.append(
            ScenarioAgent(
                agent_id=agent_id,
                request=RegisterAgentRequest(
                    name=str(raw.get("name") or agent_id),
                    role=AgentRole(_require_str(raw, "role", where=where)),
                    payout_address=_require_str(raw, "payout_address", where=where),
                ),
                trust=None if trust is None else float(trust),
            )
        )

    raw_tasks = data.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise ValueError("scenario.tasks must be a non-empty list")
    tasks: dict[str, CreateTaskRequest] = {}
    for i, raw in enumerate(raw_tasks):
        where = f"tasks[{i}]"
        if not isinstance(raw, dict):
            raise ValueError(f"{where}: each task must be a mapping")
        ref = _require_str(raw, "ref", where=where)
        if ref in tasks:
            raise ValueError(f"{where}: duplicate task ref {ref!r}")
        fields = {k: v for k, v in raw.items() if k != "ref"}
        tasks[ref] = CreateTaskRequest.model_validate(fields)

    raw_steps = data.get("steps") or []
    if not isinstance(raw_steps, list):
        raise ValueError("scenario.steps must be a list")
    steps = [_parse_step(raw, index=i) for i, raw in enumerate(raw_steps)]

    return ScenarioSpec(
        scenario_id=scenario_id,
        title=title,
        seed=None if seed is None else int(seed),
        start_ms=int(data.get("start_ms") or 1_700_000_000_000),
        settings=dict(raw_settings),
        agents=agents,
        tasks=tasks,
        steps=steps,
    )


def _run_step(
    step: ScenarioStep,
    *,
    market: Orchestrator,
    clock: ManualClock,
    task_ids: dict[str, str],
) -> StepOutcome:
    outcome = StepOutcome(index=-1, action=step.action, task_ref=step.task_ref)

    if step.action == "advance_clock":
        outcome.detail["now_ms"] = clock.advance(step.advance_ms)
        return outcome

    if step.action == "calibrate":
        req = cast(SubmitCalibrationScoreRequest, step.request)
        ct = market.calibrations.for_source(task_ids.get(step.task_ref or "", ""))
        if ct is None:
            raise errors.NotFound("calibration task for", step.task_ref or "")
        attempt = market.score_calibration(ct.id, req.supervisor_agent_id, req.score, req.reasoning)
        outcome.detail = {
            "matches_ground_truth": attempt.matches_ground_truth,
            "trust_delta": attempt.trust_delta,
        }
        return outcome

    task_id = task_ids.get(step.task_ref or "")
    if task_id is None:
        raise ValueError(f"unknown task ref {step.task_ref!r}")

    if step.action == "claim":
        req = cast(ClaimTaskRequest, step.request)
        task = market.claim(task_id, req.subscriber_agent_id)
    elif step.action == "fulfill":
        req = cast(SubmitFulfillmentRequest, step.request)
        task = market.fulfill(task_id, req.subscriber_agent_id, req.fulfillment_text, req.fulfillment_data)
    elif step.action == "score":
        req = cast(SubmitScoreRequest, step.request)
        result = market.score(task_id, req.supervisor_agent_id, req.score, req.reasoning)
        task = result.task
        outcome.detail = {"auto_approved": result.auto_approved, "audited": result.audited}
    elif step.action == "verify":
        req = cast(SubmitVerificationRequest, step.request)
        verdict = market.verify(
            task_id,
            req.verifier,
            req.ground_truth_score,
            req.agrees_with_supervisor,
            req.feedback,
        )
        task = verdict.task
        outcome.detail = {"confusion": verdict.outcome.value}
        if verdict.new_task is not None:
            task_ids[step.alias or f"{step.task_ref}#{verdict.new_task.attempt_number}"] = verdict.new_task.id
            outcome.detail["new_task_id"] = verdict.new_task.id
    elif step.action == "answer":
        req = cast(SubmitAnswerRequest, step.request)
        task = market.answer(task_id, req.resolver_address, req.answer_text)
    elif step.action == "confirm":
        task = market.confirm(task_id).task
    elif step.action == "reject":
        task = market.reject(task_id).task
    elif step.action == "expire":
        task = market.expire(task_id).task
    elif step.action == "retry_settlement":
        task = market.retry_settlement(task_id).task
    else:
        raise AssertionError(f"unhandled action: {step.action}")

    outcome.status = task.status
    return outcome


def run_scenario(
    spec: ScenarioSpec,
    *,
    market: Orchestrator | None = None,
    clock: ManualClock | None = None,
    ledger: Ledger | None = None,
) -> tuple[Orchestrator, ScenarioReport]:
    """Replay a scenario. Builds a seeded market on a manual clock unless one is passed in."""
    clock = clock or ManualClock(spec.start_ms)
    if market is None:
        market = Orchestrator(
            settings=MarketSettings(**spec.settings),
            clock=clock,
            ledger=ledger,
            rng=random.Random(spec.seed),
        )

    for agent in spec.agents:
        market.register_agent(agent.request, agent_id=agent.agent_id)
        if agent.trust is not None:
            market.trust.seed(agent.agent_id, agent.trust)

    task_ids: dict[str, str] = {}
    for ref, req in spec.tasks.items():
        task_ids[ref] = market.create_task(req).id

    outcomes: list[StepOutcome] = []
    for index, step in enumerate(spec.steps):
        try:
            outcome = _run_step(step, market=market, clock=clock, task_ids=task_ids)
        except errors.UnblockError as e:
            if step.expect_error is None or type(e).__name__ != step.expect_error:
                raise
            outcome = StepOutcome(index=index, action=step.action, task_ref=step.task_ref, error=str(e))
        else:
            if step.expect_error is not None:
                raise ValueError(
                    f"steps[{index}] ({step.action}) expected {step.expect_error} but succeeded"
                )
        outcome.index = index
        log.debug("scenario_step", index=index, action=step.action, status=outcome.status)
        outcomes.append(outcome)

    return market, ScenarioReport(scenario_id=spec.scenario_id, task_ids=task_ids, outcomes=outcomes)
