from __future__ import annotations

import argparse
import json
from pathlib import Path

import structlog

from unblock.config import MarketSettings, load_settings, repo_root
from unblock.errors import UnblockError
from unblock.ledger import HashChainedLedger, summarize_ledger
from unblock.observability import configure_logging
from unblock.orchestrator import Orchestrator
from unblock.scenario import ScenarioReport, load_scenario, run_scenario

log = structlog.get_logger(__name__)


def _existing_path(value: str) -> Path:
    p = Path(value)
    if not p.exists():
        raise argparse.ArgumentTypeError(f"path not found: {value}")
    return p


def _scenario_path(value: str) -> Path:
    p = _existing_path(value)
    if p.suffix.lower() not in {".yml", ".yaml"}:
        raise argparse.ArgumentTypeError(f"scenario must be YAML: {value}")
    return p


def _print_market(market: Orchestrator, report: ScenarioReport) -> None:
    refs = {task_id: ref for ref, task_id in report.task_ids.items()}
    print(f"Scenario: {report.scenario_id}")

    print("\nSteps:")
    for o in report.outcomes:
        target = f" {o.task_ref}" if o.task_ref else ""
        if o.error:
            print(f"- [{o.index}] {o.action}{target}: refused ({o.error})")
            continue
        extra = " ".join(f"{k}={v}" for k, v in o.detail.items())
        status = f" -> {o.status}" if o.status else ""
        print(f"- [{o.index}] {o.action}{target}{status}{(' ' + extra) if extra else ''}")

    print("\nTasks:")
    for task in sorted(market.list_tasks(), key=lambda t: t.created_at_ms):
        settled = getattr(task, "settled", None)
        flag = "" if settled is None else (" settled" if settled else " UNSETTLED")
        print(
            f"- {refs.get(task.id, task.id)} status={task.status} bounty={task.bounty_amount} "
            f"attempt={task.attempt_number or 1}{flag}"
        )

    print("\nTrust:")
    for rec in sorted(market.trust.list(), key=lambda r: r.agent_id):
        cm = rec.confusion_matrix
        print(
            f"- {rec.agent_id} score={rec.score:.1f} tier={rec.tier} "
            f"tp={cm.tp} tn={cm.tn} fp={cm.fp} fn={cm.fn} "
            f"calibration={rec.calibration_successes}/{rec.calibration_attempts}"
        )

    print(f"\nLedger events: {len(market.ledger)}")


def _config_validate(*, settings: MarketSettings, scenario_path: Path | None) -> int:
    issues: list[str] = []
    checks_passed = 0

    env_path = repo_root() / ".env"
    if env_path.exists():
        print(f"✓ .env file found: {env_path}")
        checks_passed += 1
    else:
        print(f"- no .env file at {env_path} (using environment and defaults)")

    print("✓ Market settings valid:")
    print(f"  - supervisor_score_threshold={settings.supervisor_score_threshold}")
    print(
        f"  - payment split subscriber/verifier="
        f"{settings.subscriber_payment_share:.2f}/{settings.verifier_payment_share:.2f}"
    )
    print(f"  - audit_sample_rate={settings.audit_sample_rate}")
    print(f"  - auto_approve_subscriber_min_trust={settings.auto_approve_subscriber_min_trust}")
    print(f"  - subscriber_min_claim_trust={settings.subscriber_min_claim_trust}")
    print(f"  - calibration_score_tolerance={settings.calibration_score_tolerance}")
    checks_passed += 1

    if scenario_path is not None:
        if not scenario_path.exists():
            issues.append(f"✗ Scenario file not found: {scenario_path}")
        else:
            try:
                scenario = load_scenario(scenario_path)
            except ValueError as e:
                issues.append(f"✗ Scenario file invalid: {e}")
            else:
                print(f"✓ Scenario file valid: {scenario.scenario_id}")
                print(f"  - {len(scenario.agents)} agents, {len(scenario.tasks)} tasks, {len(scenario.steps)} steps")
                checks_passed += 1

    print()
    if issues:
        print("Issues found:")
        for issue in issues:
            print(f"  {issue}")
        print(f"\n{checks_passed} checks passed, {len(issues)} issues found")
        return 1
    print(f"✓ All {checks_passed} checks passed")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="unblock")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sim_p = sub.add_parser("simulate", help="replay a scripted scenario against an in-process market")
    sim_p.add_argument("--scenario", type=_scenario_path, required=True)
    sim_p.add_argument(
        "--ledger",
        type=Path,
        default=None,
        help="write the audit ledger to this JSONL file (default: in memory)",
    )
    sim_p.add_argument("--overwrite", action="store_true")
    sim_p.add_argument("--json", action="store_true", help="print final tasks and trust as JSON")

    rep_p = sub.add_parser("report", help="summarize an audit ledger")
    rep_p.add_argument("--ledger", type=_existing_path, required=True)

    ver_p = sub.add_parser("verify-ledger", help="check the hash chain of an audit ledger")
    ver_p.add_argument("--ledger", type=_existing_path, required=True)

    config_p = sub.add_parser("config", help="configuration utilities")
    config_sub = config_p.add_subparsers(dest="config_cmd", required=True)
    validate_p = config_sub.add_parser("validate", help="validate configuration")
    validate_p.add_argument("--scenario", type=Path, default=None, help="scenario YAML to validate")

    args = parser.parse_args(argv)
    try:
        settings = load_settings()
    except ValueError as e:
        raise SystemExit(f"invalid configuration: {e}") from e
    configure_logging(log_format=settings.log_format, level=settings.log_level)

    if args.cmd == "config":
        return _config_validate(settings=settings, scenario_path=args.scenario)

    if args.cmd == "verify-ledger":
        try:
            ledger = HashChainedLedger(Path(args.ledger))
            ledger.verify_chain()
        except ValueError as e:
            print(f"✗ {e}")
            return 1
        print(f"✓ ledger chain intact: {len(ledger)} events")
        return 0

    if args.cmd == "report":
        summary = summarize_ledger(HashChainedLedger(Path(args.ledger)).iter_events())
        print(json.dumps(summary.model_dump(), indent=2, sort_keys=True))
        return 0

    if args.cmd == "simulate":
        try:
            scenario = load_scenario(Path(args.scenario))
        except ValueError as e:
            raise SystemExit(f"invalid scenario: {e}") from e

        ledger = None
        if args.ledger is not None:
            ledger_path = Path(args.ledger)
            if ledger_path.exists() and ledger_path.stat().st_size > 0 and not args.overwrite:
                raise SystemExit(f"ledger already exists (use --overwrite): {ledger_path}")
            ledger = HashChainedLedger(ledger_path)
            ledger.reset()

        try:
            market, report = run_scenario(scenario, ledger=ledger)
        except (UnblockError, ValueError) as e:
            log.error("scenario_failed", scenario_id=scenario.scenario_id, error=str(e))
            raise SystemExit(f"scenario {scenario.scenario_id} failed: {e}") from e

        if args.json:
            out = {
                "scenario_id": report.scenario_id,
                "task_ids": report.task_ids,
                "tasks": [t.model_dump(mode="json") for t in market.list_tasks()],
                "trust": [r.model_dump(mode="json") for r in market.trust.list()],
            }
            print(json.dumps(out, indent=2, sort_keys=True))
        else:
            _print_market(market, report)
        if ledger is not None:
            print(f"Ledger: {ledger.path}")
        return 0

    raise SystemExit(f"unknown command: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
