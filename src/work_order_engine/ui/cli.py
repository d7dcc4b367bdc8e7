"""Command-line interface router for work-order-engine."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import structlog

from work_order_engine.collaborators import build_collaborator
from work_order_engine.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)
from work_order_engine.constants import DIAGNOSE_TOPIC, SLUG_PREFIX, SYSTEM_ACTOR
from work_order_engine.diagnostician.engine import Diagnostician, DiagnosticianSettings
from work_order_engine.domain.models import Priority, TriageState
from work_order_engine.escalation.policy import EscalationPolicy
from work_order_engine.escalation.task_queue import TaskQueue, TaskWorker
from work_order_engine.lifecycle.settlement import SettlementEngine
from work_order_engine.lifecycle.transitions import (
    TransitionError,
    TransitionEvent,
    TransitionGateway,
)
from work_order_engine.monitor.correlation import Correlator, load_signatures
from work_order_engine.monitor.detectors import DetectorSuite, MonitorSettings
from work_order_engine.monitor.sweep import MonitorSweep
from work_order_engine.observability.logging import correlation_scope, setup_logging
from work_order_engine.persistence import (
    AuditRepo,
    ExecutionLogRepo,
    StateDB,
    TriageRepo,
    WorkOrderRepo,
)

SHOW_EXEC_LOG_LIMIT: Final[int] = 20
TRIAGE_LIST_LIMIT: Final[int] = 500

logger = structlog.get_logger(__name__)


class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    def __init__(self, message: str, exit_code: int = 1) -> None:
        super().__init__(message)
        # Mutable: contextlib rewrites __traceback__ when this crosses correlation_scope.
        self.message = message
        self.exit_code = exit_code

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class EngineRuntime:
    """Components wired from one effective config."""

    config: Mapping[str, Any]
    db: StateDB
    gateway: TransitionGateway
    queue: TaskQueue

    def sweep(self) -> MonitorSweep:
        monitor = _section(self.config, "monitor")
        settings = MonitorSettings.from_mapping(monitor)
        signatures_file = _section(self.config, "paths").get("signatures_file")
        signatures = load_signatures(signatures_file if isinstance(signatures_file, str) else None)
        correlator = Correlator(
            self.db,
            signatures=signatures,
            scan_limit=settings.exec_log_scan_limit,
        )
        policy = EscalationPolicy(
            self.db,
            self.queue,
            correlation_threshold=int(monitor.get("correlation_escalation_threshold", 3)),
            max_attempts=int(_section(self.config, "task_queue").get("max_attempts", 5)),
        )
        detectors = DetectorSuite(self.db, self.gateway, settings=settings)
        return MonitorSweep(self.db, detectors, policy, correlator=correlator)

    def diagnostician(self) -> Diagnostician:
        settings = DiagnosticianSettings.from_mapping(_section(self.config, "diagnostician"))
        collaborator = build_collaborator(
            _section(self.config, "collaborator"),
            timeout_seconds=settings.collaborator_timeout_seconds,
        )
        return Diagnostician(self.db, self.gateway, collaborator, settings=settings)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="woe",
        description=(
            "work-order-engine — work order lifecycle and autonomic remediation.\n\n"
            "Common workflows:\n"
            "  woe create 'Fix login' 'Users cannot log in'   Create a draft work order\n"
            "  woe transition WO-0001 mark_ready              Apply one lifecycle event\n"
            "  woe sweep                                       Run the Tier-1 monitor once\n"
            "  woe worker --once                               Consume one queued task\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./work_order_engine.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name (built-in: offline).",
    )
    common.add_argument(
        "--state-db",
        dest="state_db",
        default=None,
        help="Override paths.state_db.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate_parser = subparsers.add_parser(
        "migrate", parents=[common], help="Apply state DB schema migrations"
    )
    migrate_parser.set_defaults(handler=_cmd_migrate)

    create_parser = subparsers.add_parser(
        "create", parents=[common], help="Create a draft work order"
    )
    create_parser.add_argument("name", help="Short work order name")
    create_parser.add_argument("objective", help="What the work order should achieve")
    create_parser.add_argument("--acceptance-criteria", default="", help="Acceptance criteria text")
    create_parser.add_argument(
        "--priority",
        choices=[priority.value for priority in Priority],
        default=Priority.P2_MEDIUM.value,
    )
    create_parser.add_argument("--tag", dest="tags", action="append", default=[])
    create_parser.add_argument("--parent", dest="parent_id", default=None, help="Parent id or slug")
    create_parser.add_argument(
        "--depends-on", dest="depends_on", action="append", default=[], help="Dependency id or slug"
    )
    create_parser.add_argument(
        "--execution-mode", choices=("remote", "local_cli"), default="remote"
    )
    create_parser.add_argument("--source", default="manual")
    create_parser.add_argument("--actor", default=SYSTEM_ACTOR)
    create_parser.set_defaults(handler=_cmd_create)

    transition_parser = subparsers.add_parser(
        "transition",
        parents=[common],
        help="Apply one lifecycle event to a work order",
        description=(
            "Apply one lifecycle event through the transition gateway.\n\n"
            "Events: " + ", ".join(event.value for event in TransitionEvent)
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    transition_parser.add_argument("work_order", help="Work order id or slug")
    transition_parser.add_argument(
        "event", choices=[event.value for event in TransitionEvent], help="Lifecycle event"
    )
    transition_parser.add_argument("--summary", default=None)
    transition_parser.add_argument("--reason", default=None)
    transition_parser.add_argument("--actor", default=SYSTEM_ACTOR)
    transition_parser.set_defaults(handler=_cmd_transition)

    settle_parser = subparsers.add_parser(
        "settle", parents=[common], help="Re-run settlement for a terminal work order"
    )
    settle_parser.add_argument("work_order", help="Work order id or slug")
    settle_parser.set_defaults(handler=_cmd_settle)

    sweep_parser = subparsers.add_parser(
        "sweep", parents=[common], help="Run the Tier-1 monitor sweep"
    )
    sweep_parser.add_argument(
        "--loop", action="store_true", help="Repeat every monitor.interval_seconds"
    )
    sweep_parser.add_argument(
        "--iterations", type=int, default=None, help="Stop after N sweeps when looping"
    )
    sweep_parser.set_defaults(handler=_cmd_sweep)

    diagnose_parser = subparsers.add_parser(
        "diagnose", parents=[common], help="Run one diagnostician batch"
    )
    diagnose_parser.add_argument("--worker-id", default=None)
    diagnose_parser.set_defaults(handler=_cmd_diagnose)

    worker_parser = subparsers.add_parser(
        "worker", parents=[common], help="Consume the durable task queue"
    )
    worker_parser.add_argument("--once", action="store_true", help="Process at most one task")
    worker_parser.add_argument("--iterations", type=int, default=None)
    worker_parser.add_argument("--worker-id", default=None)
    worker_parser.set_defaults(handler=_cmd_worker)

    show_parser = subparsers.add_parser("show", parents=[common], help="Show one work order")
    show_parser.add_argument("work_order", help="Work order id or slug")
    show_parser.set_defaults(handler=_cmd_show)

    triage_parser = subparsers.add_parser(
        "triage", parents=[common], help="List triage entries (unresolved by default)"
    )
    triage_parser.add_argument("--all", action="store_true", help="Include resolved entries")
    triage_parser.set_defaults(handler=_cmd_triage)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Print the effective (redacted) config"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        with correlation_scope(command=namespace.command, run_id=uuid.uuid4().hex[:12]):
            result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    """Compatibility wrapper for main-module wiring."""

    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_migrate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    db = StateDB(_state_db_path(config))
    version = db.migrate()
    _emit_json({"command": "migrate", "schema_version": version, "state_db": str(db.path)})
    return 0


def _cmd_create(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    repo = WorkOrderRepo(runtime.db)
    parent_id = (
        _resolve_work_order_id(repo, args.parent_id) if args.parent_id is not None else None
    )
    depends_on = [_resolve_work_order_id(repo, item) for item in _string_sequence(args.depends_on)]
    try:
        work_order = runtime.gateway.create_draft_work_order(
            _require_str(args.name, "name"),
            _require_str(args.objective, "objective"),
            acceptance_criteria=args.acceptance_criteria,
            priority=args.priority,
            tags=_string_sequence(args.tags),
            parent_id=parent_id,
            source=_require_str(args.source, "source"),
            depends_on=depends_on,
            execution_mode=args.execution_mode,
            actor=_require_str(args.actor, "actor"),
        )
    except TransitionError as exc:
        _emit_json({"command": "create", "ok": False, "error": exc.to_dict()})
        return 1
    _emit_json({"command": "create", "ok": True, "work_order": work_order.to_dict()})
    return 0


def _cmd_transition(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    work_order_id = _resolve_work_order_id(WorkOrderRepo(runtime.db), args.work_order)
    payload: dict[str, object] = {}
    for key in ("summary", "reason"):
        value = _optional_str(getattr(args, key, None))
        if value is not None:
            payload[key] = value

    try:
        result = runtime.gateway.transition(
            work_order_id,
            args.event,
            payload,
            _require_str(args.actor, "actor"),
        )
    except TransitionError as exc:
        _emit_json({"command": "transition", "ok": False, "error": exc.to_dict()})
        return 1
    _emit_json({"command": "transition", "ok": True, "result": result.to_dict()})
    return 0


def _cmd_settle(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    work_order_id = _resolve_work_order_id(WorkOrderRepo(runtime.db), args.work_order)
    try:
        outcome = SettlementEngine(runtime.db).settle(work_order_id)
    except KeyError as exc:
        raise CLIError(f"work order not found: {args.work_order}", exit_code=1) from exc
    _emit_json(
        {
            "command": "settle",
            "work_order_id": work_order_id,
            "changed": outcome.changed,
            "outcome": outcome.to_dict(),
        }
    )
    return 0


def _cmd_sweep(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    sweep = runtime.sweep()
    interval = float(_section(runtime.config, "monitor").get("interval_seconds", 300.0))
    iterations = _positive_int_or_none(args.iterations, "iterations")
    if not args.loop:
        iterations = 1

    completed = 0
    all_ok = True
    while iterations is None or completed < iterations:
        report = sweep.run()
        completed += 1
        all_ok = all_ok and report.ok
        _emit_json({"command": "sweep", "iteration": completed, "report": report.to_dict()})
        if iterations is not None and completed >= iterations:
            break
        time.sleep(interval)
    return 0 if all_ok else 4


def _cmd_diagnose(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    report = runtime.diagnostician().run_batch(worker_id=_optional_str(args.worker_id))
    _emit_json({"command": "diagnose", "report": report.to_dict()})
    return 0


def _cmd_worker(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    queue_config = _section(runtime.config, "task_queue")
    diagnostician = runtime.diagnostician()
    worker_id = _optional_str(args.worker_id) or f"worker-{os.getpid()}"
    worker = TaskWorker(
        runtime.queue,
        {DIAGNOSE_TOPIC: diagnostician.handle_task},
        worker_id,
        lease_seconds=int(queue_config.get("lease_seconds", 300)),
        retry_delay_seconds=int(queue_config.get("retry_delay_seconds", 60)),
    )

    if args.once:
        message = worker.run_once()
        _emit_json(
            {
                "command": "worker",
                "worker_id": worker_id,
                "processed": 0 if message is None else 1,
                "task_id": None if message is None else message.id,
            }
        )
        return 0

    processed = worker.run(
        poll_interval=float(queue_config.get("poll_interval_seconds", 5.0)),
        max_iterations=_positive_int_or_none(args.iterations, "iterations"),
    )
    _emit_json({"command": "worker", "worker_id": worker_id, "processed": processed})
    return 0


def _cmd_show(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    repo = WorkOrderRepo(runtime.db)
    work_order_id = _resolve_work_order_id(repo, args.work_order)
    work_order = repo.get(work_order_id)
    if work_order is None:
        raise CLIError(f"work order not found: {args.work_order}", exit_code=1)

    children = repo.list_children(work_order_id)
    audit = AuditRepo(runtime.db).list_for_work_order(work_order_id)
    exec_log = ExecutionLogRepo(runtime.db).list_for_work_order(
        work_order_id, limit=SHOW_EXEC_LOG_LIMIT
    )
    triage = [
        entry
        for entry in TriageRepo(runtime.db).list_unresolved()
        if entry.work_order_id == work_order_id
    ]
    _emit_json(
        {
            "command": "show",
            "work_order": work_order.to_dict(),
            "children": [
                {"id": child.id, "slug": child.slug, "status": child.status.value}
                for child in children
            ],
            "audit": [record.to_dict() for record in audit],
            "execution_log": [entry.to_dict() for entry in exec_log],
            "open_triage": [entry.to_dict() for entry in triage],
        }
    )
    return 0


def _cmd_triage(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    repo = TriageRepo(runtime.db)
    if args.all:
        entries = repo.list(limit=TRIAGE_LIST_LIMIT)
    else:
        entries = repo.list(
            states=(TriageState.OPEN, TriageState.ESCALATED), limit=TRIAGE_LIST_LIMIT
        )
    _emit_json(
        {
            "command": "triage",
            "count": len(entries),
            "entries": [entry.to_dict() for entry in entries],
        }
    )
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    payload = {
        "command": "config",
        "active_profile": _optional_str(getattr(args, "profile", None)),
        "config": json.loads(dump_effective_config(config)),
    }
    _emit_json(payload)
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))
    overrides: dict[str, object] = {}
    state_db = _optional_str(getattr(args, "state_db", None))
    if state_db is not None:
        overrides["paths.state_db"] = Path(state_db).expanduser().resolve().as_posix()

    try:
        config = load_config(config_path, profile=profile, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    log_dir = _section(config, "paths").get("log_dir")
    setup_logging(
        _section(config, "observability"),
        log_dir=log_dir if isinstance(log_dir, str) else None,
    )
    return config


def _runtime(args: argparse.Namespace) -> EngineRuntime:
    config = _load_effective_config(args)
    db = StateDB(_state_db_path(config))
    db.migrate()
    gateway = TransitionGateway(db)
    queue = TaskQueue(db)
    logger.debug("runtime_ready", state_db=str(db.path))
    return EngineRuntime(config=config, db=db, gateway=gateway, queue=queue)


def _state_db_path(config: Mapping[str, Any]) -> Path:
    value = _section(config, "paths").get("state_db")
    if not isinstance(value, str) or not value.strip():
        raise CLIError("missing config path: paths.state_db", exit_code=2)
    path = Path(value)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = config.get(name)
    return section if isinstance(section, Mapping) else {}


def _resolve_work_order_id(repo: WorkOrderRepo, reference: str) -> str:
    cleaned = _require_str(reference, "work order")
    if cleaned.startswith(SLUG_PREFIX):
        work_order = repo.get_by_slug(cleaned)
        if work_order is None:
            raise CLIError(f"work order not found: {cleaned}", exit_code=1)
        return work_order.id
    return cleaned


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string", exit_code=2)
    cleaned = value.strip()
    if not cleaned:
        raise CLIError(f"invalid {name}: value cannot be empty", exit_code=2)
    return cleaned


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument", exit_code=2)
    cleaned = value.strip()
    return cleaned or None


def _string_sequence(value: object) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        cleaned = value.strip()
        return () if not cleaned else (cleaned,)
    if not isinstance(value, Sequence):
        raise CLIError("invalid sequence argument", exit_code=2)

    parsed: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise CLIError("invalid sequence argument", exit_code=2)
        cleaned = item.strip()
        if cleaned:
            parsed.append(cleaned)
    return tuple(parsed)


def _positive_int_or_none(value: object, name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise CLIError(f"invalid {name}: expected a positive integer", exit_code=2)
    return value


__all__ = [
    "CLIError",
    "EngineRuntime",
    "build_parser",
    "main",
    "run_cli",
]


if __name__ == "__main__":
    raise SystemExit(run_cli())
