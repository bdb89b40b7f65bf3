"""migration-agent CLI - command line front end.

Usage:
    migration-agent plan rec.yaml --by alice
    migration-agent show mig-1a2b3c4d5e6f
    migration-agent approve mig-1a2b3c4d5e6f --by alice
    migration-agent execute mig-1a2b3c4d5e6f
    migration-agent merged mig-1a2b3c4d5e6f --by bob --sha 1234abcd
    migration-agent audit mig-1a2b3c4d5e6f
    migration-agent serve --port 8095
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

import yaml

from .agent import MigrationAgent
from .config import load_config
from .errors import MigrationAgentError, SafetyViolationError
from .models import MigrationJob, Recommendation
from .planner import render_plan_markdown
from .preflight import render_preflight_summary
from .reporter import render_report_markdown
from .safety import render_safety_summary

logger = logging.getLogger(__name__)

NO_COLOR = bool(os.environ.get("NO_COLOR"))

_STATUS_COLORS = {
    "awaiting_plan_approval": "\033[33m",
    "awaiting_review": "\033[36m",
    "merged": "\033[32m",
    "rejected": "\033[2m",
    "failed": "\033[31m",
    "safety_stopped": "\033[31m",
    "timeout": "\033[31m",
}


def _status(s: str) -> str:
    code = _STATUS_COLORS.get(s)
    if NO_COLOR or not code or not sys.stdout.isatty():
        return s
    return f"{code}{s}\033[0m"


def _emit(args, job: MigrationJob, detail: str = "") -> None:
    if args.json_output:
        print(json.dumps(job.to_dict(), indent=2))
        return
    print(f"{job.id}  {_status(job.status.value)}  {job.recommendation.subject_name}")
    if job.error:
        print(f"error: {job.error}")
    if detail:
        print()
        print(detail)


def load_recommendation(path: str) -> Recommendation:
    """Read a recommendation from a YAML or JSON file."""
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    return Recommendation.model_validate(raw)


# ── Commands ──


def cmd_plan(agent: MigrationAgent, args) -> None:
    job = agent.start(load_recommendation(args.recommendation), triggered_by=args.by)
    _emit(args, job, render_plan_markdown(job.plan) if job.plan else "")


def cmd_show(agent: MigrationAgent, args) -> None:
    job = agent.get_job(args.job_id)
    parts = []
    if job.plan:
        parts.append(render_plan_markdown(job.plan))
    if job.preflight:
        parts.append(render_preflight_summary(job.preflight))
    if job.execution and job.execution.safety_check:
        parts.append(render_safety_summary(job.execution.safety_check, job.safety_stop))
    if job.report:
        parts.append(render_report_markdown(job.report))
    if job.pull_request:
        parts.append(f"Pull request: {job.pull_request.url}")
    _emit(args, job, "\n\n".join(parts))


def cmd_approve(agent: MigrationAgent, args) -> None:
    _emit(args, agent.approve_plan(args.job_id, args.by))


def cmd_reject(agent: MigrationAgent, args) -> None:
    _emit(args, agent.reject_plan(args.job_id, args.by, args.reason))


def cmd_request_changes(agent: MigrationAgent, args) -> None:
    _emit(args, agent.request_plan_changes(args.job_id, args.by, args.change))


def cmd_execute(agent: MigrationAgent, args) -> None:
    def progress(job, pct, msg):
        if not args.json_output:
            print(f"[{pct:3d}%] {msg}", file=sys.stderr)

    job = agent.execute(args.job_id, on_progress=progress)
    detail = ""
    if job.report:
        detail = render_report_markdown(job.report)
    elif job.execution and job.execution.safety_check:
        detail = render_safety_summary(job.execution.safety_check, job.safety_stop)
    elif job.preflight and not job.preflight.all_passed:
        detail = render_preflight_summary(job.preflight)
    _emit(args, job, detail)


def cmd_rollback(agent: MigrationAgent, args) -> None:
    _emit(args, agent.rollback(args.job_id, args.by))


def cmd_merged(agent: MigrationAgent, args) -> None:
    _emit(args, agent.mark_merged(args.job_id, args.by, args.sha, args.comments))


def cmd_rejected(agent: MigrationAgent, args) -> None:
    _emit(args, agent.reject_migration(args.job_id, args.by, args.reason))


def cmd_audit(agent: MigrationAgent, args) -> None:
    entries = agent.audit_trail(args.job_id)
    if args.json_output:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return
    for e in entries:
        print(f"{e.timestamp}  {e.action:<24} {e.actor:<18} {e.detail}")


def cmd_serve(agent: MigrationAgent, args) -> None:
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(agent), host=args.host, port=args.port)


# ── Parser ──


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="migration-agent", description="Supervised code migration agent")
    p.add_argument("--config", type=Path, help="Config YAML (default $MIGRATION_AGENT_CONFIG)")
    p.add_argument("--workdir", default=".", help="Repository working directory")
    p.add_argument("--json", dest="json_output", action="store_true", help="Raw JSON output")
    p.add_argument("-v", "--verbose", action="store_true")

    sub = p.add_subparsers(dest="command", required=True)

    pp = sub.add_parser("plan", help="Create a job and plan from a recommendation file")
    pp.add_argument("recommendation", help="Recommendation YAML/JSON")
    pp.add_argument("--by", default=os.environ.get("USER", "cli"), help="Triggered by")
    pp.set_defaults(func=cmd_plan)

    ps = sub.add_parser("show", help="Show a job")
    ps.add_argument("job_id")
    ps.set_defaults(func=cmd_show)

    pa = sub.add_parser("approve", help="Approve a job's plan")
    pa.add_argument("job_id")
    pa.add_argument("--by", required=True)
    pa.set_defaults(func=cmd_approve)

    pr = sub.add_parser("reject", help="Reject a job's plan")
    pr.add_argument("job_id")
    pr.add_argument("--by", required=True)
    pr.add_argument("--reason", default="")
    pr.set_defaults(func=cmd_reject)

    pc = sub.add_parser("request-changes", help="Request plan changes")
    pc.add_argument("job_id")
    pc.add_argument("--by", required=True)
    pc.add_argument("--change", action="append", required=True, help="Requested change (repeatable)")
    pc.set_defaults(func=cmd_request_changes)

    pe = sub.add_parser("execute", help="Execute an approved plan")
    pe.add_argument("job_id")
    pe.set_defaults(func=cmd_execute)

    pb = sub.add_parser("rollback", help="Reset the backup branch to its anchor commit")
    pb.add_argument("job_id")
    pb.add_argument("--by", default="migration-agent")
    pb.set_defaults(func=cmd_rollback)

    pm = sub.add_parser("merged", help="Record a human merge of the job's PR")
    pm.add_argument("job_id")
    pm.add_argument("--by", required=True)
    pm.add_argument("--sha", default=None)
    pm.add_argument("--comments", default="")
    pm.set_defaults(func=cmd_merged)

    pj = sub.add_parser("rejected", help="Record a human rejection of the job's PR")
    pj.add_argument("job_id")
    pj.add_argument("--by", required=True)
    pj.add_argument("--reason", default="")
    pj.set_defaults(func=cmd_rejected)

    pl = sub.add_parser("audit", help="Show a job's audit trail")
    pl.add_argument("job_id")
    pl.set_defaults(func=cmd_audit)

    sv = sub.add_parser("serve", help="Serve the approval API")
    sv.add_argument("--host", default="127.0.0.1")
    sv.add_argument("--port", type=int, default=8095)
    sv.set_defaults(func=cmd_serve)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    level = "DEBUG" if args.verbose else os.environ.get("LOG_LEVEL", "WARNING")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    agent = MigrationAgent(args.workdir, config=load_config(args.config))
    try:
        args.func(agent, args)
    except SafetyViolationError as e:
        print(f"error: {e}", file=sys.stderr)
        for v in e.violations:
            print(f"  - {v}", file=sys.stderr)
        return 2
    except MigrationAgentError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
