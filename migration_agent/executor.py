"""
Executor - supervised sequential step execution.
====================================================
RUNNING -> {COMPLETED, TIMED_OUT, AMBIGUITY_STOPPED, STEP_FAILED, ERRORED}

Per step: plan-level timeout (checked at step boundaries), re-validation
against the safety policy, command run with a per-step timeout (the
process is killed), ambiguity scan, failure stop, success commit. Every
exit path attempts a commit on the backup branch first.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from .backup import BackupManager
from .ci import ShellResult, run_shell
from .config import SafetyLimits
from .errors import CommandTimeoutError, GitCommandError, MigrationAgentError, PlanStateError
from .models import (
    AmbiguityLogEntry,
    BackupInfo,
    DiffStats,
    EpistemicTag,
    ExecutionResult,
    ExecutionState,
    MigrationPlan,
    PlanStatus,
    PlanStep,
    SafetyCheck,
    SafetyStop,
    StepExecution,
    StepStatus,
    StopReason,
    utcnow,
)
from .safety import (
    TimeoutChecker,
    create_safety_stop,
    is_path_forbidden,
    perform_safety_check,
    step_forbidden_operation,
    validate_plan_step,
)

logger = logging.getLogger(__name__)

STEP_TIMEOUT_SEC = 300
AMBIGUITY_CONFIDENCE = 0.7
AMBIGUITY_RATIO = 0.3
MANUAL_STEP_OUTPUT = "Manual step - requires human intervention"

_AMBIGUITY_PATTERNS = [
    ("warning", re.compile(r"\bwarn", re.I)),
    ("deprecated", re.compile(r"deprecat", re.I)),
    ("multiple versions", re.compile(r"multiple versions", re.I)),
    ("conflict", re.compile(r"conflict", re.I)),
    ("peer dependency", re.compile(r"peer dep", re.I)),
    ("optional", re.compile(r"\boptional\b", re.I)),
]

TRANSITIONS: dict[ExecutionState, list[ExecutionState]] = {
    ExecutionState.RUNNING: [
        ExecutionState.COMPLETED,
        ExecutionState.TIMED_OUT,
        ExecutionState.AMBIGUITY_STOPPED,
        ExecutionState.STEP_FAILED,
        ExecutionState.ERRORED,
    ],
    ExecutionState.COMPLETED: [],
    ExecutionState.TIMED_OUT: [],
    ExecutionState.AMBIGUITY_STOPPED: [],
    ExecutionState.STEP_FAILED: [],
    ExecutionState.ERRORED: [],
}

CommandRunner = Callable[[str, str, float], ShellResult]


def scan_ambiguity(output: str) -> list[str]:
    """Ambiguity keywords found in step output."""
    return [label for label, rx in _AMBIGUITY_PATTERNS if rx.search(output)]


@dataclass
class ExecutionContext:
    """Accumulators for one run. Owned by a single ``Executor.run`` call."""

    plan: MigrationPlan
    backup: BackupInfo
    started_at: str = field(default_factory=utcnow)
    t0: float = field(default_factory=time.monotonic)
    state: ExecutionState = ExecutionState.RUNNING
    steps: list[StepExecution] = field(default_factory=list)
    ambiguities: list[AmbiguityLogEntry] = field(default_factory=list)
    forbidden_paths: list[str] = field(default_factory=list)
    forbidden_ops: list[str] = field(default_factory=list)
    stop: Optional[SafetyStop] = None
    stopped_at: Optional[int] = None
    error: Optional[str] = None

    def transition(self, to: ExecutionState) -> None:
        if to not in TRANSITIONS[self.state]:
            raise MigrationAgentError(f"Illegal execution transition {self.state.value} -> {to.value}")
        self.state = to

    @property
    def ambiguity_limit(self) -> float:
        return len(self.plan.steps) * AMBIGUITY_RATIO


class Executor:
    """Drives an approved plan on its backup branch."""

    def __init__(
        self,
        backups: BackupManager,
        limits: SafetyLimits,
        workdir: str | Path,
        step_timeout: float = STEP_TIMEOUT_SEC,
        runner: CommandRunner = run_shell,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backups = backups
        self.limits = limits
        self.workdir = str(workdir)
        self.step_timeout = step_timeout
        self.runner = runner
        self.clock = clock

    def run(
        self,
        plan: MigrationPlan,
        backup: BackupInfo,
        on_step: Callable[[StepExecution, int], None] | None = None,
    ) -> ExecutionResult:
        if plan.status != PlanStatus.APPROVED:
            raise PlanStateError(f"Plan {plan.id} is '{plan.status.value}', not approved")

        ctx = ExecutionContext(plan=plan, backup=backup, t0=self.clock())
        timer = TimeoutChecker(self.limits.max_execution_time_minutes, clock=self.clock)
        logger.info("Executing plan %s (%d steps) on %s", plan.id, len(plan.steps), backup.branch_name)

        current: Optional[int] = None
        try:
            for step in plan.steps:
                current = step.step_number
                if not self._run_step(ctx, step, timer):
                    break
                if on_step:
                    on_step(ctx.steps[-1], len(plan.steps))
            else:
                ctx.transition(ExecutionState.COMPLETED)
        except Exception as exc:  # top-level catch: report ERRORED, never raise
            logger.exception("Execution of plan %s failed", plan.id)
            commit = self.backups.commit_changes(backup, "Partial migration - error during execution")
            ctx.error = str(exc)
            ctx.stopped_at = current
            ctx.stop = create_safety_stop(
                StopReason.EXECUTION_ERROR, ctx.stopped_at, backup.branch_name if commit.success else None
            )
            if ctx.state == ExecutionState.RUNNING:
                ctx.transition(ExecutionState.ERRORED)

        return self._finish(ctx)

    # ── Per step ──

    def _run_step(self, ctx: ExecutionContext, step: PlanStep, timer: TimeoutChecker) -> bool:
        """Run one step. False when the run must stop."""
        n = step.step_number

        if timer.is_expired():
            logger.warning("Plan timeout reached before step %d", n)
            self._stop(ctx, ExecutionState.TIMED_OUT, StopReason.TIMEOUT, n,
                       f"Partial migration - timeout at step {n}")
            return False

        report = validate_plan_step(step, self.limits)
        if not report.valid:
            op = step_forbidden_operation(step, self.limits)
            paths = [p for p in step.files_affected if is_path_forbidden(p, self.limits.forbidden_paths)]
            if op:
                ctx.forbidden_ops.append(op)
            ctx.forbidden_paths.extend(paths)
            ctx.steps.append(
                StepExecution(n, StepStatus.FAILED, output="", error="; ".join(report.violations))
            )
            reason = StopReason.FORBIDDEN_OPERATION if op else StopReason.FORBIDDEN_PATH_ACCESS
            self._stop(ctx, ExecutionState.STEP_FAILED, reason, n, f"Partial migration - failed at step {n}")
            return False

        execution = self._execute(step)
        ctx.steps.append(execution)

        matched = scan_ambiguity(execution.output) if not step.is_placeholder else []
        if matched:
            ctx.ambiguities.append(
                AmbiguityLogEntry(
                    step_number=n,
                    description=f"Step {n} output mentions: {', '.join(matched)}",
                    confidence=AMBIGUITY_CONFIDENCE,
                    tag=EpistemicTag.INFERENCE,
                )
            )
            if len(ctx.ambiguities) > ctx.ambiguity_limit:
                self._stop(ctx, ExecutionState.AMBIGUITY_STOPPED, StopReason.AMBIGUITY_HIGH, n,
                           f"Partial migration - high ambiguity at step {n}")
                return False

        if execution.status == StepStatus.FAILED:
            self._stop(ctx, ExecutionState.STEP_FAILED, StopReason.STEP_FAILED, n,
                       f"Partial migration - failed at step {n}")
            return False

        commit = self.backups.commit_changes(ctx.backup, f"Step {n}: {step.action[:72]}")
        if not commit.success:
            logger.warning("Commit after step %d failed: %s", n, commit.error)
        return True

    def _execute(self, step: PlanStep) -> StepExecution:
        n = step.step_number
        if step.is_placeholder:
            return StepExecution(
                n, StepStatus.COMPLETED, output=MANUAL_STEP_OUTPUT,
                note="This step requires manual execution",
            )
        t0 = self.clock()
        try:
            r = self.runner(step.command, self.workdir, self.step_timeout)
        except CommandTimeoutError as exc:
            return StepExecution(
                n, StepStatus.FAILED, duration_ms=int((self.clock() - t0) * 1000), error=str(exc)
            )
        output = r.combined or "Command executed successfully"
        if r.ok:
            return StepExecution(n, StepStatus.COMPLETED, r.duration_ms, output)
        return StepExecution(
            n, StepStatus.FAILED, r.duration_ms, output,
            error=(r.stderr.strip() or f"Command exited with {r.returncode}")[:2000],
        )

    def _stop(self, ctx: ExecutionContext, state: ExecutionState, reason: StopReason, at_step: int, message: str):
        commit = self.backups.commit_changes(ctx.backup, message)
        ctx.stopped_at = at_step
        ctx.stop = create_safety_stop(reason, at_step, ctx.backup.branch_name if commit.success else None)
        ctx.transition(state)

    # ── Result ──

    def _finish(self, ctx: ExecutionContext) -> ExecutionResult:
        diff: Optional[DiffStats] = None
        check: Optional[SafetyCheck] = None
        try:
            diff = self.backups.get_backup_diff(ctx.backup)
            changed = self.backups.vcs.diff_name_status(ctx.backup.anchor_sha)
            for _, path, old_path in changed:
                for p in (old_path, path):
                    if p and is_path_forbidden(p, self.limits.forbidden_paths) and p not in ctx.forbidden_paths:
                        ctx.forbidden_paths.append(p)
            check = perform_safety_check(
                files_modified=diff.files_changed,
                lines_changed=diff.lines_changed,
                forbidden_paths_touched=ctx.forbidden_paths,
                forbidden_ops_attempted=ctx.forbidden_ops,
                estimated_complexity=ctx.plan.estimated_files,
                actual_complexity=diff.files_changed,
                limits=self.limits,
            )
        except (GitCommandError, CommandTimeoutError) as e:
            logger.warning("Could not compute final diff for %s: %s", ctx.backup.branch_name, e)

        duration_ms = int((self.clock() - ctx.t0) * 1000)
        logger.info(
            "Plan %s finished: %s after %d step(s) in %dms",
            ctx.plan.id, ctx.state.value, len(ctx.steps), duration_ms,
        )
        return ExecutionResult(
            state=ctx.state,
            started_at=ctx.started_at,
            completed_at=utcnow(),
            duration_ms=duration_ms,
            steps=ctx.steps,
            ambiguity_log=ctx.ambiguities,
            safety_check=check,
            safety_stop=ctx.stop,
            stopped_at=ctx.stopped_at,
            diff=diff,
            error=ctx.error,
        )
