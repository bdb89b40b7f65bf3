"""
Migration Agent - job orchestration.
====================================================
Recommendation -> plan -> human approval -> preflight -> backup -> execute
-> CI -> safety evaluation -> report -> PR -> human merge decision.

Collaborators (git, CI, PR host, store) are injected per agent; an agent
is bound to one working directory. Job status changes go through the
transition table below and every human or agent action is audited.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional

from .backup import BackupManager
from .ci import CIRunner, run_shell
from .config import AgentConfig, get_config
from .errors import (
    BackupError,
    GitCommandError,
    PlanStateError,
    RecommendationValidationError,
    SafetyViolationError,
    TransientToolError,
)
from .executor import CommandRunner, Executor
from .models import (
    ActorType,
    ExecutionState,
    HumanReview,
    MigrationJob,
    MigrationStatus,
    Recommendation,
    StepExecution,
    StepStatus,
    StopReason,
    utcnow,
)
from .planner import (
    ProjectContext,
    approve_plan,
    generate_plan,
    reject_plan,
    request_plan_changes,
    validate_plan_for_execution,
)
from .preflight import Preflight
from .prhost import GitHubPRHost
from .reporter import Reporter
from .safety import create_safety_stop, should_trigger_safety_stop
from .store import JobStore
from .vcs import GitRepository

logger = logging.getLogger(__name__)

S = MigrationStatus

# Valid transitions: from_status → [to_statuses]
TRANSITIONS: dict[MigrationStatus, list[MigrationStatus]] = {
    S.PENDING: [S.PLANNING, S.FAILED],
    S.PLANNING: [S.AWAITING_PLAN_APPROVAL, S.FAILED],
    S.AWAITING_PLAN_APPROVAL: [S.PREFLIGHT, S.REJECTED, S.FAILED],
    S.PREFLIGHT: [S.BACKING_UP, S.FAILED],
    S.BACKING_UP: [S.EXECUTING, S.FAILED],
    S.EXECUTING: [S.TESTING, S.SAFETY_STOPPED, S.TIMEOUT, S.FAILED],
    S.TESTING: [S.REPORTING, S.SAFETY_STOPPED, S.FAILED],
    S.REPORTING: [S.AWAITING_REVIEW, S.FAILED],
    S.AWAITING_REVIEW: [S.MERGED, S.REJECTED],
    S.SAFETY_STOPPED: [S.REJECTED],
    S.TIMEOUT: [S.REJECTED],
    S.FAILED: [S.REJECTED],
    S.MERGED: [],
    S.REJECTED: [],
}

# Statuses from which the backup branch may be rolled back
_ROLLBACK_OK = (S.SAFETY_STOPPED, S.TIMEOUT, S.FAILED, S.AWAITING_REVIEW, S.REJECTED)

ProgressCallback = Callable[[MigrationJob, int, str], None]

AUTO_APPROVER = "auto-approved"


class MigrationAgent:
    """Runs migration jobs for one repository working directory."""

    def __init__(
        self,
        workdir: str | Path,
        config: AgentConfig | None = None,
        store: JobStore | None = None,
        vcs: GitRepository | None = None,
        ci: CIRunner | None = None,
        pr_host: GitHubPRHost | None = None,
        runner: CommandRunner = run_shell,
        context: ProjectContext | None = None,
    ):
        self.workdir = str(workdir)
        self.config = config or get_config()
        cfg = self.config
        self.store = store or JobStore(cfg.store.db_path)
        self.vcs = vcs or GitRepository(self.workdir, remote=cfg.git.remote)
        self.ci = ci or CIRunner(self.workdir, cfg.ci)
        self.context = context or ProjectContext(package_manager=cfg.package_manager)
        if pr_host is None and cfg.git.create_pr and cfg.git.repository:
            pr_host = GitHubPRHost.from_config(cfg.git.repository, cfg.pr_host)
        self.backups = BackupManager(self.vcs, cfg.git)
        self.preflight = Preflight(self.vcs, self.ci, cfg.safety, cfg.preflight)
        self.executor = Executor(
            self.backups, cfg.safety, self.workdir, step_timeout=cfg.step_timeout_sec, runner=runner
        )
        self.reporter = Reporter(self.backups, cfg.git, pr_host, cfg.pr_host)
        self.pr_host = pr_host

    # ── Helpers ──

    def _transition(self, job: MigrationJob, to: MigrationStatus, reason: str = "") -> None:
        if to not in TRANSITIONS[job.status]:
            raise PlanStateError(f"Job {job.id}: cannot move from '{job.status.value}' to '{to.value}'")
        logger.info("Job %s: %s -> %s %s", job.id, job.status.value, to.value, reason)
        job.status = to
        self.store.save(job)

    def _audit(self, job: MigrationJob, action: str, detail: str = "",
               actor: str = "migration-agent", actor_type: ActorType = ActorType.AGENT) -> None:
        self.store.audit(job.id, action, detail, actor=actor, actor_type=actor_type)

    def _fail(self, job: MigrationJob, error: str) -> MigrationJob:
        job.error = error
        job.completed_at = utcnow()
        self._transition(job, S.FAILED, error)
        return job

    @staticmethod
    def _progress(cb: Optional[ProgressCallback], job: MigrationJob, pct: int, msg: str) -> None:
        if cb:
            cb(job, max(0, min(100, pct)), msg)

    def get_job(self, job_id: str) -> MigrationJob:
        return self.store.get(job_id)

    def audit_trail(self, job_id: str):
        return self.store.audit_entries(job_id)

    # ── Planning ──

    def start(
        self,
        rec: Recommendation,
        triggered_by: str = "system",
        on_progress: Optional[ProgressCallback] = None,
    ) -> MigrationJob:
        """Create a job and its plan. Assisted mode approves and executes right away."""
        job = MigrationJob(recommendation=rec, triggered_by=triggered_by)
        self.store.save(job)
        self._transition(job, S.PLANNING)
        self._progress(on_progress, job, 5, "Generating plan")
        try:
            job.plan = generate_plan(rec, self.config.safety, self.context)
        except RecommendationValidationError as e:
            self._fail(job, str(e))
            raise
        self._audit(job, "plan_generated", f"{len(job.plan.steps)} steps, within limits={job.plan.within_safety_limits}")
        self._transition(job, S.AWAITING_PLAN_APPROVAL)
        self._progress(on_progress, job, 10, "Awaiting plan approval")

        if self.config.mode == "assisted":
            job = self.approve_plan(job.id, AUTO_APPROVER, actor_type=ActorType.SYSTEM)
            return self.execute(job.id, on_progress)
        return job

    def approve_plan(self, job_id: str, actor: str, actor_type: ActorType = ActorType.USER) -> MigrationJob:
        job = self._awaiting_plan(job_id)
        approve_plan(job.plan, actor)
        self.store.save(job)
        self._audit(job, "plan_approved", f"approved by {actor}", actor, actor_type)
        return job

    def reject_plan(self, job_id: str, actor: str, reason: str = "") -> MigrationJob:
        job = self._awaiting_plan(job_id)
        reject_plan(job.plan, actor, reason)
        job.completed_at = utcnow()
        self._transition(job, S.REJECTED, reason)
        self._audit(job, "plan_rejected", reason, actor, ActorType.USER)
        return job

    def request_plan_changes(self, job_id: str, actor: str, changes: list[str]) -> MigrationJob:
        job = self._awaiting_plan(job_id)
        request_plan_changes(job.plan, actor, changes)
        self.store.save(job)
        self._audit(job, "plan_changes_requested", "; ".join(changes), actor, ActorType.USER)
        return job

    def _awaiting_plan(self, job_id: str) -> MigrationJob:
        job = self.store.get(job_id)
        if job.status != S.AWAITING_PLAN_APPROVAL or job.plan is None:
            raise PlanStateError(f"Job {job_id} is '{job.status.value}', not awaiting plan approval")
        return job

    # ── Execution ──

    def execute(self, job_id: str, on_progress: Optional[ProgressCallback] = None) -> MigrationJob:
        """Run an approved plan through preflight, backup, execution, CI and reporting."""
        job = self._awaiting_plan(job_id)
        plan = job.plan
        issues = validate_plan_for_execution(plan)
        if not plan.within_safety_limits:
            self._fail(job, "Plan exceeds safety limits")
            raise SafetyViolationError("Plan exceeds safety limits", plan.violations)
        if issues:
            raise PlanStateError("; ".join(issues))

        rec = job.recommendation
        job.started_at = utcnow()

        # Preflight
        self._transition(job, S.PREFLIGHT)
        self._audit(job, "preflight_start")
        self._progress(on_progress, job, 15, "Running preflight checks")
        job.preflight = self.preflight.run(rec)
        if not job.preflight.all_passed:
            failed = ", ".join(c.name for c in job.preflight.failed)
            self._audit(job, "preflight_failed", failed)
            return self._fail(job, f"Preflight failed: {failed}")
        self._audit(job, "preflight_complete")

        # Backup
        self._transition(job, S.BACKING_UP)
        self._progress(on_progress, job, 20, "Creating backup branch")
        try:
            job.backup = self.backups.create_backup(job.id, rec.id, rec.subject_name)
        except (BackupError, GitCommandError) as e:
            return self._fail(job, str(e))
        self._audit(job, "branch_created", job.backup.branch_name)
        self._audit(job, "backup_committed", job.backup.anchor_sha)

        # Execute
        self._transition(job, S.EXECUTING)
        self._audit(job, "execution_start", f"{len(plan.steps)} steps")

        def on_step(step: StepExecution, total: int) -> None:
            action = "step_completed" if step.status == StepStatus.COMPLETED else "step_failed"
            self._audit(job, action, f"step {step.step_number}")
            self._progress(on_progress, job, 25 + int(50 * step.step_number / max(total, 1)),
                           f"Step {step.step_number}/{total}")

        job.execution = self.executor.run(plan, job.backup, on_step=on_step)
        if not job.execution.success:
            return self._stopped(job)
        self._audit(job, "execution_complete", f"{len(job.execution.steps)} steps")

        # CI
        self._transition(job, S.TESTING)
        self._progress(on_progress, job, 80, "Running tests")
        job.ci = self.ci.run_all(require_lint_pass=self.config.safety.require_lint_pass)
        self._audit(job, "tests_complete" if job.ci.all_green else "tests_failed",
                    f"{job.ci.tests.passed_count} passed, {job.ci.tests.failed_count} failed")
        reason = self._post_ci_stop(job)
        if reason is not None:
            commit = self.backups.commit_changes(job.backup, f"Partial migration - safety stop: {reason.value}")
            job.safety_stop = create_safety_stop(
                reason, partial_branch=job.backup.branch_name if commit.success else None
            )
            self._audit(job, "safety_stop", reason.value)
            job.completed_at = utcnow()
            self._transition(job, S.SAFETY_STOPPED, reason.value)
            return job

        # Report + PR
        self._transition(job, S.REPORTING)
        self._progress(on_progress, job, 90, "Generating report")
        try:
            job.report = self.reporter.generate_report(job.id, rec, plan, job.backup, job.execution, job.ci)
        except TransientToolError as e:
            return self._fail(job, f"Report generation failed: {e}")
        job.pull_request = self.reporter.create_pull_request(rec, job.backup, job.report)
        if job.pull_request:
            self._audit(job, "pr_opened", job.pull_request.url)
        job.completed_at = utcnow()
        self._transition(job, S.AWAITING_REVIEW)
        self._progress(on_progress, job, 100, "Awaiting review")
        return job

    def _post_ci_stop(self, job: MigrationJob) -> Optional[StopReason]:
        check = job.execution.safety_check
        if check is None:
            tests_ok = job.ci.all_green or not self.config.safety.require_tests_pass
            return None if tests_ok else StopReason.TESTS_FAILED
        return should_trigger_safety_stop(check, job.ci.all_green, self.config.safety)

    def _stopped(self, job: MigrationJob) -> MigrationJob:
        execution = job.execution
        job.safety_stop = execution.safety_stop
        job.completed_at = utcnow()
        reason = execution.safety_stop.reason.value if execution.safety_stop else execution.state.value
        self._audit(job, "safety_stop", f"{reason} at step {execution.stopped_at}")
        if execution.state == ExecutionState.TIMED_OUT:
            self._transition(job, S.TIMEOUT, reason)
        elif execution.state == ExecutionState.ERRORED:
            job.error = execution.error
            self._transition(job, S.FAILED, reason)
        else:
            self._transition(job, S.SAFETY_STOPPED, reason)
        return job

    # ── Human decisions ──

    def mark_merged(self, job_id: str, reviewer: str, merge_sha: str | None = None, comments: str = "") -> MigrationJob:
        """Post-merge bookkeeping. The merge itself happened on the PR host."""
        job = self.store.get(job_id)
        job.human_review = HumanReview(reviewer=reviewer, decision="merged", comments=comments, merge_sha=merge_sha)
        job.recommendation_adopted = True
        if job.execution:
            job.actual_days = round(job.execution.duration_ms / 3_600_000 / 8, 3)
        if job.pull_request:
            job.pull_request.status = "merged"
        self._transition(job, S.MERGED, f"by {reviewer}")
        self._audit(job, "pr_merged", merge_sha or "", reviewer, ActorType.USER)
        if job.backup and not self.backups.cleanup_backup_branch(job.backup):
            logger.warning("Job %s merged but backup branch %s was not cleaned up", job.id, job.backup.branch_name)
        return job

    def reject_migration(self, job_id: str, reviewer: str, reason: str = "") -> MigrationJob:
        job = self.store.get(job_id)
        job.human_review = HumanReview(reviewer=reviewer, decision="rejected", comments=reason)
        if job.pull_request:
            job.pull_request.status = "closed"
        self._transition(job, S.REJECTED, reason)
        self._audit(job, "pr_rejected", reason, reviewer, ActorType.USER)
        return job

    def sync_pull_request(self, job_id: str) -> MigrationJob:
        """Observe the PR host; record a merge that a human performed there."""
        job = self.store.get(job_id)
        if job.status != S.AWAITING_REVIEW or not job.pull_request or self.pr_host is None:
            return job
        state = self.pr_host.get_pull_request(job.pull_request.number)
        if state and state["merged"]:
            return self.mark_merged(job_id, "pr-host", state.get("merge_commit_sha"))
        return job

    def rollback(self, job_id: str, actor: str = "migration-agent") -> MigrationJob:
        """Reset the job's backup branch to its anchor commit."""
        job = self.store.get(job_id)
        if job.backup is None:
            raise BackupError(f"Job {job_id} has no backup branch")
        if job.status not in _ROLLBACK_OK:
            raise PlanStateError(f"Cannot roll back job in status '{job.status.value}'")
        self.backups.rollback_to_backup(job.backup)
        self._audit(job, "rollback", job.backup.anchor_sha, actor,
                    ActorType.AGENT if actor == "migration-agent" else ActorType.USER)
        return job
