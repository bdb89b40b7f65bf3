"""
Reporter - migration report and pull request.
====================================================
Diff and per-file risk analysis, observation log, effort comparison and
trace info. Opens a PR for human review; the agent never merges.
"""

from __future__ import annotations

import logging
from typing import Optional

from .backup import BackupManager
from .config import GitConfig, PRHostConfig
from .errors import CommandTimeoutError, GitCommandError, PRHostError
from .models import (
    BackupInfo,
    CIResult,
    DiffStats,
    EffortComparison,
    EpistemicTag,
    ExecutionResult,
    FileChange,
    MigrationPlan,
    MigrationReport,
    Observation,
    PullRequest,
    Recommendation,
    RiskLevel,
    TraceInfo,
    new_id,
)
from .prhost import GitHubPRHost

logger = logging.getLogger(__name__)

HUMAN_REVIEW_DAYS = 0.5
WORK_HOURS_PER_DAY = 8
COMPLEXITY_WARNING_RATIO = 1.2

REVIEW_CHECKLIST = [
    "All tests pass",
    "Changes match recommendation scope",
    "No security concerns introduced",
    "Documentation updated if needed",
    "Rollback strategy understood",
]

_CHANGE_TYPES = {
    "A": ("added", RiskLevel.LOW),
    "M": ("modified", RiskLevel.MEDIUM),
    "D": ("deleted", RiskLevel.HIGH),
    "R": ("renamed", RiskLevel.MEDIUM),
}

_SENSITIVE_MARKERS = ("config", ".env", "secret", "credential")

_OBS_ICON = {"warning": "⚠️", "discovery": "💡"}
_RISK_MARK = {RiskLevel.LOW: "🟢", RiskLevel.MEDIUM: "🟡", RiskLevel.HIGH: "🔴"}


def classify_file(status: str, path: str) -> FileChange:
    change, risk = _CHANGE_TYPES.get(status, ("changed", RiskLevel.MEDIUM))
    if any(m in path.lower() for m in _SENSITIVE_MARKERS):
        risk = RiskLevel.HIGH
    return FileChange(path=path, change_type=change, risk=risk)


def build_observations(execution: ExecutionResult, plan: MigrationPlan, diff: DiffStats) -> list[Observation]:
    observations = [
        Observation("warning", a.description, a.tag, a.step_number) for a in execution.ambiguity_log
    ]
    if diff.files_changed > plan.estimated_files:
        observations.append(
            Observation(
                "discovery",
                f"Migration affected {diff.files_changed} files (estimated: {plan.estimated_files})",
                EpistemicTag.FACT,
            )
        )
    check = execution.safety_check
    if check and check.complexity_ratio > COMPLEXITY_WARNING_RATIO:
        pct = round((check.complexity_ratio - 1) * 100)
        observations.append(
            Observation("warning", f"Complexity was {pct}% higher than estimated", EpistemicTag.INFERENCE)
        )
    return observations


def compare_effort(rec: Recommendation, execution: ExecutionResult) -> EffortComparison:
    estimated = rec.estimated_days
    actual_minutes = execution.duration_ms / 60_000
    total = actual_minutes / 60 / WORK_HOURS_PER_DAY + HUMAN_REVIEW_DAYS
    speedup = f"{estimated / total:.1f}x" if estimated else "N/A"
    return EffortComparison(
        estimated=rec.raw_estimate or "unknown",
        estimated_days=estimated,
        actual_minutes=round(actual_minutes, 2),
        human_review_days=HUMAN_REVIEW_DAYS,
        total_days=round(total, 2),
        speedup=speedup,
    )


def build_trace(rec: Recommendation, observations: list[Observation]) -> TraceInfo:
    return TraceInfo(
        trace_id=new_id("trace"),
        recommendation_trace=rec.trace_id,
        facts_used=len(rec.facts),
        inferences_made=len(rec.inferences),
        assumptions_made=len(rec.assumptions),
        new_facts_discovered=sum(1 for o in observations if o.tag == EpistemicTag.FACT),
    )


def build_summary(diff: DiffStats, execution: ExecutionResult, ci: Optional[CIResult]) -> str:
    parts = [
        f"Migration completed in {execution.duration_ms / 60_000:.1f} minutes.",
        f"{diff.files_changed} files changed ({diff.net_change} lines).",
    ]
    if ci is not None:
        parts.append("All tests pass." if ci.all_green else f"Tests: {ci.tests.failed_count} failed.")
    if execution.ambiguity_log:
        parts.append(f"{len(execution.ambiguity_log)} ambiguities noted.")
    return " ".join(parts)


class Reporter:
    """Builds reports and opens pull requests for a job's backup branch."""

    def __init__(
        self,
        backups: BackupManager,
        git_config: GitConfig | None = None,
        pr_host: GitHubPRHost | None = None,
        pr_config: PRHostConfig | None = None,
    ):
        self.backups = backups
        self.git_config = git_config or GitConfig()
        self.pr_host = pr_host
        self.pr_config = pr_config or PRHostConfig()

    def generate_report(
        self,
        job_id: str,
        rec: Recommendation,
        plan: MigrationPlan,
        backup: BackupInfo,
        execution: ExecutionResult,
        ci: Optional[CIResult] = None,
    ) -> MigrationReport:
        diff = execution.diff or self.backups.get_backup_diff(backup)
        try:
            entries = self.backups.vcs.diff_name_status(backup.anchor_sha)
        except (GitCommandError, CommandTimeoutError) as e:
            logger.warning("Could not list changed files for %s: %s", backup.branch_name, e)
            entries = []
        files = [classify_file(status, path) for status, path, _ in entries]
        observations = build_observations(execution, plan, diff)
        report = MigrationReport(
            job_id=job_id,
            summary=build_summary(diff, execution, ci),
            diff=diff,
            files=files,
            observations=observations,
            effort=compare_effort(rec, execution),
            trace=build_trace(rec, observations),
        )
        logger.info("Report for job %s: %s", job_id, report_summary(report))
        return report

    def create_pull_request(
        self, rec: Recommendation, backup: BackupInfo, report: MigrationReport
    ) -> Optional[PullRequest]:
        """Open a PR for the backup branch. None when disabled or on host error."""
        if not self.git_config.create_pr:
            logger.info("PR creation disabled in config")
            return None
        if self.pr_host is None:
            logger.warning("PR creation enabled but no PR host configured")
            return None
        if not backup.pushed and not self.backups.push_backup(backup):
            logger.error("Cannot open PR: branch %s is not on the remote", backup.branch_name)
            return None

        title = f"[Migration] {rec.action}: {rec.subject_name}"
        body = render_pr_body(rec, report)
        labels = list(self.pr_config.labels)
        try:
            created = self.pr_host.create_pull_request(
                title=title, body=body, base=backup.created_from, head=backup.branch_name
            )
            self.pr_host.add_labels(created["number"], labels)
        except PRHostError as e:
            logger.error("Failed to create PR for %s: %s", backup.branch_name, e)
            return None

        return PullRequest(
            url=created["url"],
            number=created["number"],
            title=title,
            body=body,
            branch=backup.branch_name,
            target_branch=backup.created_from,
            labels=labels,
            review_checklist=list(REVIEW_CHECKLIST),
        )


# ── Rendering ──────────────────────────────────────────────────────────────────


def _diff_table(diff: DiffStats) -> list[str]:
    return [
        "| Metric | Value |",
        "|--------|-------|",
        f"| Files changed | {diff.files_changed} |",
        f"| Insertions | +{diff.insertions} |",
        f"| Deletions | -{diff.deletions} |",
        f"| Net change | {diff.net_change} |",
        "",
    ]


def render_pr_body(rec: Recommendation, report: MigrationReport) -> str:
    lines = ["## Summary", "", report.summary, ""]
    lines += [
        "## Recommendation",
        "",
        f"- **Action:** {rec.action}",
        f"- **Subject:** {rec.subject_name}",
        f"- **Priority:** {rec.priority}",
        f"- **Confidence:** {rec.confidence * 100:.0f}%",
        "",
    ]
    lines += ["## Changes", ""] + _diff_table(report.diff)
    if report.observations:
        lines += ["## Observations", ""]
        for obs in report.observations:
            lines.append(f"- {_OBS_ICON.get(obs.type, 'ℹ️')} [{obs.tag.value}] {obs.description}")
        lines.append("")
    lines += ["## Review Checklist", ""] + [f"- [ ] {item}" for item in REVIEW_CHECKLIST] + [""]
    lines += ["---", ""]
    if report.trace:
        lines += [f"**Trace:** `{report.trace.trace_id}`", ""]
    lines.append("*Opened by the migration agent. Merging is a human decision.*")
    return "\n".join(lines)


def render_report_markdown(report: MigrationReport) -> str:
    lines = ["# Migration Report", "", f"**Generated:** {report.generated_at}", ""]
    lines += ["## Summary", "", report.summary, ""]
    lines += ["## Diff Statistics", ""] + _diff_table(report.diff)
    if report.files:
        lines += ["## Files Changed", "", "| File | Change | Risk |", "|------|--------|------|"]
        for f in report.files[:20]:
            lines.append(f"| `{f.path}` | {f.change_type} | {_RISK_MARK[f.risk]} {f.risk.value} |")
        if len(report.files) > 20:
            lines.append(f"| ... | {len(report.files) - 20} more files | |")
        lines.append("")
    if report.observations:
        lines += ["## Observations", ""]
        for obs in report.observations:
            lines.append(f"- {_OBS_ICON.get(obs.type, 'ℹ️')} **[{obs.tag.value}]** {obs.description}")
        lines.append("")
    if report.effort:
        e = report.effort
        lines += [
            "## Effort Comparison",
            "",
            "| Metric | Value |",
            "|--------|-------|",
            f"| Estimated effort | {e.estimated} |",
            f"| Actual execution | {e.actual_agent_time} |",
            f"| Human review estimate | {e.human_review_days} days |",
            f"| Total estimate | {e.total} |",
            f"| Speedup factor | {e.speedup} |",
            "",
        ]
    if report.trace:
        t = report.trace
        lines += [
            "## Trace",
            "",
            f"- **Trace ID:** `{t.trace_id}`",
            f"- **Recommendation Trace:** `{t.recommendation_trace}`",
            f"- **Facts:** {t.facts_used}",
            f"- **Inferences:** {t.inferences_made}",
            f"- **Assumptions:** {t.assumptions_made}",
            f"- **New facts discovered:** {t.new_facts_discovered}",
            "",
        ]
    return "\n".join(lines)


def report_summary(report: MigrationReport) -> str:
    warnings = sum(1 for o in report.observations if o.type == "warning")
    speedup = report.effort.speedup if report.effort else "N/A"
    return (
        f"Migration complete: {report.diff.files_changed} files ({report.diff.net_change} lines). "
        f"{warnings} warnings. Speedup: {speedup}."
    )
