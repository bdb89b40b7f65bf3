"""
Preflight - gate checks before any mutation.
====================================================
Five independent checks, never short-circuiting. A failed preflight blocks
the backup step; running the checks has no side effects on the repository.
"""

from __future__ import annotations

import logging
import re
import time

from .ci import CIRunner
from .config import PreflightConfig, SafetyLimits
from .errors import CommandTimeoutError, GitCommandError
from .models import CheckStatus, PreflightCheck, PreflightResult, Recommendation, Verdict
from .safety import is_path_forbidden
from .vcs import GitRepository

logger = logging.getLogger(__name__)

# Scope heuristics: files touched per step, lines per file
FILES_PER_STEP = 2
LINES_PER_FILE = 50

# name.ext, dir/name.ext, or a bare dotfile such as .env / .env.local
_PATH_TOKEN_RE = re.compile(r"[\w./\\-]+\.\w+|(?<![\w./\\-])\.\w+(?:[.-]\w+)*")

CHECK_LABELS = {
    "base_branch_clean": "Clean Working Directory",
    "tests_green": "Tests Passing",
    "recommendation_valid": "Valid Recommendation",
    "scope_within_limits": "Scope Within Limits",
    "no_forbidden_paths": "No Forbidden Paths",
}

_STATUS_MARK = {CheckStatus.PASSED: "✅", CheckStatus.FAILED: "❌", CheckStatus.SKIPPED: "⏭️"}


def extract_path_tokens(text: str) -> list[str]:
    """Path-like tokens (``name.ext``, ``dir/name.ext``, ``.env``) mentioned in free text."""
    return _PATH_TOKEN_RE.findall(text)


def recommendation_issues(rec: Recommendation) -> list[str]:
    issues = []
    if not rec.id:
        issues.append("Missing recommendation ID")
    if not rec.subject_name:
        issues.append("Missing subject name")
    if not rec.action:
        issues.append("Missing action type")
    if not rec.verdict:
        issues.append("Missing stability verdict")
    elif rec.verdict.upper() == Verdict.DEFER.value:
        issues.append("Recommendation verdict is DEFER - not ready for migration")
    if not rec.steps:
        issues.append("Missing implementation steps")
    return issues


class Preflight:
    """Runs the gate checks for one job's working directory."""

    def __init__(
        self,
        vcs: GitRepository,
        ci: CIRunner,
        limits: SafetyLimits,
        config: PreflightConfig | None = None,
    ):
        self.vcs = vcs
        self.ci = ci
        self.limits = limits
        self.config = config or PreflightConfig()

    def run(self, rec: Recommendation) -> PreflightResult:
        logger.info("Preflight for recommendation %s in %s", rec.id, self.vcs.workdir)
        checks = [
            self._timed(self.check_base_branch_clean),
            self._timed(self.check_tests_green),
            self._timed(self.check_recommendation_valid, rec),
            self._timed(self.check_scope_within_limits, rec),
            self._timed(self.check_no_forbidden_paths, rec),
        ]
        all_passed = all(c.status in (CheckStatus.PASSED, CheckStatus.SKIPPED) for c in checks)
        logger.info(
            "Preflight complete: all_passed=%s (%d failed)",
            all_passed,
            sum(1 for c in checks if c.status == CheckStatus.FAILED),
        )
        return PreflightResult(checks=checks, all_passed=all_passed)

    @staticmethod
    def _timed(fn, *args) -> PreflightCheck:
        t0 = time.monotonic()
        check = fn(*args)
        check.duration_ms = int((time.monotonic() - t0) * 1000)
        return check

    # ── Checks ──

    def check_base_branch_clean(self) -> PreflightCheck:
        try:
            status = self.vcs.status_porcelain().strip()
        except (GitCommandError, CommandTimeoutError) as e:
            return PreflightCheck("base_branch_clean", CheckStatus.FAILED, f"Failed to check git status: {e}")
        if not status:
            return PreflightCheck("base_branch_clean", CheckStatus.PASSED, "Working directory is clean")
        dirty = status.splitlines()
        return PreflightCheck(
            "base_branch_clean",
            CheckStatus.FAILED,
            f"Uncommitted changes detected: {len(dirty)} files",
            {"files": [line[3:] for line in dirty]},
        )

    def check_tests_green(self) -> PreflightCheck:
        if not self.config.run_tests:
            return PreflightCheck("tests_green", CheckStatus.SKIPPED, "Test check skipped by configuration")
        result = self.ci.run_tests()
        command = self.ci.config.test_command
        if result.passed:
            return PreflightCheck(
                "tests_green", CheckStatus.PASSED, f"Test suite passed: {command}", {"total": result.total}
            )
        return PreflightCheck(
            "tests_green",
            CheckStatus.FAILED,
            f"Tests failed: {command}",
            {"failed": result.failed_count, "output": result.output[-2000:]},
        )

    def check_recommendation_valid(self, rec: Recommendation) -> PreflightCheck:
        issues = recommendation_issues(rec)
        if issues:
            return PreflightCheck(
                "recommendation_valid",
                CheckStatus.FAILED,
                f"Recommendation validation failed: {', '.join(issues)}",
                {"issues": issues},
            )
        return PreflightCheck(
            "recommendation_valid", CheckStatus.PASSED, f"Recommendation {rec.id} is valid and actionable"
        )

    def check_scope_within_limits(self, rec: Recommendation) -> PreflightCheck:
        files = len(rec.steps) * FILES_PER_STEP
        lines = files * LINES_PER_FILE
        problems = []
        if files > self.limits.max_files_modified:
            problems.append(f"Estimated files ({files}) may exceed limit ({self.limits.max_files_modified})")
        if lines > self.limits.max_lines_changed:
            problems.append(f"Estimated lines ({lines}) may exceed limit ({self.limits.max_lines_changed})")
        days = rec.estimated_days or 0.0
        if days > self.config.max_estimated_days:
            problems.append(
                f"Estimated effort ({days:g} days) suggests complex migration - proceed with caution"
            )
        details = {"estimated_files": files, "estimated_lines": lines, "estimated_days": days}
        if problems:
            return PreflightCheck("scope_within_limits", CheckStatus.FAILED, "; ".join(problems), details)
        return PreflightCheck(
            "scope_within_limits",
            CheckStatus.PASSED,
            f"Scope appears within safety limits: ~{files} files, ~{lines} lines",
            details,
        )

    def check_no_forbidden_paths(self, rec: Recommendation) -> PreflightCheck:
        found = [
            path
            for step in rec.steps
            for path in extract_path_tokens(step)
            if is_path_forbidden(path, self.limits.forbidden_paths)
        ]
        if found:
            return PreflightCheck(
                "no_forbidden_paths",
                CheckStatus.FAILED,
                f"Forbidden paths detected: {', '.join(found)}",
                {"paths": found},
            )
        return PreflightCheck(
            "no_forbidden_paths", CheckStatus.PASSED, "No forbidden paths detected in recommendation scope"
        )


# ── Helpers ────────────────────────────────────────────────────────────────────


def render_preflight_summary(result: PreflightResult) -> str:
    lines = ["## Preflight Checks", ""]
    for c in result.checks:
        lines.append(f"{_STATUS_MARK[c.status]} **{CHECK_LABELS.get(c.name, c.name)}**: {c.message}")
    lines.append("")
    if result.all_passed:
        lines.append("**Result:** All checks passed. Migration can proceed.")
    else:
        lines.append(f"**Result:** {len(result.failed)} check(s) failed. Migration blocked.")
    return "\n".join(lines)


def quick_environment_check(vcs: GitRepository) -> tuple[bool, list[str]]:
    """(ready, issues) for the tooling the agent needs."""
    issues = []
    if not vcs.is_available():
        issues.append("Git is not available")
    elif not vcs.is_repository():
        issues.append("Not a git repository")
    return not issues, issues


def can_execute_recommendation(rec: Recommendation) -> tuple[bool, list[str]]:
    """(executable, blockers) from the recommendation alone."""
    blockers = []
    if rec.verdict.upper() == Verdict.DEFER.value:
        blockers.append("Recommendation verdict is DEFER")
    if rec.confidence < 0.5:
        blockers.append(f"Confidence too low ({rec.confidence:.0%})")
    if rec.breaking_changes:
        blockers.append("Breaking changes require manual migration")
    if rec.complexity == "very_high":
        blockers.append("Complexity is very high - manual migration recommended")
    return not blockers, blockers
