"""
Safety policy - limits, forbidden path/operation checks, stop conditions.
====================================================

Pure functions, no I/O. Consulted by the planner at plan time and again by
the executor before every step.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from ..config import SafetyLimits
from ..models import PlanStep, SafetyCheck, SafetyStop, StopReason
from . import pathmatch

logger = logging.getLogger(__name__)

PROTECTED_BRANCHES = frozenset({"main", "master", "production", "prod", "release"})

# Characters git refuses (or that break shell quoting) in a ref name
_ILLEGAL_REF_CHARS = re.compile(r"[\s~^:?*\[\\]")

# ── Recovery options per stop reason ───────────────────────────────────────────

_RECOVERY_OPTIONS: dict[StopReason, list[str]] = {
    StopReason.FILES_LIMIT_EXCEEDED: [
        "Split migration into smaller chunks",
        "Increase file limit with approval",
        "Review and exclude unnecessary files",
    ],
    StopReason.LINES_LIMIT_EXCEEDED: [
        "Split migration into phases",
        "Increase line limit with approval",
        "Review for unnecessary changes",
    ],
    StopReason.COMPLEXITY_EXCEEDED: [
        "Request human assistance for complex section",
        "Simplify approach",
        "Break into smaller tasks",
    ],
    StopReason.FORBIDDEN_PATH_ACCESS: [
        "Review plan to exclude sensitive paths",
        "Request explicit approval for path access",
        "Use alternative approach",
    ],
    StopReason.FORBIDDEN_OPERATION: [
        "Rewrite command without forbidden operation",
        "Request explicit approval",
        "Use safer alternative",
    ],
    StopReason.TESTS_FAILED: [
        "Review and fix failing tests",
        "Update tests for new behavior",
        "Roll back changes",
    ],
    StopReason.AMBIGUITY_HIGH: [
        "Request clarification from user",
        "Document assumptions and proceed with caution",
        "Defer ambiguous sections to human",
    ],
    StopReason.TIMEOUT: [
        "Resume from checkpoint",
        "Optimize slow operations",
        "Increase timeout with approval",
    ],
    StopReason.STEP_FAILED: [
        "Inspect the failed step output",
        "Fix the step and resume from checkpoint",
        "Roll back changes",
    ],
    StopReason.EXECUTION_ERROR: [
        "Retry operation",
        "Check tool and API status",
        "Resume from last checkpoint",
    ],
}

_DEFAULT_RECOVERY = ["Review logs and determine cause", "Contact support"]


@dataclass
class PolicyReport:
    valid: bool
    violations: list[str] = field(default_factory=list)


def default_safety_limits() -> SafetyLimits:
    return SafetyLimits()


# ── Path / operation matching ──────────────────────────────────────────────────


def is_path_forbidden(path: str, patterns: Iterable[str]) -> bool:
    return pathmatch.first_match(path, patterns) is not None


def contains_forbidden_operation(command: str, operations: Iterable[str]) -> Optional[str]:
    """Return the configured operation found in ``command`` (case-insensitive)."""
    lowered = command.lower()
    for op in operations:
        if op and op.lower() in lowered:
            return op
    return None


# ── Plan validation ────────────────────────────────────────────────────────────


def step_forbidden_operation(step: PlanStep, limits: SafetyLimits) -> Optional[str]:
    """Forbidden operation in the step's command or, for templated commands, its action text."""
    return contains_forbidden_operation(step.command, limits.forbidden_operations) or (
        contains_forbidden_operation(step.action, limits.forbidden_operations)
    )


def validate_plan_step(step: PlanStep, limits: SafetyLimits) -> PolicyReport:
    violations = [
        f"Step {step.step_number} affects forbidden path: {path}"
        for path in step.files_affected
        if is_path_forbidden(path, limits.forbidden_paths)
    ]
    op = step_forbidden_operation(step, limits)
    if op:
        violations.append(f"Step {step.step_number} contains forbidden operation: {op}")
    return PolicyReport(valid=not violations, violations=violations)


def validate_plan(
    steps: list[PlanStep],
    estimated_files: int,
    estimated_lines: int,
    limits: SafetyLimits,
) -> PolicyReport:
    """Aggregate whole-plan and per-step violations. Valid iff none."""
    violations: list[str] = []
    if estimated_files > limits.max_files_modified:
        violations.append(
            f"Estimated files ({estimated_files}) exceeds limit ({limits.max_files_modified})"
        )
    if estimated_lines > limits.max_lines_changed:
        violations.append(
            f"Estimated lines ({estimated_lines}) exceeds limit ({limits.max_lines_changed})"
        )
    for step in steps:
        violations.extend(validate_plan_step(step, limits).violations)
    if violations:
        logger.info("Plan validation found %d violation(s)", len(violations))
    return PolicyReport(valid=not violations, violations=violations)


# ── Runtime checks ─────────────────────────────────────────────────────────────


def perform_safety_check(
    files_modified: int,
    lines_changed: int,
    forbidden_paths_touched: list[str],
    forbidden_ops_attempted: list[str],
    estimated_complexity: float,
    actual_complexity: float,
    limits: SafetyLimits,
) -> SafetyCheck:
    ratio = actual_complexity / estimated_complexity if estimated_complexity > 0 else 1.0
    ratio = round(ratio, 2)
    within = (
        files_modified <= limits.max_files_modified
        and lines_changed <= limits.max_lines_changed
        and not forbidden_paths_touched
        and not forbidden_ops_attempted
        and ratio <= limits.complexity_threshold
    )
    return SafetyCheck(
        files_modified=files_modified,
        files_limit=limits.max_files_modified,
        lines_changed=lines_changed,
        lines_limit=limits.max_lines_changed,
        forbidden_paths_touched=list(forbidden_paths_touched),
        forbidden_ops_attempted=list(forbidden_ops_attempted),
        complexity_ratio=ratio,
        complexity_threshold=limits.complexity_threshold,
        within_limits=within,
    )


def should_trigger_safety_stop(
    check: SafetyCheck, tests_passed: bool, limits: SafetyLimits
) -> Optional[StopReason]:
    """First matching stop reason in fixed priority order, or None."""
    if check.files_modified > limits.max_files_modified:
        return StopReason.FILES_LIMIT_EXCEEDED
    if check.lines_changed > limits.max_lines_changed:
        return StopReason.LINES_LIMIT_EXCEEDED
    if check.forbidden_paths_touched:
        return StopReason.FORBIDDEN_PATH_ACCESS
    if check.forbidden_ops_attempted:
        return StopReason.FORBIDDEN_OPERATION
    if check.complexity_ratio > limits.complexity_threshold:
        return StopReason.COMPLEXITY_EXCEEDED
    if limits.require_tests_pass and not tests_passed:
        return StopReason.TESTS_FAILED
    return None


def recovery_options(reason: StopReason) -> list[str]:
    return list(_RECOVERY_OPTIONS.get(StopReason(reason), _DEFAULT_RECOVERY))


def create_safety_stop(
    reason: StopReason,
    at_step: Optional[int] = None,
    partial_branch: Optional[str] = None,
) -> SafetyStop:
    logger.warning("Safety stop: %s (step=%s)", StopReason(reason).value, at_step)
    return SafetyStop(
        reason=reason,
        at_step=at_step,
        partial_commit=partial_branch is not None,
        partial_branch=partial_branch,
        recovery_options=recovery_options(reason),
    )


# ── Branches ───────────────────────────────────────────────────────────────────


def is_protected_branch(name: str) -> bool:
    return name.strip().lower() in PROTECTED_BRANCHES


def validate_target_branch(name: str, base_branch: str) -> PolicyReport:
    if is_protected_branch(name):
        return PolicyReport(False, [f"Cannot operate on protected branch: {name}"])
    if name.strip() == base_branch.strip():
        return PolicyReport(False, [f"Cannot operate directly on base branch: {base_branch}"])
    return PolicyReport(True)


def _slug(text: str, limit: int = 30) -> str:
    s = re.sub(r"[^a-z0-9-]", "-", text.lower())
    s = re.sub(r"-+", "-", s).strip("-")
    return s[:limit].strip("-")


def _base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = digits[r] + out
        if n == 0:
            return out


def generate_safe_branch_name(
    prefix: str,
    recommendation_id: str,
    subject: str,
    clock: Callable[[], float] = time.time,
) -> str:
    """``<prefix>/<subject-slug>-<id fragment>-<base36 ms>``, git-legal."""
    prefix = _ILLEGAL_REF_CHARS.sub("-", prefix.strip()).rstrip("/") or "migration"
    subject_part = _slug(subject) or "change"
    id_part = _slug(recommendation_id[-8:], 8) or "noid"
    stamp = _base36(int(clock() * 1000))
    return f"{prefix}/{subject_part}-{id_part}-{stamp}"


# ── Timeout ────────────────────────────────────────────────────────────────────


class TimeoutChecker:
    """Plan-level deadline, checked only at step boundaries."""

    def __init__(self, limit_minutes: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._start = clock()
        self._limit = limit_minutes * 60.0

    def elapsed(self) -> float:
        return self._clock() - self._start

    def is_expired(self) -> bool:
        return self.elapsed() >= self._limit

    def remaining(self) -> float:
        return max(0.0, self._limit - self.elapsed())


# ── Reporting ──────────────────────────────────────────────────────────────────


def render_safety_summary(check: SafetyCheck, stop: Optional[SafetyStop] = None) -> str:
    lines = ["## Safety Summary", ""]
    if stop is not None:
        lines.append(f"**Status:** STOPPED ({stop.reason.value})")
        if stop.at_step is not None:
            lines.append(f"**Stopped at step:** {stop.at_step}")
        lines += ["", "**Recovery options:**"]
        lines += [f"- {opt}" for opt in stop.recovery_options]
    else:
        lines.append("**Status:** All checks passed")
    lines += [
        "",
        "### Limits",
        f"- Files: {check.files_modified}/{check.files_limit}",
        f"- Lines: {check.lines_changed}/{check.lines_limit}",
        f"- Complexity ratio: {check.complexity_ratio}x (limit: {check.complexity_threshold}x)",
    ]
    if check.forbidden_paths_touched:
        lines.append(f"- **Forbidden paths accessed:** {len(check.forbidden_paths_touched)}")
    if check.forbidden_ops_attempted:
        lines.append(f"- **Forbidden operations:** {len(check.forbidden_ops_attempted)}")
    return "\n".join(lines)
