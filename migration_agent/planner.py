"""
Planner - recommendation steps to a validated, risk-classified plan.
====================================================
Step descriptions are treated as opaque text: the planner classifies and
wraps them (affected files, command template, risk) without authoring new
content. Owns the plan approval workflow.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from .config import SafetyLimits
from .errors import PlanStateError, RecommendationValidationError
from .models import MigrationPlan, PlanStatus, PlanStep, Recommendation, RiskLevel, utcnow
from .preflight import extract_path_tokens
from .safety import validate_plan

logger = logging.getLogger(__name__)

LINES_PER_FILE = 30

# ── Risk patterns ──────────────────────────────────────────────────────────────

_HIGH_RISK = [
    re.compile(r"delete|remove|uninstall", re.I),
    re.compile(r"breaking", re.I),
    re.compile(r"migration", re.I),
    re.compile(r"database", re.I),
    re.compile(r"config", re.I),
    re.compile(r"\.env|secret|credential", re.I),
]

_MEDIUM_RISK = [
    re.compile(r"modify|update|change", re.I),
    re.compile(r"refactor", re.I),
    re.compile(r"replace", re.I),
]

_PACKAGES_RE = re.compile(r"`([^`]+)`")

# ── Package manager templates ──────────────────────────────────────────────────

_TEMPLATES: dict[str, dict[str, str]] = {
    "npm": {"install": "npm install", "uninstall": "npm uninstall", "test": "npm test",
            "build": "npm run build", "lint": "npm run lint", "manifest": "package.json"},
    "yarn": {"install": "yarn add", "uninstall": "yarn remove", "test": "yarn test",
             "build": "yarn build", "lint": "yarn lint", "manifest": "package.json"},
    "pnpm": {"install": "pnpm add", "uninstall": "pnpm remove", "test": "pnpm test",
             "build": "pnpm run build", "lint": "pnpm run lint", "manifest": "package.json"},
    "pip": {"install": "pip install", "uninstall": "pip uninstall -y", "test": "pytest",
            "build": "python -m build", "lint": "ruff check .", "manifest": "requirements.txt"},
    "poetry": {"install": "poetry add", "uninstall": "poetry remove", "test": "poetry run pytest",
               "build": "poetry build", "lint": "poetry run ruff check .", "manifest": "pyproject.toml"},
}

_JS_GLOBS = {"test": ["**/*.test.ts", "**/*.spec.ts"], "config": ["*.config.js", "*.config.ts"]}
_PY_GLOBS = {"test": ["tests/**/test_*.py"], "config": ["setup.cfg", "pyproject.toml"]}


@dataclass
class ProjectContext:
    """Optional project stack hints for command synthesis."""

    package_manager: str = "npm"
    languages: list[str] = field(default_factory=list)
    frameworks: list[str] = field(default_factory=list)

    @property
    def templates(self) -> dict[str, str]:
        return _TEMPLATES.get(self.package_manager, _TEMPLATES["npm"])

    @property
    def globs(self) -> dict[str, list[str]]:
        return _PY_GLOBS if self.package_manager in ("pip", "poetry") else _JS_GLOBS


# ── Heuristics ─────────────────────────────────────────────────────────────────


def assess_step_risk(action: str, command: str, files_affected: list[str]) -> RiskLevel:
    text = f"{action} {command}"
    if any(p.search(text) for p in _HIGH_RISK):
        return RiskLevel.HIGH
    if any(p.search(text) for p in _MEDIUM_RISK):
        return RiskLevel.MEDIUM
    if len(files_affected) > 5:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def estimate_files_affected(description: str, action: str, ctx: ProjectContext) -> list[str]:
    files = extract_path_tokens(description)
    lowered = description.lower()
    if action == "REPLACE_EXISTING":
        files.append(ctx.templates["manifest"])
    if "test" in lowered:
        files.extend(ctx.globs["test"])
    if "config" in lowered:
        files.extend(ctx.globs["config"])
    return list(dict.fromkeys(files))


def _has_word(text: str, *words: str) -> bool:
    return any(re.search(rf"\b{w}\b", text) for w in words)


def generate_command(description: str, ctx: ProjectContext) -> str:
    """Command template matched by keyword; comment-only placeholder otherwise."""
    desc = description.lower()
    tpl = ctx.templates
    packages = " ".join(_PACKAGES_RE.findall(description))

    if _has_word(desc, "uninstall", "remove"):
        return f"{tpl['uninstall']} {packages}" if packages else "# Remove deprecated packages"
    if _has_word(desc, "install", "add"):
        return f"{tpl['install']} {packages}" if packages else "# Install required packages"
    if "update" in desc and "import" in desc:
        return "# Update import statements in affected files"
    if "update" in desc and "config" in desc:
        return "# Update configuration files"
    if "run test" in desc or "verify" in desc:
        return tpl["test"]
    if _has_word(desc, "build"):
        return tpl["build"]
    return f"# {description}"


# ── Plan generation ────────────────────────────────────────────────────────────


def generate_plan(
    rec: Recommendation,
    limits: SafetyLimits,
    context: ProjectContext | None = None,
) -> MigrationPlan:
    """Build a pending plan. Raises RecommendationValidationError without steps."""
    ctx = context or ProjectContext()
    if not rec.steps:
        raise RecommendationValidationError("No implementation steps provided in recommendation")
    logger.info("Generating plan for %s (%s, %d steps)", rec.id, rec.action, len(rec.steps))

    steps: list[PlanStep] = []
    for i, desc in enumerate(rec.steps, start=1):
        files = estimate_files_affected(desc, rec.action, ctx)
        command = generate_command(desc, ctx)
        steps.append(
            PlanStep(
                step_number=i,
                action=desc,
                command=command,
                files_affected=files,
                risk=assess_step_risk(desc, command, files),
                expected=f"Step {i} completion",
            )
        )

    steps.append(
        PlanStep(len(steps) + 1, "Run test suite to verify migration", ctx.templates["test"],
                 risk=RiskLevel.LOW, expected="All tests pass")
    )
    if limits.require_lint_pass:
        steps.append(
            PlanStep(len(steps) + 1, "Run linter to check code quality", ctx.templates["lint"],
                     risk=RiskLevel.LOW, expected="No lint errors")
        )

    distinct = {f for s in steps for f in s.files_affected}
    est_files = max(len(distinct), len(steps))
    est_lines = est_files * LINES_PER_FILE
    report = validate_plan(steps, est_files, est_lines, limits)

    plan = MigrationPlan(
        recommendation_id=rec.id,
        steps=steps,
        estimated_files=est_files,
        estimated_lines=est_lines,
        within_safety_limits=report.valid,
        violations=report.violations,
    )
    if not report.valid:
        logger.warning("Plan %s exceeds safety limits: %s", plan.id, report.violations)
    logger.info("Plan %s: %s", plan.id, plan_summary(plan))
    return plan


# ── Approval workflow ──────────────────────────────────────────────────────────

_REVIEWABLE = (PlanStatus.PENDING, PlanStatus.CHANGES_REQUESTED)


def _ensure_reviewable(plan: MigrationPlan, actor: str, target: PlanStatus) -> None:
    if not actor or not actor.strip():
        raise PlanStateError("A named reviewer is required")
    if plan.status not in _REVIEWABLE:
        raise PlanStateError(f"Cannot move plan from '{plan.status.value}' to '{target.value}'")


def approve_plan(plan: MigrationPlan, approver: str) -> MigrationPlan:
    _ensure_reviewable(plan, approver, PlanStatus.APPROVED)
    plan.status = PlanStatus.APPROVED
    plan.approved_by = approver
    plan.approved_at = utcnow()
    plan.reviewed_by, plan.reviewed_at = plan.approved_by, plan.approved_at
    logger.info("Plan %s approved by %s", plan.id, approver)
    return plan


def reject_plan(plan: MigrationPlan, reviewer: str, reason: str = "") -> MigrationPlan:
    _ensure_reviewable(plan, reviewer, PlanStatus.REJECTED)
    plan.status = PlanStatus.REJECTED
    plan.reviewed_by = reviewer
    plan.reviewed_at = utcnow()
    if reason:
        plan.review_comments.append(reason)
    logger.info("Plan %s rejected by %s", plan.id, reviewer)
    return plan


def request_plan_changes(plan: MigrationPlan, reviewer: str, changes: list[str]) -> MigrationPlan:
    _ensure_reviewable(plan, reviewer, PlanStatus.CHANGES_REQUESTED)
    plan.status = PlanStatus.CHANGES_REQUESTED
    plan.reviewed_by = reviewer
    plan.reviewed_at = utcnow()
    plan.review_comments.extend(changes)
    logger.info("Plan %s: %d change(s) requested by %s", plan.id, len(changes), reviewer)
    return plan


def validate_plan_for_execution(plan: MigrationPlan) -> list[str]:
    """Issues blocking execution; empty when the plan may run."""
    issues = []
    if plan.status != PlanStatus.APPROVED:
        issues.append(f"Plan status is '{plan.status.value}', expected 'approved'")
    if not plan.approved_by:
        issues.append("Plan has no approver")
    if not plan.within_safety_limits:
        issues.append("Plan exceeds safety limits")
    if not plan.steps:
        issues.append("Plan has no steps")
    return issues


# ── Rendering ──────────────────────────────────────────────────────────────────

_RISK_MARK = {RiskLevel.LOW: "🟢", RiskLevel.MEDIUM: "🟡", RiskLevel.HIGH: "🔴"}


def plan_summary(plan: MigrationPlan) -> str:
    high = sum(1 for s in plan.steps if s.risk == RiskLevel.HIGH)
    medium = sum(1 for s in plan.steps if s.risk == RiskLevel.MEDIUM)
    limits = "Within limits." if plan.within_safety_limits else "EXCEEDS LIMITS."
    return (
        f"Migration plan: {len(plan.steps)} steps, ~{plan.estimated_files} files, "
        f"~{plan.estimated_lines} lines. Risk: {high} high, {medium} medium. {limits}"
    )


def render_plan_markdown(plan: MigrationPlan) -> str:
    lines = [
        "# Migration Plan",
        "",
        f"**Generated:** {plan.generated_at}",
        f"**Status:** {plan.status.value}",
    ]
    if plan.approved_by:
        lines += [f"**Approved by:** {plan.approved_by}", f"**Approved at:** {plan.approved_at}"]
    lines += [
        "",
        "## Summary",
        "",
        f"- **Total steps:** {len(plan.steps)}",
        f"- **Estimated files:** {plan.estimated_files}",
        f"- **Estimated lines:** {plan.estimated_lines}",
        f"- **Within safety limits:** {'Yes' if plan.within_safety_limits else 'No'}",
        "",
    ]
    if plan.violations:
        lines += ["## Violations", ""] + [f"- {v}" for v in plan.violations] + [""]
    lines += ["## Steps", ""]
    for step in plan.steps:
        lines += [
            f"### Step {step.step_number}: {step.action}",
            "",
            f"**Risk:** {_RISK_MARK[step.risk]} {step.risk.value}",
            "",
            "```bash",
            step.command,
            "```",
            "",
        ]
        if step.files_affected:
            lines += ["**Files affected:**"] + [f"- `{f}`" for f in step.files_affected] + [""]
        if step.expected:
            lines += [f"**Expected outcome:** {step.expected}", ""]
    lines += [
        "---",
        "",
        "**Review Checklist:**",
        "- [ ] All steps are necessary and correct",
        "- [ ] High-risk steps have been reviewed",
        "- [ ] Rollback strategy is understood",
        "- [ ] Team has been notified",
    ]
    return "\n".join(lines)
