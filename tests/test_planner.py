"""Plan generation, command templates and the approval workflow."""

import pytest

from migration_agent.config import SafetyLimits
from migration_agent.errors import PlanStateError, RecommendationValidationError
from migration_agent.models import PlanStatus, Recommendation, RiskLevel
from migration_agent.planner import (
    ProjectContext,
    approve_plan,
    assess_step_risk,
    generate_command,
    generate_plan,
    plan_summary,
    reject_plan,
    render_plan_markdown,
    request_plan_changes,
    validate_plan_for_execution,
)

NPM = ProjectContext()


def _rec(*steps, action="COMPLEMENT"):
    return Recommendation(id="rec-1", action=action, subject_name="zod", verdict="RECOMMEND", steps=steps)


class TestCommands:
    def test_install(self):
        assert generate_command("Install `zod` and `@types/node`", NPM) == "npm install zod @types/node"

    def test_remove_before_install(self):
        assert generate_command("Remove `moment` and add `dayjs`", NPM) == "npm uninstall moment dayjs"

    def test_placeholders(self):
        assert generate_command("Install the required packages", NPM) == "# Install required packages"
        assert generate_command("Update imports in src/utils/date.ts", NPM) == "# Update import statements in affected files"
        assert generate_command("Update the config for strict mode", NPM) == "# Update configuration files"
        assert generate_command("Document the new API", NPM) == "# Document the new API"

    def test_verify_and_build(self):
        assert generate_command("Verify everything works", NPM) == "npm test"
        assert generate_command("Build the bundle", NPM) == "npm run build"

    def test_pip(self):
        assert generate_command("Install `httpx`", ProjectContext(package_manager="pip")) == "pip install httpx"

    def test_word_boundary(self):
        assert generate_command("Address the padding issue", NPM) == "# Address the padding issue"


class TestRisk:
    def test_high(self):
        assert assess_step_risk("Remove `moment`", "npm uninstall moment", []) == RiskLevel.HIGH

    def test_medium(self):
        assert assess_step_risk("Refactor date helpers", "# Refactor", []) == RiskLevel.MEDIUM

    def test_many_files(self):
        files = [f"src/f{i}.ts" for i in range(6)]
        assert assess_step_risk("Touch helpers", "# Touch", files) == RiskLevel.MEDIUM

    def test_low(self):
        assert assess_step_risk("Document the new API", "# Document", []) == RiskLevel.LOW


class TestGeneratePlan:
    def test_no_steps(self):
        with pytest.raises(RecommendationValidationError):
            generate_plan(_rec(), SafetyLimits())

    def test_appends_test_and_lint(self):
        plan = generate_plan(_rec("Install `zod`"), SafetyLimits())
        assert [s.action for s in plan.steps[1:]] == [
            "Run test suite to verify migration",
            "Run linter to check code quality",
        ]
        assert plan.steps[1].command == "npm test"
        assert plan.steps[2].command == "npm run lint"
        assert plan.status == PlanStatus.PENDING

    def test_lint_optional(self):
        plan = generate_plan(_rec("Install `zod`"), SafetyLimits(require_lint_pass=False))
        assert len(plan.steps) == 2

    def test_estimates(self):
        plan = generate_plan(_rec("Update imports in src/a.ts and src/b.ts"), SafetyLimits())
        assert plan.steps[0].files_affected == ["src/a.ts", "src/b.ts"]
        assert plan.estimated_files == 3
        assert plan.estimated_lines == 90
        assert plan.within_safety_limits

    def test_replace_existing_touches_manifest(self):
        plan = generate_plan(_rec("Install `zod`", action="REPLACE_EXISTING"), SafetyLimits())
        assert "package.json" in plan.steps[0].files_affected

    def test_test_globs(self):
        plan = generate_plan(_rec("Update test fixtures"), SafetyLimits())
        assert "**/*.test.ts" in plan.steps[0].files_affected

    def test_forbidden_step(self):
        plan = generate_plan(
            _rec("Install `zod`", "Run `rm -rf build/` to clear output", "Verify the build"), SafetyLimits()
        )
        assert not plan.within_safety_limits
        assert "Step 2 contains forbidden operation: rm -rf" in plan.violations

    def test_forbidden_path(self):
        plan = generate_plan(_rec("Update settings in config/.env.production"), SafetyLimits())
        assert any("forbidden path" in v for v in plan.violations)

    def test_bare_dotfile_path(self):
        plan = generate_plan(_rec("Add the API key to .env"), SafetyLimits())
        assert plan.steps[0].files_affected == [".env"]
        assert not plan.within_safety_limits
        assert "Step 1 affects forbidden path: .env" in plan.violations

    def test_files_over_limit(self):
        steps = [f"Update imports in src/m{i}.ts" for i in range(25)]
        plan = generate_plan(_rec(*steps), SafetyLimits())
        assert "Estimated files (27) exceeds limit (20)" in plan.violations


class TestApproval:
    @pytest.fixture
    def plan(self):
        return generate_plan(_rec("Install `zod`"), SafetyLimits())

    def test_approve(self, plan):
        approve_plan(plan, "alice")
        assert plan.status == PlanStatus.APPROVED
        assert plan.approved_by == "alice" and plan.approved_at
        assert validate_plan_for_execution(plan) == []

    def test_approve_twice(self, plan):
        approve_plan(plan, "alice")
        with pytest.raises(PlanStateError):
            approve_plan(plan, "bob")

    def test_reviewer_required(self, plan):
        with pytest.raises(PlanStateError):
            approve_plan(plan, "  ")

    def test_changes_then_approve(self, plan):
        request_plan_changes(plan, "bob", ["Pin zod to 3.x"])
        assert plan.status == PlanStatus.CHANGES_REQUESTED
        assert plan.review_comments == ["Pin zod to 3.x"]
        approve_plan(plan, "bob")
        assert plan.status == PlanStatus.APPROVED

    def test_reject_is_final(self, plan):
        reject_plan(plan, "carol", "not now")
        assert plan.status == PlanStatus.REJECTED
        assert plan.review_comments == ["not now"]
        with pytest.raises(PlanStateError):
            approve_plan(plan, "carol")

    def test_pending_not_executable(self, plan):
        issues = validate_plan_for_execution(plan)
        assert "Plan status is 'pending', expected 'approved'" in issues
        assert "Plan has no approver" in issues


class TestRendering:
    def test_summary(self):
        plan = generate_plan(_rec("Remove `moment`"), SafetyLimits())
        assert plan_summary(plan).startswith("Migration plan: 3 steps")
        assert "1 high" in plan_summary(plan)

    def test_markdown(self):
        plan = generate_plan(_rec("Install `zod`"), SafetyLimits())
        md = render_plan_markdown(plan)
        assert "### Step 1: Install `zod`" in md
        assert "npm install zod" in md
        assert "**Review Checklist:**" in md
