"""End-to-end job orchestration against a real git repository."""

import dataclasses

import pytest

from fakes import FakePRHost, FakeRunner, fail, git, writes
from migration_agent.agent import AUTO_APPROVER, MigrationAgent
from migration_agent.config import CIConfig, GitConfig
from migration_agent.errors import (
    BackupError,
    GitCommandError,
    PlanStateError,
    RecommendationValidationError,
    SafetyViolationError,
)
from migration_agent.models import MigrationStatus, PlanStatus, Recommendation, StopReason


@pytest.fixture
def runner():
    return FakeRunner({"npm install zod": writes("package.json", output="added 1 package")})


@pytest.fixture
def agent(repo_dir, config, runner):
    return MigrationAgent(repo_dir, config=config, runner=runner)


def _actions(agent, job_id):
    return [e.action for e in agent.audit_trail(job_id)]


def _migration_branches(repo_dir):
    return git(repo_dir, "branch", "--list", "--format=%(refname:short)", "migration/*").split()


class TestPlanning:
    def test_supervised_waits_for_approval(self, agent, rec, repo_dir):
        job = agent.start(rec, triggered_by="alice")
        assert job.status == MigrationStatus.AWAITING_PLAN_APPROVAL
        assert job.plan.status == PlanStatus.PENDING
        assert _actions(agent, job.id) == ["plan_generated"]
        assert _migration_branches(repo_dir) == []

    def test_no_steps(self, agent, rec):
        with pytest.raises(RecommendationValidationError):
            agent.start(rec.model_copy(update={"steps": ()}))
        [job] = agent.store.list_jobs()
        assert job.status == MigrationStatus.FAILED

    def test_reject_plan(self, agent, rec):
        job = agent.start(rec)
        job = agent.reject_plan(job.id, "bob", "out of scope")
        assert job.status == MigrationStatus.REJECTED
        assert job.plan.review_comments == ["out of scope"]
        with pytest.raises(PlanStateError):
            agent.approve_plan(job.id, "bob")

    def test_request_changes_keeps_waiting(self, agent, rec):
        job = agent.start(rec)
        job = agent.request_plan_changes(job.id, "bob", ["Pin zod"])
        assert job.status == MigrationStatus.AWAITING_PLAN_APPROVAL
        assert job.plan.status == PlanStatus.CHANGES_REQUESTED
        assert agent.approve_plan(job.id, "bob").plan.status == PlanStatus.APPROVED

    def test_execute_requires_approval(self, agent, rec):
        job = agent.start(rec)
        with pytest.raises(PlanStateError):
            agent.execute(job.id)


class TestExecute:
    def test_happy_path(self, agent, rec, repo_dir, runner):
        job = agent.start(rec, triggered_by="alice")
        agent.approve_plan(job.id, "alice")
        progress = []
        job = agent.execute(job.id, on_progress=lambda j, pct, msg: progress.append(pct))

        assert job.status == MigrationStatus.AWAITING_REVIEW
        assert job.preflight.all_passed
        assert job.execution.success
        assert job.ci.all_green
        assert job.report.diff.files_changed == 1
        assert job.pull_request is None
        assert runner.calls == ["npm install zod", "npm test", "npm run lint"]
        assert progress == sorted(progress) and progress[-1] == 100
        assert _migration_branches(repo_dir) == [job.backup.branch_name]
        assert git(repo_dir, "rev-parse", "--abbrev-ref", "HEAD").strip() == job.backup.branch_name

        actions = _actions(agent, job.id)
        assert actions[:3] == ["plan_generated", "plan_approved", "preflight_start"]
        assert "branch_created" in actions and "tests_complete" in actions

        persisted = agent.get_job(job.id)
        assert persisted.status == MigrationStatus.AWAITING_REVIEW
        assert persisted.backup.branch_name == job.backup.branch_name

    def test_opens_pull_request(self, repo_dir, config, runner, remote_dir, rec):
        cfg = dataclasses.replace(config, git=GitConfig(base_branch="develop", auto_push=True, create_pr=True))
        host = FakePRHost()
        agent = MigrationAgent(repo_dir, config=cfg, runner=runner, pr_host=host)
        job = agent.start(rec)
        agent.approve_plan(job.id, "alice")
        job = agent.execute(job.id)
        assert job.pull_request.url.endswith("/pull/1")
        assert host.created[0]["head"] == job.backup.branch_name
        assert "pr_opened" in _actions(agent, job.id)

    def test_forbidden_operation_blocks_before_any_branch(self, repo_dir, config, runner):
        cfg = dataclasses.replace(config, mode="assisted")
        agent = MigrationAgent(repo_dir, config=cfg, runner=runner)
        rec = Recommendation(
            id="rec-2", action="COMPLEMENT", subject_name="cleanup", verdict="RECOMMEND",
            steps=("Install `zod`", "Run `rm -rf build/` to clear output", "Verify the build"),
        )
        with pytest.raises(SafetyViolationError) as exc:
            agent.start(rec)
        assert any("Step 2" in v and "rm -rf" in v for v in exc.value.violations)
        assert runner.calls == []
        assert _migration_branches(repo_dir) == []
        assert agent.store.list_jobs()[0].status == MigrationStatus.FAILED

    def test_assisted_mode_runs_through(self, repo_dir, config, runner, rec):
        agent = MigrationAgent(repo_dir, config=dataclasses.replace(config, mode="assisted"), runner=runner)
        job = agent.start(rec)
        assert job.status == MigrationStatus.AWAITING_REVIEW
        assert job.plan.approved_by == AUTO_APPROVER
        [approval] = [e for e in agent.audit_trail(job.id) if e.action == "plan_approved"]
        assert approval.actor_type.value == "system"

    def test_preflight_failure(self, agent, rec, repo_dir, runner):
        job = agent.start(rec)
        agent.approve_plan(job.id, "alice")
        (repo_dir / "scratch.txt").write_text("wip\n")
        job = agent.execute(job.id)
        assert job.status == MigrationStatus.FAILED
        assert job.error == "Preflight failed: base_branch_clean"
        assert job.backup is None
        assert runner.calls == []
        assert _migration_branches(repo_dir) == []

    def test_step_failure_is_safety_stop(self, repo_dir, config, rec):
        runner = FakeRunner({"npm install zod": fail("npm ERR! 404")})
        agent = MigrationAgent(repo_dir, config=config, runner=runner)
        job = agent.start(rec)
        agent.approve_plan(job.id, "alice")
        job = agent.execute(job.id)
        assert job.status == MigrationStatus.SAFETY_STOPPED
        assert job.safety_stop.reason == StopReason.STEP_FAILED
        assert job.safety_stop.at_step == 1
        assert "safety_stop" in _actions(agent, job.id)

    def test_complexity_stop_after_ci(self, repo_dir, config):
        many = [f"src/gen/m{i}.ts" for i in range(7)]
        runner = FakeRunner({"npm install zod": writes(*many)})
        agent = MigrationAgent(repo_dir, config=config, runner=runner)
        rec = Recommendation(id="rec-3", action="COMPLEMENT", subject_name="zod", verdict="RECOMMEND",
                             steps=("Install `zod`",))
        job = agent.start(rec)
        agent.approve_plan(job.id, "alice")
        job = agent.execute(job.id)
        assert job.execution.safety_check.complexity_ratio == 2.33
        assert job.status == MigrationStatus.SAFETY_STOPPED
        assert job.safety_stop.reason == StopReason.COMPLEXITY_EXCEEDED

    def test_failing_ci(self, repo_dir, config, runner, rec):
        cfg = dataclasses.replace(config, ci=CIConfig(test_command="exit 1", lint_command="true",
                                                      type_check_command="true"))
        agent = MigrationAgent(repo_dir, config=cfg, runner=runner)
        job = agent.start(rec)
        agent.approve_plan(job.id, "alice")
        job = agent.execute(job.id)
        assert job.status == MigrationStatus.SAFETY_STOPPED
        assert job.safety_stop.reason == StopReason.TESTS_FAILED
        assert "tests_failed" in _actions(agent, job.id)

    def test_report_git_failure_fails_job(self, agent, rec, monkeypatch):
        job = agent.start(rec)
        agent.approve_plan(job.id, "alice")

        def broken_diff(backup):
            raise GitCommandError(["diff", "--stat"], 128, "fatal: bad revision")

        monkeypatch.setattr(agent.backups, "get_backup_diff", broken_diff)
        job = agent.execute(job.id)
        assert job.status == MigrationStatus.FAILED
        assert job.error.startswith("Report generation failed")
        assert agent.get_job(job.id).status == MigrationStatus.FAILED


class TestHumanDecisions:
    @pytest.fixture
    def reviewed(self, agent, rec):
        job = agent.start(rec)
        agent.approve_plan(job.id, "alice")
        return agent.execute(job.id)

    def test_mark_merged(self, agent, reviewed, repo_dir):
        job = agent.mark_merged(reviewed.id, "bob", merge_sha="1234abcd")
        assert job.status == MigrationStatus.MERGED
        assert job.recommendation_adopted
        assert job.actual_days is not None
        assert job.human_review.merge_sha == "1234abcd"
        assert _migration_branches(repo_dir) == []
        assert git(repo_dir, "rev-parse", "--abbrev-ref", "HEAD").strip() == "develop"

    def test_merged_is_terminal(self, agent, reviewed):
        agent.mark_merged(reviewed.id, "bob")
        with pytest.raises(PlanStateError):
            agent.reject_migration(reviewed.id, "bob")

    def test_reject_migration(self, agent, reviewed):
        job = agent.reject_migration(reviewed.id, "bob", "not now")
        assert job.status == MigrationStatus.REJECTED
        assert job.human_review.decision == "rejected"
        assert not job.recommendation_adopted

    def test_rollback(self, agent, reviewed, repo_dir):
        job = agent.rollback(reviewed.id, "bob")
        assert not (repo_dir / "package.json").exists()
        assert git(repo_dir, "rev-parse", "HEAD").strip() == job.backup.anchor_sha
        assert _actions(agent, job.id)[-1] == "rollback"

    def test_sync_pull_request(self, repo_dir, config, runner, remote_dir, rec):
        cfg = dataclasses.replace(config, git=GitConfig(base_branch="develop", auto_push=True, create_pr=True))
        host = FakePRHost()
        agent = MigrationAgent(repo_dir, config=cfg, runner=runner, pr_host=host)
        job = agent.start(rec)
        agent.approve_plan(job.id, "alice")
        job = agent.execute(job.id)
        assert agent.sync_pull_request(job.id).status == MigrationStatus.AWAITING_REVIEW

        host.merged = True
        job = agent.sync_pull_request(job.id)
        assert job.status == MigrationStatus.MERGED
        assert job.human_review.merge_sha == "feedbeef"
        assert job.pull_request.status == "merged"
        assert git(remote_dir, "branch", "--list").strip() == ""

    def test_rollback_refused_without_backup(self, agent, rec):
        job = agent.start(rec)
        with pytest.raises(BackupError):
            agent.rollback(job.id)
