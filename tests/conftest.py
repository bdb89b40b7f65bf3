"""Shared fixtures: a throwaway git repository, agent config, recommendation and plans."""

import shutil

import pytest

from fakes import git
from migration_agent.backup import BackupManager
from migration_agent.config import AgentConfig, CIConfig, GitConfig, PreflightConfig, StoreConfig
from migration_agent.models import MigrationPlan, PlanStep, Recommendation
from migration_agent.planner import approve_plan
from migration_agent.vcs import GitRepository


@pytest.fixture
def repo_dir(tmp_path):
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    d = tmp_path / "repo"
    d.mkdir()
    git(d, "init", "-q")
    git(d, "symbolic-ref", "HEAD", "refs/heads/develop")
    git(d, "config", "user.email", "agent@example.com")
    git(d, "config", "user.name", "Migration Tests")
    git(d, "config", "commit.gpgsign", "false")
    (d / "README.md").write_text("# demo\n")
    (d / "src").mkdir()
    (d / "src" / "app.py").write_text("print('hello')\n")
    git(d, "add", "-A")
    git(d, "commit", "-q", "-m", "initial")
    return d


@pytest.fixture
def remote_dir(tmp_path, repo_dir):
    remote = tmp_path / "remote.git"
    git(tmp_path, "init", "-q", "--bare", str(remote))
    git(repo_dir, "remote", "add", "origin", str(remote))
    return remote


@pytest.fixture
def vcs(repo_dir):
    return GitRepository(repo_dir)


@pytest.fixture
def git_config():
    return GitConfig(base_branch="develop", auto_push=False, create_pr=False)


@pytest.fixture
def backups(vcs, git_config):
    return BackupManager(vcs, git_config)


@pytest.fixture
def config(tmp_path, git_config):
    return AgentConfig(
        ci=CIConfig(test_command="true", lint_command="true", type_check_command="true"),
        git=git_config,
        preflight=PreflightConfig(run_tests=False),
        store=StoreConfig(db_path=str(tmp_path / "agent.db")),
    )


@pytest.fixture
def rec():
    return Recommendation(
        id="rec-20240601-zod",
        action="COMPLEMENT",
        priority="high",
        confidence=0.85,
        subject_name="zod",
        steps=("Install `zod`", "Update imports in src/app.py"),
        raw_estimate="5 days",
        verdict="RECOMMEND",
        project_id="web",
        trace_id="trace-abc",
        facts=("zod is stable",),
        inferences=("types reduce bugs",),
        assumptions=("team knows TS",),
    )


@pytest.fixture
def make_plan():
    """Approved plan whose step N runs ``commands[N-1]``."""

    def _make(commands, estimated_files=None, approver="alice"):
        steps = [PlanStep(i, f"Step {i} action", cmd) for i, cmd in enumerate(commands, start=1)]
        plan = MigrationPlan(
            recommendation_id="rec-1",
            steps=steps,
            estimated_files=len(steps) if estimated_files is None else estimated_files,
            estimated_lines=len(steps) * 30,
        )
        return approve_plan(plan, approver)

    return _make
