"""Command line front end."""

import json

import pytest
import yaml

from migration_agent.cli import build_parser, load_recommendation, main


@pytest.fixture
def cli_config(tmp_path):
    path = tmp_path / "agent.yaml"
    path.write_text(yaml.safe_dump({
        "git": {"base_branch": "develop", "auto_push": False, "create_pr": False},
        "preflight": {"run_tests": False},
        "ci": {"test_command": "true", "lint_command": "true", "type_check_command": "true"},
        "store": {"db_path": str(tmp_path / "cli.db")},
    }))
    return path


@pytest.fixture
def rec_file(tmp_path, rec):
    path = tmp_path / "rec.yaml"
    path.write_text(yaml.safe_dump(rec.to_dict()))
    return path


@pytest.fixture
def run(cli_config, repo_dir, capsys):
    def _run(*argv):
        code = main(["--config", str(cli_config), "--workdir", str(repo_dir), *argv])
        out, err = capsys.readouterr()
        return code, out, err

    return _run


class TestLoadRecommendation:
    def test_yaml(self, rec_file, rec):
        assert load_recommendation(str(rec_file)) == rec

    def test_json(self, tmp_path, rec):
        path = tmp_path / "rec.json"
        path.write_text(json.dumps(rec.to_dict()))
        assert load_recommendation(str(path)).steps == rec.steps


class TestParser:
    def test_changes_repeatable(self):
        args = build_parser().parse_args(["request-changes", "mig-1", "--by", "bob", "--change", "a", "--change", "b"])
        assert args.change == ["a", "b"]

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    def test_plan_approve_audit(self, run, rec_file):
        code, out, _ = run("plan", str(rec_file), "--by", "alice")
        assert code == 0
        job_id = out.split()[0]
        assert job_id.startswith("mig-")
        assert "awaiting_plan_approval" in out
        assert "# Migration Plan" in out

        code, out, _ = run("approve", job_id, "--by", "alice")
        assert code == 0

        code, out, _ = run("--json", "show", job_id)
        assert json.loads(out)["plan"]["approved_by"] == "alice"

        code, out, _ = run("audit", job_id)
        assert "plan_generated" in out and "plan_approved" in out

    def test_unknown_job(self, run):
        code, _, err = run("approve", "mig-nope", "--by", "alice")
        assert code == 1
        assert "not found" in err

    def test_execute_over_limits_exit_code(self, run, tmp_path, rec):
        risky = tmp_path / "risky.yaml"
        risky.write_text(yaml.safe_dump(rec.to_dict() | {"steps": ["Run `rm -rf build/` to clear output"]}))
        _, out, _ = run("plan", str(risky))
        job_id = out.split()[0]
        run("approve", job_id, "--by", "alice")
        code, _, err = run("execute", job_id)
        assert code == 2
        assert "rm -rf" in err
