"""Configuration loading, env overrides and persistence."""

import pytest
import yaml

from migration_agent.config import AgentConfig, config_from_dict, load_config, save_config

ENV_VARS = ("MIGRATION_AGENT_BASE_BRANCH", "MIGRATION_AGENT_MODE", "MIGRATION_AGENT_DB", "GITHUB_REPOSITORY")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    def test_missing_file(self, tmp_path):
        cfg = load_config(tmp_path / "missing.yaml")
        assert cfg.mode == "supervised"
        assert cfg.git.base_branch == "main"
        assert cfg.safety.max_files_modified == 20
        assert ".env" in cfg.safety.forbidden_paths

    def test_sections(self):
        cfg = AgentConfig()
        assert cfg.ci.test_timeout_sec == 600
        assert cfg.pr_host.labels == ["migration-agent", "automated-migration"]


class TestFromYaml:
    def test_sections_applied(self, tmp_path):
        path = tmp_path / "agent.yaml"
        path.write_text(yaml.safe_dump({
            "mode": "assisted",
            "package_manager": "pip",
            "git": {"base_branch": "develop", "auto_push": False},
            "ci": {"test_command": "pytest -q"},
            "safety": {"max_files_modified": 5, "forbidden_paths": [".env", "infra/**"], "bogus": 1},
        }))
        cfg = load_config(path)
        assert cfg.mode == "assisted"
        assert cfg.package_manager == "pip"
        assert cfg.git.base_branch == "develop" and cfg.git.auto_push is False
        assert cfg.ci.test_command == "pytest -q"
        assert cfg.safety.max_files_modified == 5
        assert cfg.safety.forbidden_paths == (".env", "infra/**")

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            config_from_dict({"mode": "autonomous"})

    def test_invalid_limits(self):
        with pytest.raises(ValueError):
            config_from_dict({"safety": {"max_lines_changed": 0}})


class TestEnvOverrides:
    def test_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MIGRATION_AGENT_BASE_BRANCH", "trunk")
        monkeypatch.setenv("MIGRATION_AGENT_MODE", "assisted")
        monkeypatch.setenv("MIGRATION_AGENT_DB", str(tmp_path / "x.db"))
        monkeypatch.setenv("GITHUB_REPOSITORY", "acme/web")
        cfg = load_config(tmp_path / "missing.yaml")
        assert cfg.git.base_branch == "trunk"
        assert cfg.mode == "assisted"
        assert cfg.store.db_path == str(tmp_path / "x.db")
        assert cfg.git.repository == "acme/web"

    def test_bad_mode(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MIGRATION_AGENT_MODE", "yolo")
        with pytest.raises(ValueError):
            load_config(tmp_path / "missing.yaml")


class TestSave:
    def test_round_trip(self, tmp_path):
        cfg = config_from_dict({"git": {"base_branch": "develop"}, "safety": {"max_files_modified": 7}})
        path = tmp_path / "nested" / "agent.yaml"
        save_config(cfg, path)
        loaded = load_config(path)
        assert loaded.git.base_branch == "develop"
        assert loaded.safety.max_files_modified == 7
        assert loaded.safety.forbidden_operations == cfg.safety.forbidden_operations
