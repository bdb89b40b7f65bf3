"""
Migration Agent - Configuration
=======================================
Loads from ~/.config/migration-agent/agent.yaml (or $MIGRATION_AGENT_CONFIG)
with .env loading and env var overrides. Safety limits are loaded once per
job and never mutated during execution.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

# Load .env from the current project (before any os.environ access)
load_dotenv()

# Paths
PACKAGE_ROOT = Path(__file__).parent
DATA_DIR = Path(os.environ.get("MIGRATION_AGENT_DATA", Path.cwd() / "data"))
CONFIG_PATH = Path(
    os.environ.get(
        "MIGRATION_AGENT_CONFIG",
        Path.home() / ".config" / "migration-agent" / "agent.yaml",
    )
)

DEFAULT_FORBIDDEN_PATHS = (
    ".env",
    ".env.*",
    "*.pem",
    "*.key",
    "**/secrets/**",
    "**/credentials/**",
    ".git/**",
    "node_modules/**",
    "**/dist/**",
    "**/build/**",
)

DEFAULT_FORBIDDEN_OPERATIONS = (
    "rm -rf",
    "drop database",
    "drop table",
    "truncate",
    "delete from",
    "force push",
    "--force",
    "-f push",
    "chmod 777",
    "curl | sh",
    "wget | sh",
    "eval(",
    "exec(",
)


@dataclass(frozen=True)
class SafetyLimits:
    """Hard limits for one migration job."""

    max_files_modified: int = 20
    max_lines_changed: int = 1000
    max_execution_time_minutes: int = 30
    complexity_threshold: float = 2.0
    require_tests_pass: bool = True
    require_lint_pass: bool = True
    forbidden_paths: tuple[str, ...] = DEFAULT_FORBIDDEN_PATHS
    forbidden_operations: tuple[str, ...] = DEFAULT_FORBIDDEN_OPERATIONS

    def __post_init__(self):
        # YAML hands us lists; keep the frozen instance hashable
        object.__setattr__(self, "forbidden_paths", tuple(self.forbidden_paths))
        object.__setattr__(self, "forbidden_operations", tuple(self.forbidden_operations))
        if self.max_files_modified < 1 or self.max_lines_changed < 1:
            raise ValueError("File and line limits must be >= 1")
        if self.max_execution_time_minutes < 1:
            raise ValueError("max_execution_time_minutes must be >= 1")
        if self.complexity_threshold < 1:
            raise ValueError("complexity_threshold must be >= 1")


@dataclass
class GitConfig:
    """Branching and remote settings."""

    provider: str = "github"
    remote: str = "origin"
    base_branch: str = "main"
    branch_prefix: str = "migration"
    auto_push: bool = True
    create_pr: bool = True
    repository: str = ""  # owner/name on the PR host


@dataclass
class CIConfig:
    """External test / lint / type-check commands."""

    test_command: str = "npm test"
    lint_command: str = "npm run lint"
    type_check_command: str = "npx tsc --noEmit"
    run_type_check: bool = True
    test_timeout_sec: int = 600
    lint_timeout_sec: int = 300
    type_check_timeout_sec: int = 300


@dataclass
class PreflightConfig:
    run_tests: bool = True
    max_estimated_days: float = 10.0


@dataclass
class PRHostConfig:
    api_url: str = "https://api.github.com"
    token_env: str = "GITHUB_TOKEN"  # env var name holding the token
    labels: list = field(default_factory=lambda: ["migration-agent", "automated-migration"])
    timeout_sec: float = 30.0


@dataclass
class StoreConfig:
    db_path: str = str(DATA_DIR / "migration_agent.db")


@dataclass
class AgentConfig:
    """Root configuration object."""

    enabled: bool = True
    mode: str = "supervised"  # supervised | assisted (never autonomous merge)
    step_timeout_sec: int = 300
    package_manager: str = "npm"
    safety: SafetyLimits = field(default_factory=SafetyLimits)
    git: GitConfig = field(default_factory=GitConfig)
    ci: CIConfig = field(default_factory=CIConfig)
    preflight: PreflightConfig = field(default_factory=PreflightConfig)
    pr_host: PRHostConfig = field(default_factory=PRHostConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


_MODES = ("supervised", "assisted")
_SECTIONS = ("git", "ci", "preflight", "pr_host", "store")


def _apply_section(obj, raw: dict):
    """Apply dict values to a dataclass."""
    for k, v in raw.items():
        if hasattr(obj, k):
            setattr(obj, k, v)


def config_from_dict(raw: dict) -> AgentConfig:
    """Build a config from a parsed YAML mapping; unknown keys are ignored."""
    cfg = AgentConfig()
    for k in ("enabled", "mode", "step_timeout_sec", "package_manager"):
        if k in raw:
            setattr(cfg, k, raw[k])
    for section in _SECTIONS:
        if section in raw and isinstance(raw[section], dict):
            _apply_section(getattr(cfg, section), raw[section])
    if isinstance(raw.get("safety"), dict):
        known = {f.name for f in dataclasses.fields(SafetyLimits)}
        cfg.safety = SafetyLimits(**{k: v for k, v in raw["safety"].items() if k in known})
    if cfg.mode not in _MODES:
        raise ValueError(f"Unknown agent mode: {cfg.mode!r} (expected one of {_MODES})")
    return cfg


def load_config(path: Optional[Path] = None) -> AgentConfig:
    """Load agent config from YAML + env vars."""
    path = Path(path) if path else CONFIG_PATH
    raw: dict = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    cfg = config_from_dict(raw)

    # Env overrides
    if b := os.environ.get("MIGRATION_AGENT_BASE_BRANCH"):
        cfg.git.base_branch = b
    if m := os.environ.get("MIGRATION_AGENT_MODE"):
        if m not in _MODES:
            raise ValueError(f"Unknown agent mode in MIGRATION_AGENT_MODE: {m!r}")
        cfg.mode = m
    if db := os.environ.get("MIGRATION_AGENT_DB"):
        cfg.store.db_path = db
    if repo := os.environ.get("GITHUB_REPOSITORY"):
        cfg.git.repository = cfg.git.repository or repo

    return cfg


_config: Optional[AgentConfig] = None


def get_config() -> AgentConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def save_config(cfg: AgentConfig, path: Optional[Path] = None) -> None:
    """Persist config to YAML and reload the cached instance."""
    global _config
    raw = dataclasses.asdict(cfg)
    raw["safety"]["forbidden_paths"] = list(cfg.safety.forbidden_paths)
    raw["safety"]["forbidden_operations"] = list(cfg.safety.forbidden_operations)
    path = Path(path) if path else CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(raw, f, default_flow_style=False, allow_unicode=True)
    _config = cfg
