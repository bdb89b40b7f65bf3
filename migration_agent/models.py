"""
Migration Agent - Data model
=======================================
Recommendation (input), plan, backup, execution, CI, report and job records.

Every record exposes ``to_dict()`` / ``from_dict()`` so a job can be
persisted as one JSON document.
"""

from __future__ import annotations

import dataclasses
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


class _Record:
    """Dict (de)serialisation shared by the dataclass records."""

    def to_dict(self) -> dict:
        return _plain(dataclasses.asdict(self))

    @classmethod
    def from_dict(cls, data: dict):
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def _opt(kind, data):
    return kind.from_dict(data) if data else None


# ── Enums ──────────────────────────────────────────────────────────


class Verdict(str, Enum):
    RECOMMEND = "RECOMMEND"
    MONITOR = "MONITOR"
    DEFER = "DEFER"


class PlanStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class EpistemicTag(str, Enum):
    FACT = "FACT"
    INFERENCE = "INFERENCE"
    ASSUMPTION = "ASSUMPTION"


class CheckStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StopReason(str, Enum):
    FILES_LIMIT_EXCEEDED = "files_limit_exceeded"
    LINES_LIMIT_EXCEEDED = "lines_limit_exceeded"
    COMPLEXITY_EXCEEDED = "complexity_exceeded"
    FORBIDDEN_PATH_ACCESS = "forbidden_path_access"
    FORBIDDEN_OPERATION = "forbidden_operation"
    TESTS_FAILED = "tests_failed"
    AMBIGUITY_HIGH = "ambiguity_high"
    TIMEOUT = "timeout"
    STEP_FAILED = "step_failed"
    EXECUTION_ERROR = "execution_error"


class ExecutionState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    AMBIGUITY_STOPPED = "ambiguity_stopped"
    STEP_FAILED = "step_failed"
    ERRORED = "errored"


class MigrationStatus(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    AWAITING_PLAN_APPROVAL = "awaiting_plan_approval"
    PREFLIGHT = "preflight"
    BACKING_UP = "backing_up"
    EXECUTING = "executing"
    TESTING = "testing"
    REPORTING = "reporting"
    AWAITING_REVIEW = "awaiting_review"
    MERGED = "merged"
    REJECTED = "rejected"
    FAILED = "failed"
    SAFETY_STOPPED = "safety_stopped"
    TIMEOUT = "timeout"


class ActorType(str, Enum):
    AGENT = "agent"
    USER = "user"
    SYSTEM = "system"


# ── Recommendation (external input) ────────────────────────────────


class Recommendation(BaseModel):
    """Approved change recommendation. Immutable once read by the agent.

    Required fields default to empty so that preflight can report what is
    missing instead of the parse failing outright.
    """

    model_config = ConfigDict(frozen=True)

    id: str = ""
    action: str = ""  # REPLACE_EXISTING | COMPLEMENT | NEW_CAPABILITY | MONITOR
    priority: str = "medium"
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    subject_name: str = ""
    steps: tuple[str, ...] = ()
    raw_estimate: str = ""
    verdict: str = ""
    project_id: str = ""
    trace_id: str = ""
    complexity: str = "medium"  # trivial | low | medium | high | very_high
    breaking_changes: bool = False
    facts: tuple[str, ...] = ()
    inferences: tuple[str, ...] = ()
    assumptions: tuple[str, ...] = ()

    @property
    def estimated_days(self) -> Optional[float]:
        return parse_estimate_days(self.raw_estimate)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict) -> "Recommendation":
        return cls.model_validate(data)


_ESTIMATE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(hours?|hrs?|h|days?|d|weeks?|wks?|w)?\b", re.I)


def parse_estimate_days(raw: str) -> Optional[float]:
    """'5 days' -> 5.0, '2 weeks' -> 10.0, '4h' -> 0.5. Bare numbers are days."""
    m = _ESTIMATE_RE.search(raw or "")
    if not m:
        return None
    value = float(m.group(1))
    unit = (m.group(2) or "d").lower()
    if unit.startswith("h"):
        return value / 8
    if unit.startswith("w"):
        return value * 5
    return value


# ── Plan ───────────────────────────────────────────────────────────


@dataclass
class PlanStep(_Record):
    step_number: int
    action: str
    command: str
    files_affected: list[str] = field(default_factory=list)
    risk: RiskLevel = RiskLevel.LOW
    expected: str = ""

    def __post_init__(self):
        self.risk = RiskLevel(self.risk)

    @property
    def is_placeholder(self) -> bool:
        """Comment-only command: requires manual execution."""
        return self.command.strip().startswith("#")


@dataclass
class MigrationPlan(_Record):
    recommendation_id: str
    steps: list[PlanStep] = field(default_factory=list)
    estimated_files: int = 0
    estimated_lines: int = 0
    within_safety_limits: bool = True
    violations: list[str] = field(default_factory=list)
    status: PlanStatus = PlanStatus.PENDING
    id: str = ""
    generated_at: str = ""
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    review_comments: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.status = PlanStatus(self.status)
        if not self.id:
            self.id = new_id("plan")
        if not self.generated_at:
            self.generated_at = utcnow()

    @classmethod
    def from_dict(cls, data: dict) -> "MigrationPlan":
        data = dict(data)
        data["steps"] = [PlanStep.from_dict(s) for s in data.get("steps", [])]
        return super().from_dict(data)


# ── Backup ─────────────────────────────────────────────────────────


@dataclass
class BackupInfo(_Record):
    """Isolated backup branch. Only ``pushed`` changes after creation."""

    branch_name: str
    created_from: str
    created_from_sha: str
    anchor_sha: str
    anchor_message: str
    created_at: str = field(default_factory=utcnow)
    pushed: bool = False


@dataclass
class CommitResult(_Record):
    success: bool
    sha: Optional[str] = None
    message: str = ""
    error: Optional[str] = None


@dataclass
class DiffStats(_Record):
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0

    @property
    def net_change(self) -> str:
        net = self.insertions - self.deletions
        return f"+{net}" if net >= 0 else str(net)

    @property
    def lines_changed(self) -> int:
        return self.insertions + self.deletions

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["net_change"] = self.net_change
        return d


# ── Execution ──────────────────────────────────────────────────────


@dataclass
class StepExecution(_Record):
    step_number: int
    status: StepStatus
    duration_ms: int = 0
    output: str = ""
    error: Optional[str] = None
    note: Optional[str] = None

    def __post_init__(self):
        self.status = StepStatus(self.status)


@dataclass
class AmbiguityLogEntry(_Record):
    step_number: int
    description: str
    confidence: float
    tag: EpistemicTag = EpistemicTag.INFERENCE

    def __post_init__(self):
        self.tag = EpistemicTag(self.tag)


@dataclass
class SafetyCheck(_Record):
    """Point-in-time snapshot of observed scope against limits."""

    files_modified: int
    files_limit: int
    lines_changed: int
    lines_limit: int
    forbidden_paths_touched: list[str] = field(default_factory=list)
    forbidden_ops_attempted: list[str] = field(default_factory=list)
    complexity_ratio: float = 1.0
    complexity_threshold: float = 2.0
    within_limits: bool = True
    checked_at: str = field(default_factory=utcnow)


@dataclass
class SafetyStop(_Record):
    reason: StopReason
    at_step: Optional[int] = None
    partial_commit: bool = False
    partial_branch: Optional[str] = None
    recovery_options: list[str] = field(default_factory=list)
    triggered_at: str = field(default_factory=utcnow)

    def __post_init__(self):
        self.reason = StopReason(self.reason)


@dataclass
class ExecutionResult(_Record):
    state: ExecutionState
    started_at: str
    completed_at: str = ""
    duration_ms: int = 0
    steps: list[StepExecution] = field(default_factory=list)
    ambiguity_log: list[AmbiguityLogEntry] = field(default_factory=list)
    safety_check: Optional[SafetyCheck] = None
    safety_stop: Optional[SafetyStop] = None
    stopped_at: Optional[int] = None
    diff: Optional[DiffStats] = None
    error: Optional[str] = None

    def __post_init__(self):
        self.state = ExecutionState(self.state)

    @property
    def success(self) -> bool:
        return self.state == ExecutionState.COMPLETED

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionResult":
        data = dict(data)
        data["steps"] = [StepExecution.from_dict(s) for s in data.get("steps", [])]
        data["ambiguity_log"] = [AmbiguityLogEntry.from_dict(a) for a in data.get("ambiguity_log", [])]
        data["safety_check"] = _opt(SafetyCheck, data.get("safety_check"))
        data["safety_stop"] = _opt(SafetyStop, data.get("safety_stop"))
        data["diff"] = _opt(DiffStats, data.get("diff"))
        return super().from_dict(data)


# ── Preflight ──────────────────────────────────────────────────────


@dataclass
class PreflightCheck(_Record):
    name: str
    status: CheckStatus
    message: str = ""
    details: dict = field(default_factory=dict)
    duration_ms: int = 0

    def __post_init__(self):
        self.status = CheckStatus(self.status)


@dataclass
class PreflightResult(_Record):
    checks: list[PreflightCheck] = field(default_factory=list)
    all_passed: bool = False
    checked_at: str = field(default_factory=utcnow)

    @property
    def failed(self) -> list[PreflightCheck]:
        return [c for c in self.checks if c.status == CheckStatus.FAILED]

    @classmethod
    def from_dict(cls, data: dict) -> "PreflightResult":
        data = dict(data)
        data["checks"] = [PreflightCheck.from_dict(c) for c in data.get("checks", [])]
        return super().from_dict(data)


# ── CI ─────────────────────────────────────────────────────────────


@dataclass
class SuiteRunResult(_Record):
    passed: bool
    total: int = 0
    passed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    duration_ms: int = 0
    output: str = ""


@dataclass
class LintRunResult(_Record):
    passed: bool
    errors: int = 0
    warnings: int = 0
    duration_ms: int = 0
    output: str = ""


@dataclass
class TypeCheckRunResult(_Record):
    passed: bool
    errors: int = 0
    duration_ms: int = 0
    output: str = ""


@dataclass
class CIResult(_Record):
    tests: SuiteRunResult
    lint: Optional[LintRunResult] = None
    type_check: Optional[TypeCheckRunResult] = None
    all_green: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "CIResult":
        return cls(
            tests=SuiteRunResult.from_dict(data["tests"]),
            lint=_opt(LintRunResult, data.get("lint")),
            type_check=_opt(TypeCheckRunResult, data.get("type_check")),
            all_green=data.get("all_green", False),
        )


# ── Report & PR ────────────────────────────────────────────────────


@dataclass
class FileChange(_Record):
    path: str
    change_type: str  # added | modified | deleted | renamed | changed
    risk: RiskLevel = RiskLevel.MEDIUM

    def __post_init__(self):
        self.risk = RiskLevel(self.risk)


@dataclass
class Observation(_Record):
    type: str  # warning | discovery | info
    description: str
    tag: EpistemicTag = EpistemicTag.FACT
    step_number: Optional[int] = None

    def __post_init__(self):
        self.tag = EpistemicTag(self.tag)


@dataclass
class EffortComparison(_Record):
    estimated: str
    estimated_days: Optional[float]
    actual_minutes: float
    human_review_days: float
    total_days: float
    speedup: str  # "12.5x" or "N/A"

    @property
    def actual_agent_time(self) -> str:
        return f"{round(self.actual_minutes)} minutes"

    @property
    def total(self) -> str:
        return f"{self.total_days:.1f} days"


@dataclass
class TraceInfo(_Record):
    trace_id: str
    recommendation_trace: str = ""
    facts_used: int = 0
    inferences_made: int = 0
    assumptions_made: int = 0
    assumptions_validated: int = 0
    assumptions_invalidated: int = 0
    new_facts_discovered: int = 0


@dataclass
class MigrationReport(_Record):
    job_id: str
    summary: str
    diff: DiffStats
    files: list[FileChange] = field(default_factory=list)
    observations: list[Observation] = field(default_factory=list)
    effort: Optional[EffortComparison] = None
    trace: Optional[TraceInfo] = None
    generated_at: str = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: dict) -> "MigrationReport":
        data = dict(data)
        data["diff"] = DiffStats.from_dict(data.get("diff") or {})
        data["files"] = [FileChange.from_dict(f) for f in data.get("files", [])]
        data["observations"] = [Observation.from_dict(o) for o in data.get("observations", [])]
        data["effort"] = _opt(EffortComparison, data.get("effort"))
        data["trace"] = _opt(TraceInfo, data.get("trace"))
        return super().from_dict(data)


@dataclass
class PullRequest(_Record):
    url: str
    number: int
    title: str
    body: str
    branch: str
    target_branch: str
    created_at: str = field(default_factory=utcnow)
    status: str = "open"  # open | merged | closed
    labels: list[str] = field(default_factory=list)
    review_checklist: list[str] = field(default_factory=list)


# ── Job & audit ────────────────────────────────────────────────────


@dataclass
class HumanReview(_Record):
    reviewer: str
    decision: str  # merged | rejected
    comments: str = ""
    merge_sha: Optional[str] = None
    reviewed_at: str = field(default_factory=utcnow)


@dataclass
class MigrationJob(_Record):
    recommendation: Recommendation
    triggered_by: str = "system"
    id: str = ""
    status: MigrationStatus = MigrationStatus.PENDING
    triggered_at: str = field(default_factory=utcnow)
    preflight: Optional[PreflightResult] = None
    backup: Optional[BackupInfo] = None
    plan: Optional[MigrationPlan] = None
    execution: Optional[ExecutionResult] = None
    ci: Optional[CIResult] = None
    report: Optional[MigrationReport] = None
    pull_request: Optional[PullRequest] = None
    human_review: Optional[HumanReview] = None
    safety_stop: Optional[SafetyStop] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    recommendation_adopted: bool = False
    actual_days: Optional[float] = None

    def __post_init__(self):
        self.status = MigrationStatus(self.status)
        if not self.id:
            self.id = new_id("mig")

    @property
    def recommendation_id(self) -> str:
        return self.recommendation.id

    @property
    def project_id(self) -> str:
        return self.recommendation.project_id

    def to_dict(self) -> dict:
        # asdict() would deep-copy the pydantic model as an opaque value
        d = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            d[f.name] = value.to_dict() if hasattr(value, "to_dict") else _plain(value)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "MigrationJob":
        data = dict(data)
        data["recommendation"] = Recommendation.from_dict(data["recommendation"])
        for name, kind in (
            ("preflight", PreflightResult),
            ("backup", BackupInfo),
            ("plan", MigrationPlan),
            ("execution", ExecutionResult),
            ("ci", CIResult),
            ("report", MigrationReport),
            ("pull_request", PullRequest),
            ("human_review", HumanReview),
            ("safety_stop", SafetyStop),
        ):
            data[name] = _opt(kind, data.get(name))
        return super().from_dict(data)


@dataclass
class AuditLogEntry(_Record):
    job_id: str
    action: str
    detail: str = ""
    actor: str = "migration-agent"
    actor_type: ActorType = ActorType.AGENT
    timestamp: str = field(default_factory=utcnow)
    id: Optional[int] = None

    def __post_init__(self):
        self.actor_type = ActorType(self.actor_type)
