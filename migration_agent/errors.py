"""Exception taxonomy for the migration agent.

Safety stops are not exceptions: they are recorded on the execution result
and the job (see ``models.SafetyStop``). Exceptions here cover conditions
that prevent a job from starting or a collaborator call from completing.
"""

from __future__ import annotations


class MigrationAgentError(Exception):
    """Base class for all agent errors."""


class RecommendationValidationError(MigrationAgentError):
    """Recommendation is missing fields or has no steps. Raised before any branch exists."""


class SafetyViolationError(MigrationAgentError):
    """Plan violates the configured safety limits; execution must not start."""

    def __init__(self, message: str, violations: list[str] | None = None):
        super().__init__(message)
        self.violations = list(violations or [])


class PlanStateError(MigrationAgentError):
    """Illegal plan or job status transition."""


class BackupError(MigrationAgentError):
    """Backup branch could not be created or verified."""


class JobNotFoundError(MigrationAgentError):
    pass


# ── Transient collaborator failures ────────────────────────────────────────


class TransientToolError(MigrationAgentError):
    """External tool failure that may be tolerated (push, PR host, ...)."""


class GitCommandError(TransientToolError):
    def __init__(self, args: list[str], returncode: int, stderr: str = ""):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"git {' '.join(args)} failed ({returncode}): {stderr.strip()[:300]}"
        )


class PRHostError(TransientToolError):
    pass


class CommandTimeoutError(TransientToolError):
    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout:.0f}s: {command[:120]}")
