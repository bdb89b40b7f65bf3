"""CI Runner - test suite, linter and type checker runs.

Commands come from configuration and run through the shell in the job's
working directory with per-call timeouts. Counts are parsed from free-form
output (pytest, jest/mocha, eslint, ruff, tsc, mypy).
"""

from __future__ import annotations

import logging
import re
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from .config import CIConfig
from .errors import CommandTimeoutError
from .models import CIResult, LintRunResult, SuiteRunResult, TypeCheckRunResult

logger = logging.getLogger(__name__)

_MAX_OUTPUT = 20_000


@dataclass
class ShellResult:
    returncode: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def combined(self) -> str:
        return "\n".join(s for s in (self.stdout.strip(), self.stderr.strip()) if s)


def run_shell(command: str, cwd: str | Path, timeout: float) -> ShellResult:
    """Run ``command`` via the shell; the process is killed after ``timeout`` seconds."""
    t0 = time.monotonic()
    try:
        r = subprocess.run(
            command,
            shell=True,
            capture_output=True,
            text=True,
            cwd=str(cwd),
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise CommandTimeoutError(command, timeout) from exc
    return ShellResult(
        returncode=r.returncode,
        stdout=(r.stdout or "")[-_MAX_OUTPUT:],
        stderr=(r.stderr or "")[-_MAX_OUTPUT:],
        duration_ms=int((time.monotonic() - t0) * 1000),
    )


# ── Output parsers ─────────────────────────────────────────────────────────────

_PASSED_RE = re.compile(r"(\d+)\s+(?:passed|passing|pass)\b", re.I)
_FAILED_RE = re.compile(r"(\d+)\s+(?:failed|failing|fail)\b", re.I)
_SKIPPED_RE = re.compile(r"(\d+)\s+(?:skipped|pending)\b", re.I)
_TOTAL_RE = re.compile(r"(\d+)\s+(?:total|tests?|specs?)\b", re.I)

_LINT_ERRORS_RE = re.compile(r"(\d+)\s+errors?\b", re.I)
_LINT_WARNINGS_RE = re.compile(r"(\d+)\s+warnings?\b", re.I)

_TSC_ERROR_RE = re.compile(r"error TS\d+")
_MYPY_FOUND_RE = re.compile(r"Found (\d+) errors?")
_MYPY_LINE_RE = re.compile(r":\d+(?::\d+)?: error:")


def _max_count(pattern: re.Pattern, text: str) -> int:
    return max((int(m) for m in pattern.findall(text)), default=0)


def parse_test_counts(output: str) -> dict:
    passed = _max_count(_PASSED_RE, output)
    failed = _max_count(_FAILED_RE, output)
    skipped = _max_count(_SKIPPED_RE, output)
    total = max(_max_count(_TOTAL_RE, output), passed + failed + skipped)
    return {"total": total, "passed": passed, "failed": failed, "skipped": skipped}


def parse_lint_counts(output: str) -> dict:
    return {
        "errors": _max_count(_LINT_ERRORS_RE, output),
        "warnings": _max_count(_LINT_WARNINGS_RE, output),
    }


def parse_type_errors(output: str) -> int:
    return max(
        len(_TSC_ERROR_RE.findall(output)),
        _max_count(_MYPY_FOUND_RE, output),
        len(_MYPY_LINE_RE.findall(output)),
    )


class CIRunner:
    """Runs the configured test / lint / type-check commands."""

    def __init__(self, workdir: str | Path, config: CIConfig | None = None):
        self.workdir = str(workdir)
        self.config = config or CIConfig()

    def _run(self, command: str, timeout: int) -> ShellResult:
        try:
            return run_shell(command, self.workdir, timeout)
        except CommandTimeoutError as exc:
            logger.warning("%s", exc)
            return ShellResult(returncode=124, stdout="", stderr=str(exc), duration_ms=timeout * 1000)

    def run_tests(self) -> SuiteRunResult:
        r = self._run(self.config.test_command, self.config.test_timeout_sec)
        counts = parse_test_counts(r.combined)
        logger.info("Tests: rc=%d %s", r.returncode, counts)
        return SuiteRunResult(
            passed=r.ok,
            total=counts["total"],
            passed_count=counts["passed"],
            failed_count=counts["failed"],
            skipped_count=counts["skipped"],
            duration_ms=r.duration_ms,
            output=r.combined,
        )

    def run_linter(self) -> LintRunResult:
        r = self._run(self.config.lint_command, self.config.lint_timeout_sec)
        counts = parse_lint_counts(r.combined)
        return LintRunResult(
            passed=r.ok,
            errors=counts["errors"],
            warnings=counts["warnings"],
            duration_ms=r.duration_ms,
            output=r.combined,
        )

    def run_type_check(self) -> TypeCheckRunResult:
        r = self._run(self.config.type_check_command, self.config.type_check_timeout_sec)
        return TypeCheckRunResult(
            passed=r.ok,
            errors=parse_type_errors(r.combined),
            duration_ms=r.duration_ms,
            output=r.combined,
        )

    def run_all(self, require_lint_pass: bool = True) -> CIResult:
        """Tests, lint, then type check. Lint only gates when required."""
        tests = self.run_tests()
        lint = self.run_linter() if self.config.lint_command else None
        type_check = (
            self.run_type_check()
            if self.config.run_type_check and self.config.type_check_command
            else None
        )
        all_green = (
            tests.passed
            and (type_check is None or type_check.passed)
            and (lint is None or lint.passed or not require_lint_pass)
        )
        return CIResult(tests=tests, lint=lint, type_check=type_check, all_green=all_green)
