"""
Version control - git subprocess wrapper.
====================================================
Every call is a list-argument ``git`` invocation in the job's working
directory; no shell. Non-zero exits raise GitCommandError.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional

from .errors import CommandTimeoutError, GitCommandError

logger = logging.getLogger(__name__)


class GitRepository:
    """Version-control collaborator bound to one working directory."""

    def __init__(self, workdir: str | Path, remote: str = "origin", timeout: int = 60):
        self.workdir = str(workdir)
        self.remote = remote
        self.timeout = timeout

    def _run(self, *args: str, check: bool = True, timeout: int | None = None) -> subprocess.CompletedProcess:
        cmd = ["git", *args]
        try:
            r = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=self.workdir,
                timeout=timeout or self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeoutError(" ".join(cmd), exc.timeout) from exc
        except FileNotFoundError as exc:
            raise GitCommandError(list(args), 127, "git executable not found") from exc
        if check and r.returncode != 0:
            raise GitCommandError(list(args), r.returncode, r.stderr or r.stdout)
        return r

    # ── Environment ──

    def is_available(self) -> bool:
        try:
            self._run("--version")
            return True
        except (GitCommandError, CommandTimeoutError):
            return False

    def is_repository(self) -> bool:
        try:
            return self._run("rev-parse", "--is-inside-work-tree").stdout.strip() == "true"
        except GitCommandError:
            return False

    # ── State ──

    def current_branch(self) -> str:
        return self._run("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()

    def current_commit(self) -> str:
        return self._run("rev-parse", "HEAD").stdout.strip()

    def status_porcelain(self) -> str:
        return self._run("status", "--porcelain").stdout

    def is_clean(self) -> bool:
        return not self.status_porcelain().strip()

    def rev_parse(self, ref: str) -> str | None:
        r = self._run("rev-parse", "--verify", "--quiet", ref, check=False)
        return r.stdout.strip() if r.returncode == 0 else None

    def branch_exists(self, name: str) -> bool:
        return self.rev_parse(f"refs/heads/{name}") is not None

    def remote_branch_exists(self, name: str) -> bool:
        r = self._run("ls-remote", "--heads", self.remote, name, check=False)
        if r.returncode != 0:
            logger.debug("ls-remote failed for %s: %s", name, r.stderr.strip())
            return False
        return bool(r.stdout.strip())

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        r = self._run("merge-base", "--is-ancestor", ancestor, descendant, check=False)
        if r.returncode not in (0, 1):
            raise GitCommandError(["merge-base", "--is-ancestor", ancestor, descendant], r.returncode, r.stderr)
        return r.returncode == 0

    def log_subjects(self, ref: str = "HEAD", limit: int = 50) -> list[str]:
        out = self._run("log", f"-{limit}", "--format=%s", ref).stdout
        return [line for line in out.splitlines() if line]

    # ── Mutations ──

    def create_branch(self, name: str) -> None:
        """Create ``name`` from HEAD and switch to it."""
        self._run("checkout", "-b", name)

    def checkout(self, name: str) -> None:
        self._run("checkout", name)

    def add_all(self) -> None:
        self._run("add", "-A")

    def commit(self, message: str, allow_empty: bool = False) -> str:
        args = ["commit", "-m", message]
        if allow_empty:
            args.append("--allow-empty")
        self._run(*args)
        return self.current_commit()

    def push(self, branch: str, set_upstream: bool = True) -> None:
        args = ["push"]
        if set_upstream:
            args.append("-u")
        self._run(*args, self.remote, branch, timeout=max(self.timeout, 120))

    def reset_hard(self, ref: str) -> None:
        self._run("reset", "--hard", ref)

    def clean_untracked(self) -> None:
        self._run("clean", "-fd")

    def delete_branch(self, name: str) -> None:
        self._run("branch", "-D", name)

    def delete_remote_branch(self, name: str) -> None:
        self._run("push", self.remote, "--delete", name, timeout=max(self.timeout, 120))

    # ── Diffs ──

    def diff_stat(self, base: str, head: str = "HEAD") -> str:
        return self._run("diff", "--stat", f"{base}...{head}").stdout

    def diff_name_status(self, base: str, head: str = "HEAD") -> list[tuple[str, str, Optional[str]]]:
        """[(status letter, path, old path)]; old path is set for renames and copies."""
        out = self._run("diff", "--name-status", f"{base}...{head}").stdout
        entries = []
        for line in out.splitlines():
            parts = line.split("\t")
            if len(parts) < 2:
                continue
            status = parts[0][:1]
            old = parts[1] if status in ("R", "C") and len(parts) > 2 else None
            entries.append((status, parts[-1], old))
        return entries
