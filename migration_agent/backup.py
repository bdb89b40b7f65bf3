"""
Backup manager - isolated branch, anchor commit, rollback.
====================================================
Each job owns exactly one backup branch. It is created with an empty
anchor commit before any mutation; every later commit of the job lands on
that branch. Rollback hard-resets the branch to the anchor and never
touches the originating branch.
"""

from __future__ import annotations

import logging
import re

from .config import GitConfig
from .errors import BackupError, CommandTimeoutError, GitCommandError
from .models import BackupInfo, CommitResult, DiffStats
from .safety import generate_safe_branch_name, is_protected_branch
from .vcs import GitRepository

logger = logging.getLogger(__name__)

_FILES_RE = re.compile(r"(\d+) files? changed")
_INSERTIONS_RE = re.compile(r"(\d+) insertions?")
_DELETIONS_RE = re.compile(r"(\d+) deletions?")


def parse_diff_stat(output: str) -> DiffStats:
    """Parse the summary line of ``git diff --stat``."""

    def grab(rx: re.Pattern) -> int:
        m = rx.search(output)
        return int(m.group(1)) if m else 0

    return DiffStats(
        files_changed=grab(_FILES_RE),
        insertions=grab(_INSERTIONS_RE),
        deletions=grab(_DELETIONS_RE),
    )


def anchor_message(job_id: str, recommendation_id: str, subject: str, branch: str, sha: str) -> str:
    return (
        "Backup before migration\n\n"
        f"Job ID: {job_id}\n"
        f"Recommendation: {recommendation_id}\n"
        f"Subject: {subject}\n"
        f"Created from: {branch} @ {sha[:8]}\n\n"
        "Anchor commit: the pre-migration baseline. Roll back by resetting to this commit."
    )


class BackupManager:
    """Creates and manages a job's backup branch."""

    def __init__(self, vcs: GitRepository, git_config: GitConfig | None = None):
        self.vcs = vcs
        self.config = git_config or GitConfig()

    def create_backup(self, job_id: str, recommendation_id: str, subject: str) -> BackupInfo:
        current = self.vcs.current_branch()
        logger.info("Creating backup for job %s from %s", job_id, current)

        if is_protected_branch(current):
            raise BackupError(f"Cannot create backup from protected branch: {current}")
        if not self.vcs.is_clean():
            raise BackupError("Working directory has uncommitted changes. Commit or stash first.")

        sha = self.vcs.current_commit()
        name = generate_safe_branch_name(self.config.branch_prefix, recommendation_id, subject)
        if self.vcs.branch_exists(name):
            raise BackupError(f"Branch already exists: {name}")

        message = anchor_message(job_id, recommendation_id, subject, current, sha)
        try:
            self.vcs.create_branch(name)
            anchor = self.vcs.commit(message, allow_empty=True)
        except GitCommandError as e:
            raise BackupError(f"Backup creation failed: {e}") from e

        backup = BackupInfo(
            branch_name=name,
            created_from=current,
            created_from_sha=sha,
            anchor_sha=anchor,
            anchor_message=message,
        )
        if self.config.auto_push:
            self.push_backup(backup)
        logger.info("Backup %s created at %s (pushed=%s)", name, anchor[:8], backup.pushed)
        return backup

    def verify_backup(self, backup: BackupInfo) -> tuple[bool, str]:
        """(valid, reason): branch exists and the anchor is an ancestor of its tip."""
        if not self.vcs.branch_exists(backup.branch_name):
            return False, "Backup branch no longer exists"
        try:
            if not self.vcs.is_ancestor(backup.anchor_sha, backup.branch_name):
                return False, "Backup commit is not in branch history"
        except GitCommandError as e:
            return False, str(e)
        return True, ""

    def rollback_to_backup(self, backup: BackupInfo) -> None:
        """Hard-reset the backup branch to its anchor. Idempotent."""
        valid, reason = self.verify_backup(backup)
        if not valid:
            raise BackupError(f"Cannot roll back: {reason}")
        logger.info("Rolling back %s to %s", backup.branch_name, backup.anchor_sha[:8])
        if self.vcs.current_branch() != backup.branch_name:
            self.vcs.checkout(backup.branch_name)
        self.vcs.reset_hard(backup.anchor_sha)
        self.vcs.clean_untracked()

    def commit_changes(self, backup: BackupInfo, message: str) -> CommitResult:
        try:
            current = self.vcs.current_branch()
            if current != backup.branch_name:
                return CommitResult(
                    False,
                    error=f"Not on backup branch. Expected: {backup.branch_name}, Got: {current}",
                )
            self.vcs.add_all()
            if self.vcs.is_clean():
                return CommitResult(True, message="No changes to commit")
            sha = self.vcs.commit(message)
        except (GitCommandError, CommandTimeoutError) as e:
            logger.error("Commit failed on %s: %s", backup.branch_name, e)
            return CommitResult(False, error=str(e))
        logger.info("Committed %s on %s: %s", sha[:8], backup.branch_name, message.splitlines()[0])
        return CommitResult(True, sha=sha, message=message)

    def push_backup(self, backup: BackupInfo) -> bool:
        """Push the branch; failure is logged and tolerated."""
        try:
            self.vcs.push(backup.branch_name)
        except (GitCommandError, CommandTimeoutError) as e:
            logger.warning("Failed to push backup branch %s: %s", backup.branch_name, e)
            return False
        backup.pushed = True
        return True

    def get_backup_diff(self, backup: BackupInfo) -> DiffStats:
        return parse_diff_stat(self.vcs.diff_stat(backup.anchor_sha))

    def cleanup_backup_branch(self, backup: BackupInfo) -> bool:
        """Back to the originating branch, delete local and (if pushed) remote branch."""
        logger.info("Cleaning up backup branch %s", backup.branch_name)
        try:
            self.vcs.checkout(backup.created_from)
            self.vcs.delete_branch(backup.branch_name)
        except GitCommandError as e:
            logger.error("Cleanup of %s failed: %s", backup.branch_name, e)
            return False
        if backup.pushed:
            try:
                self.vcs.delete_remote_branch(backup.branch_name)
            except (GitCommandError, CommandTimeoutError) as e:
                logger.warning("Could not delete remote branch %s: %s", backup.branch_name, e)
        return True
