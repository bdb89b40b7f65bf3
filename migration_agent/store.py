"""SQLite persistence for migration jobs and the append-only audit log.

One connection per operation; jobs are stored as a JSON document next to
the columns needed for listing.

Usage:
    store = JobStore("data/migration_agent.db")
    store.save(job)
    job = store.get(job_id)
    store.audit(job.id, "plan_approved", "approved by alice", actor="alice", actor_type="user")
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

from .errors import JobNotFoundError
from .models import ActorType, AuditLogEntry, MigrationJob, MigrationStatus

logger = logging.getLogger(__name__)

# Audit actions
AUDIT_ACTIONS = frozenset({
    "preflight_start", "preflight_complete", "preflight_failed",
    "branch_created", "backup_committed",
    "plan_generated", "plan_approved", "plan_rejected", "plan_changes_requested",
    "execution_start", "step_completed", "step_failed", "execution_complete",
    "tests_complete", "tests_failed",
    "safety_stop", "pr_opened", "pr_merged", "pr_rejected", "rollback",
})


def _ensure_tables(db: sqlite3.Connection) -> None:
    db.execute("""
        CREATE TABLE IF NOT EXISTS migration_jobs (
            id                TEXT PRIMARY KEY,
            recommendation_id TEXT NOT NULL,
            project_id        TEXT DEFAULT '',
            status            TEXT NOT NULL,
            triggered_by      TEXT DEFAULT '',
            triggered_at      TEXT NOT NULL,
            updated_at        TEXT DEFAULT (datetime('now')),
            data              TEXT NOT NULL
        )
    """)
    db.execute("""
        CREATE TABLE IF NOT EXISTS audit_log (
            id         INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id     TEXT NOT NULL,
            action     TEXT NOT NULL,
            detail     TEXT DEFAULT '',
            actor      TEXT DEFAULT 'migration-agent',
            actor_type TEXT DEFAULT 'agent',
            timestamp  TEXT NOT NULL
        )
    """)
    db.execute("CREATE INDEX IF NOT EXISTS idx_mig_status ON migration_jobs(status, triggered_at)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_audit_job ON audit_log(job_id, id)")
    # Append-only: reject edits and deletes at the database level
    db.execute("""
        CREATE TRIGGER IF NOT EXISTS audit_log_no_update BEFORE UPDATE ON audit_log
        BEGIN SELECT RAISE(ABORT, 'audit_log is append-only'); END
    """)
    db.execute("""
        CREATE TRIGGER IF NOT EXISTS audit_log_no_delete BEFORE DELETE ON audit_log
        BEGIN SELECT RAISE(ABORT, 'audit_log is append-only'); END
    """)


class JobStore:
    """Jobs and audit entries in one SQLite file."""

    def __init__(self, db_path: Path | str):
        self._db_path = Path(db_path)
        self._initialized = False

    def _db(self) -> sqlite3.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = sqlite3.connect(str(self._db_path))
        db.row_factory = sqlite3.Row
        if not self._initialized:
            _ensure_tables(db)
            db.commit()
            self._initialized = True
        return db

    # ── Jobs ──

    def save(self, job: MigrationJob) -> None:
        db = self._db()
        try:
            db.execute(
                "INSERT INTO migration_jobs (id, recommendation_id, project_id, status, triggered_by, triggered_at, data) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET status=excluded.status, data=excluded.data, "
                "updated_at=datetime('now')",
                (
                    job.id,
                    job.recommendation_id,
                    job.project_id,
                    job.status.value,
                    job.triggered_by,
                    job.triggered_at,
                    json.dumps(job.to_dict()),
                ),
            )
            db.commit()
        finally:
            db.close()

    def get(self, job_id: str) -> MigrationJob:
        db = self._db()
        try:
            row = db.execute("SELECT data FROM migration_jobs WHERE id = ?", (job_id,)).fetchone()
        finally:
            db.close()
        if row is None:
            raise JobNotFoundError(f"Migration job not found: {job_id}")
        return MigrationJob.from_dict(json.loads(row["data"]))

    def list_jobs(self, status: MigrationStatus | str | None = None, limit: int = 50) -> list[MigrationJob]:
        db = self._db()
        try:
            if status:
                rows = db.execute(
                    "SELECT data FROM migration_jobs WHERE status = ? ORDER BY triggered_at DESC LIMIT ?",
                    (MigrationStatus(status).value, limit),
                ).fetchall()
            else:
                rows = db.execute(
                    "SELECT data FROM migration_jobs ORDER BY triggered_at DESC LIMIT ?", (limit,)
                ).fetchall()
        finally:
            db.close()
        return [MigrationJob.from_dict(json.loads(r["data"])) for r in rows]

    # ── Audit ──

    def audit(
        self,
        job_id: str,
        action: str,
        detail: str = "",
        actor: str = "migration-agent",
        actor_type: ActorType | str = ActorType.AGENT,
    ) -> None:
        """Append an audit entry. Never raises."""
        if action not in AUDIT_ACTIONS:
            logger.warning("Unknown audit action %r for job %s", action, job_id)
        entry = AuditLogEntry(job_id=job_id, action=action, detail=detail[:1000], actor=actor,
                              actor_type=actor_type)
        try:
            db = self._db()
            try:
                db.execute(
                    "INSERT INTO audit_log (job_id, action, detail, actor, actor_type, timestamp) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (entry.job_id, entry.action, entry.detail, entry.actor, entry.actor_type.value,
                     entry.timestamp),
                )
                db.commit()
            finally:
                db.close()
        except sqlite3.Error as e:
            logger.warning("audit failed for job %s (%s): %s", job_id, action, e)

    def audit_entries(self, job_id: str) -> list[AuditLogEntry]:
        db = self._db()
        try:
            rows = db.execute(
                "SELECT id, job_id, action, detail, actor, actor_type, timestamp FROM audit_log "
                "WHERE job_id = ? ORDER BY id",
                (job_id,),
            ).fetchall()
        finally:
            db.close()
        return [AuditLogEntry.from_dict(dict(r)) for r in rows]
