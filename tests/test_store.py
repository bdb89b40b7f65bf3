"""Job persistence and the append-only audit log."""

import sqlite3

import pytest

from migration_agent.config import SafetyLimits
from migration_agent.errors import JobNotFoundError
from migration_agent.models import ActorType, MigrationJob, MigrationStatus
from migration_agent.planner import generate_plan
from migration_agent.store import JobStore


@pytest.fixture
def store(tmp_path):
    return JobStore(tmp_path / "data" / "agent.db")


class TestJobs:
    def test_save_and_get(self, store, rec):
        job = MigrationJob(recommendation=rec, triggered_by="alice")
        job.plan = generate_plan(rec, SafetyLimits())
        store.save(job)

        loaded = store.get(job.id)
        assert loaded.id == job.id
        assert loaded.recommendation == rec
        assert loaded.plan.steps[0].command == "npm install zod"
        assert loaded.plan.status == job.plan.status
        assert loaded.to_dict() == job.to_dict()

    def test_upsert(self, store, rec):
        job = MigrationJob(recommendation=rec)
        store.save(job)
        job.status = MigrationStatus.PLANNING
        store.save(job)
        assert store.get(job.id).status == MigrationStatus.PLANNING
        assert len(store.list_jobs()) == 1

    def test_missing(self, store):
        with pytest.raises(JobNotFoundError):
            store.get("mig-nope")

    def test_list_by_status(self, store, rec):
        a = MigrationJob(recommendation=rec)
        b = MigrationJob(recommendation=rec, status=MigrationStatus.FAILED)
        store.save(a)
        store.save(b)
        assert [j.id for j in store.list_jobs("failed")] == [b.id]
        assert len(store.list_jobs(limit=1)) == 1

    def test_unknown_status(self, store):
        with pytest.raises(ValueError):
            store.list_jobs("exploded")


class TestAudit:
    def test_entries_in_order(self, store):
        store.audit("mig-1", "plan_generated", "3 steps")
        store.audit("mig-1", "plan_approved", "approved by alice", actor="alice", actor_type=ActorType.USER)
        store.audit("mig-2", "plan_generated")
        entries = store.audit_entries("mig-1")
        assert [e.action for e in entries] == ["plan_generated", "plan_approved"]
        assert entries[1].actor == "alice"
        assert entries[1].actor_type == ActorType.USER
        assert entries[0].id < entries[1].id

    def test_unknown_action_still_recorded(self, store):
        store.audit("mig-1", "something_else")
        assert store.audit_entries("mig-1")[0].action == "something_else"

    def test_append_only(self, store, tmp_path):
        store.audit("mig-1", "plan_generated")
        db = sqlite3.connect(str(tmp_path / "data" / "agent.db"))
        try:
            with pytest.raises(sqlite3.DatabaseError):
                db.execute("UPDATE audit_log SET detail = 'tampered'")
            with pytest.raises(sqlite3.DatabaseError):
                db.execute("DELETE FROM audit_log")
        finally:
            db.close()
        assert store.audit_entries("mig-1")[0].detail == ""
