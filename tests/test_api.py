"""Approval API routes."""

import dataclasses

import pytest
from fastapi.testclient import TestClient

from fakes import FakeRunner, writes
from migration_agent.agent import MigrationAgent
from migration_agent.api import create_app
from migration_agent.errors import GitCommandError


@pytest.fixture
def agent(repo_dir, config):
    runner = FakeRunner({"npm install zod": writes("package.json")})
    return MigrationAgent(repo_dir, config=config, runner=runner)


@pytest.fixture
def client(agent):
    return TestClient(create_app(agent))


@pytest.fixture
def job_id(client, rec):
    r = client.post("/api/migrations", json={"recommendation": rec.to_dict(), "triggered_by": "alice"})
    assert r.status_code == 200
    return r.json()["id"]


class TestStart:
    def test_start(self, client, job_id):
        body = client.get(f"/api/migrations/{job_id}").json()
        assert body["status"] == "awaiting_plan_approval"
        assert body["triggered_by"] == "alice"
        assert body["plan"]["status"] == "pending"

    def test_no_steps(self, client, rec):
        payload = rec.to_dict() | {"steps": []}
        r = client.post("/api/migrations", json={"recommendation": payload})
        assert r.status_code == 422

    def test_list(self, client, job_id):
        jobs = client.get("/api/migrations", params={"status": "awaiting_plan_approval"}).json()
        assert [j["id"] for j in jobs] == [job_id]
        assert client.get("/api/migrations", params={"status": "merged"}).json() == []

    def test_list_bad_status(self, client):
        assert client.get("/api/migrations", params={"status": "exploded"}).status_code == 400

    def test_missing(self, client):
        assert client.get("/api/migrations/mig-nope").status_code == 404


class TestPlanReview:
    def test_approve(self, client, job_id):
        r = client.post(f"/api/migrations/{job_id}/plan/approve", json={"actor": "alice"})
        assert r.status_code == 200
        assert r.json()["plan"]["approved_by"] == "alice"

    def test_actor_required(self, client, job_id):
        assert client.post(f"/api/migrations/{job_id}/plan/approve", json={"actor": ""}).status_code == 422

    def test_reject_then_approve_conflicts(self, client, job_id):
        r = client.post(f"/api/migrations/{job_id}/plan/reject", json={"actor": "bob", "reason": "no"})
        assert r.json()["status"] == "rejected"
        r = client.post(f"/api/migrations/{job_id}/plan/approve", json={"actor": "bob"})
        assert r.status_code == 409

    def test_request_changes(self, client, job_id):
        r = client.post(f"/api/migrations/{job_id}/plan/request-changes",
                        json={"actor": "bob", "changes": ["Pin zod"]})
        assert r.json()["plan"]["status"] == "changes_requested"


class TestRun:
    def test_execute_and_merge(self, client, job_id):
        client.post(f"/api/migrations/{job_id}/plan/approve", json={"actor": "alice"})
        r = client.post(f"/api/migrations/{job_id}/execute")
        assert r.status_code == 200
        assert r.json()["status"] == "awaiting_review"

        r = client.post(f"/api/migrations/{job_id}/merged", json={"actor": "bob", "merge_sha": "abc123"})
        assert r.json()["status"] == "merged"
        actions = [e["action"] for e in client.get(f"/api/migrations/{job_id}/audit").json()]
        assert actions[-1] == "pr_merged"

    def test_execute_unapproved(self, client, job_id):
        assert client.post(f"/api/migrations/{job_id}/execute").status_code == 409

    def test_execute_over_limits(self, client, rec):
        risky = rec.to_dict() | {"steps": ["Run `rm -rf build/` to clear output"]}
        job_id = client.post("/api/migrations", json={"recommendation": risky}).json()["id"]
        client.post(f"/api/migrations/{job_id}/plan/approve", json={"actor": "alice"})
        r = client.post(f"/api/migrations/{job_id}/execute")
        assert r.status_code == 422
        assert "Step 1 contains forbidden operation: rm -rf" in r.json()["detail"]["violations"]

    def test_reject_and_rollback(self, client, job_id):
        client.post(f"/api/migrations/{job_id}/plan/approve", json={"actor": "alice"})
        client.post(f"/api/migrations/{job_id}/execute")
        r = client.post(f"/api/migrations/{job_id}/rejected", json={"actor": "bob", "reason": "not now"})
        assert r.json()["status"] == "rejected"
        r = client.post(f"/api/migrations/{job_id}/rollback", json={"actor": "bob"})
        assert r.status_code == 200

    def test_git_failure_is_bad_gateway(self, client, agent, job_id, monkeypatch):
        client.post(f"/api/migrations/{job_id}/plan/approve", json={"actor": "alice"})
        client.post(f"/api/migrations/{job_id}/execute")

        def refused(backup):
            raise GitCommandError(["checkout", backup.branch_name], 1, "error: local changes would be overwritten")

        monkeypatch.setattr(agent.backups, "rollback_to_backup", refused)
        r = client.post(f"/api/migrations/{job_id}/rollback", json={"actor": "bob"})
        assert r.status_code == 502
        assert "local changes would be overwritten" in r.json()["detail"]

    def test_audit_missing_job(self, client):
        assert client.get("/api/migrations/mig-nope/audit").status_code == 404


def test_assisted_mode_over_api(repo_dir, config, rec):
    agent = MigrationAgent(repo_dir, config=dataclasses.replace(config, mode="assisted"), runner=FakeRunner())
    r = TestClient(create_app(agent)).post("/api/migrations", json={"recommendation": rec.to_dict()})
    assert r.json()["status"] == "awaiting_review"
