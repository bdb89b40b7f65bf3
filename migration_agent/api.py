"""Migration approval API routes: plan review, merge decisions, audit trail."""

from __future__ import annotations

import logging

from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from .agent import MigrationAgent
from .errors import (
    BackupError,
    JobNotFoundError,
    PlanStateError,
    RecommendationValidationError,
    SafetyViolationError,
    TransientToolError,
)
from .models import Recommendation

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/migrations", tags=["migrations"])


class ReviewAction(BaseModel):
    """Human decision payload."""

    actor: str = Field(..., min_length=1, max_length=200)
    reason: str = Field("", max_length=2000)


class ChangesRequest(BaseModel):
    actor: str = Field(..., min_length=1, max_length=200)
    changes: list[str] = Field(..., min_length=1)


class MergedAction(BaseModel):
    actor: str = Field(..., min_length=1, max_length=200)
    merge_sha: str | None = Field(None, max_length=64)
    comments: str = Field("", max_length=2000)


class StartRequest(BaseModel):
    recommendation: Recommendation
    triggered_by: str = Field("api", max_length=200)


def _agent(request: Request) -> MigrationAgent:
    return request.app.state.agent


def _call(fn, *args, **kwargs):
    """Map agent errors to HTTP errors."""
    try:
        return fn(*args, **kwargs)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SafetyViolationError as e:
        raise HTTPException(status_code=422, detail={"error": str(e), "violations": e.violations})
    except RecommendationValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except (PlanStateError, BackupError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransientToolError as e:
        logger.warning("Tool failure behind API call: %s", e)
        raise HTTPException(status_code=502, detail=str(e))


@router.post("")
def start_migration(request: Request, payload: StartRequest):
    """Create a job and plan (assisted mode also executes)."""
    job = _call(_agent(request).start, payload.recommendation, payload.triggered_by)
    return job.to_dict()


@router.get("")
def list_migrations(request: Request, status: str | None = None, limit: int = 50):
    try:
        jobs = _agent(request).store.list_jobs(status, limit)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    return [
        {"id": j.id, "status": j.status.value, "recommendation_id": j.recommendation_id,
         "triggered_at": j.triggered_at}
        for j in jobs
    ]


@router.get("/{job_id}")
def get_migration(request: Request, job_id: str):
    return _call(_agent(request).get_job, job_id).to_dict()


@router.post("/{job_id}/plan/approve")
def approve_plan(request: Request, job_id: str, payload: ReviewAction):
    return _call(_agent(request).approve_plan, job_id, payload.actor).to_dict()


@router.post("/{job_id}/plan/reject")
def reject_plan(request: Request, job_id: str, payload: ReviewAction):
    return _call(_agent(request).reject_plan, job_id, payload.actor, payload.reason).to_dict()


@router.post("/{job_id}/plan/request-changes")
def request_changes(request: Request, job_id: str, payload: ChangesRequest):
    return _call(_agent(request).request_plan_changes, job_id, payload.actor, payload.changes).to_dict()


@router.post("/{job_id}/execute")
def execute_migration(request: Request, job_id: str):
    return _call(_agent(request).execute, job_id).to_dict()


@router.post("/{job_id}/merged")
def mark_merged(request: Request, job_id: str, payload: MergedAction):
    agent = _agent(request)
    return _call(agent.mark_merged, job_id, payload.actor, payload.merge_sha, payload.comments).to_dict()


@router.post("/{job_id}/rejected")
def reject_migration(request: Request, job_id: str, payload: ReviewAction):
    return _call(_agent(request).reject_migration, job_id, payload.actor, payload.reason).to_dict()


@router.post("/{job_id}/rollback")
def rollback(request: Request, job_id: str, payload: ReviewAction):
    return _call(_agent(request).rollback, job_id, payload.actor).to_dict()


@router.get("/{job_id}/audit")
def audit_trail(request: Request, job_id: str):
    agent = _agent(request)
    _call(agent.get_job, job_id)
    return [e.to_dict() for e in agent.audit_trail(job_id)]


def create_app(agent: MigrationAgent) -> FastAPI:
    app = FastAPI(title="Migration Agent", version="0.1.0")
    app.state.agent = agent
    app.include_router(router)
    return app
