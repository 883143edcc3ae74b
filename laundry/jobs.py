# laundry/jobs.py
from fastapi import APIRouter, Depends, Query

from .auth import Identity
from .deps import get_engine, get_identity, require_role
from .errors import Forbidden
from .lifecycle import LifecycleEngine
from .models import (
    AcceptJobIn,
    CancelJobIn,
    JobCreate,
    JobListOut,
    JobOut,
    JobStatus,
    TransitionListOut,
)

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=JobOut)
async def create_job(
    payload: JobCreate,
    engine: LifecycleEngine = Depends(get_engine),
    user: Identity = Depends(require_role("customer")),
):
    job = await engine.create_job(payload.customer_name, payload.address, payload.notes, actor_id=user.user_id)
    return {"job": job}


@router.get("", response_model=JobListOut)
async def list_jobs(
    status: JobStatus = Query(default=JobStatus.PENDING),
    engine: LifecycleEngine = Depends(get_engine),
):
    return {"jobs": await engine.list_jobs(status)}


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: int, engine: LifecycleEngine = Depends(get_engine)):
    return {"job": await engine.get_job(job_id)}


@router.get("/{job_id}/transitions", response_model=TransitionListOut)
async def job_transitions(
    job_id: int,
    engine: LifecycleEngine = Depends(get_engine),
    user: Identity = Depends(get_identity),
):
    return {"transitions": await engine.job_history(job_id)}


@router.post("/{job_id}/accept", response_model=JobOut)
async def accept_job(
    job_id: int,
    payload: AcceptJobIn,
    engine: LifecycleEngine = Depends(get_engine),
    user: Identity = Depends(require_role("washer")),
):
    if payload.washer_id != user.user_id:
        raise Forbidden("washerId must be your own id")
    return {"job": await engine.accept_job(job_id, payload.washer_id)}


@router.post("/{job_id}/cancel", response_model=JobOut)
async def cancel_job(
    job_id: int,
    payload: CancelJobIn,
    engine: LifecycleEngine = Depends(get_engine),
    user: Identity = Depends(get_identity),
):
    if payload.actor_id != user.user_id:
        raise Forbidden("actorId must be your own id")
    job = await engine.get_job(job_id)
    if user.user_id not in (job.customer_id, job.washer_id):
        raise Forbidden("only the customer who booked the job or its washer can cancel it")
    return {"job": await engine.cancel_job(job_id, payload.actor_id)}
