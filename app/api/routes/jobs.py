"""Background auto-match job endpoints."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException

from app.services.reconciliation import batch

router = APIRouter()


@router.get("")
def list_jobs():
    """List all submitted auto-match jobs."""
    return {"jobs": batch.list_jobs()}


@router.get("/{job_id}")
def get_job(job_id: str):
    """Poll a specific job's status by its ID."""
    job = batch.get_job_status(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/{job_id}/cancel")
def cancel_job(job_id: str):
    """Ask a pending or running job to stop before its next matching pass."""
    job = batch.cancel_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job
