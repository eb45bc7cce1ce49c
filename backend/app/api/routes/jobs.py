"""
API endpoints for extraction job tracking.

Endpoints:
- GET /jobs/{job_id} - Get extraction job status
"""
import uuid
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.db.base import get_db
from app.models import ExtractionJob
from app.schemas import ExtractionJobStatus

router = APIRouter()


@router.get("/{job_id}", response_model=ExtractionJobStatus)
async def get_job_status(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    """
    Get extraction job status.

    Args:
        job_id: Job UUID

    Returns:
        ExtractionJobStatus with status, attempts and last error
    """
    job = db.query(ExtractionJob).filter(ExtractionJob.id == job_id).first()

    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    return ExtractionJobStatus.model_validate(job)
