"""
Pydantic schemas for extraction job tracking.
"""
from typing import Optional
from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, Field


class ExtractionJobStatus(BaseModel):
    """Extraction job status response."""
    id: UUID
    conversation_id: UUID
    message_id: Optional[str] = None
    status: str = Field(..., description="Status: pending, processing, completed, failed")
    attempts: int = 0
    last_error: Optional[str] = None
    model_config_id: Optional[str] = None

    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    class Config:
        from_attributes = True
