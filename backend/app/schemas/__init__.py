"""
Pydantic schemas for API request/response validation.
"""
from app.schemas.job import ExtractionJobStatus
from app.schemas.insights import (
    InsightAuthorOut,
    InsightKpiOut,
    InsightOut,
    InsightDetectRequest,
    InsightList,
    InsightDetectResponse,
)

__all__ = [
    "ExtractionJobStatus",
    "InsightAuthorOut",
    "InsightKpiOut",
    "InsightOut",
    "InsightDetectRequest",
    "InsightList",
    "InsightDetectResponse",
]
