"""
Pydantic schemas for insight detection.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class InsightAuthorOut(BaseModel):
    id: str
    user_id: Optional[str] = None
    name: Optional[str] = None


class InsightKpiOut(BaseModel):
    id: str
    label: str
    value: Optional[Any] = None
    description: Optional[str] = None


class InsightOut(BaseModel):
    id: str
    conversation_id: str
    thread_id: Optional[str] = None
    content: str = ""
    summary: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None
    status: str
    priority: Optional[str] = None
    challenge_id: Optional[str] = None
    related_challenge_ids: List[str] = Field(default_factory=list)
    source_message_id: Optional[str] = None
    plan_step_id: Optional[str] = None
    authors: List[InsightAuthorOut] = Field(default_factory=list)
    kpis: List[InsightKpiOut] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class InsightDetectRequest(BaseModel):
    """Body of an insight detection request."""

    thread_id: Optional[UUID] = None
    variables: Dict[str, Any] = Field(default_factory=dict, description="Prompt variables for the agent")
    user_id: Optional[UUID] = Field(None, description="Acting user, used as fallback author")
    message_id: Optional[str] = Field(None, max_length=64)
    challenge_id: Optional[str] = Field(None, max_length=64)


class InsightList(BaseModel):
    insights: List[InsightOut]


class InsightDetectResponse(BaseModel):
    success: bool = True
    data: InsightList
