"""
API endpoints for conversation insights.

Endpoints:
- POST /conversations/{conversation_id}/insights/detect
- GET /conversations/{conversation_id}/insights
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.db.base import get_db
from app.models import Conversation
from app.schemas import InsightDetectRequest, InsightDetectResponse, InsightList
from app.services.insight_extraction import detect_insights
from app.services.insight_queries import (
    fetch_insights_for_conversation,
    fetch_insights_for_thread,
    serialize_insight,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_conversation_or_404(db: Session, conversation_id: uuid.UUID) -> Conversation:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@router.post("/{conversation_id}/insights/detect", response_model=InsightDetectResponse)
def detect_conversation_insights(
    conversation_id: uuid.UUID,
    request: InsightDetectRequest,
    db: Session = Depends(get_db),
):
    """
    Run insight detection for a conversation.

    Returns the refreshed insight set. Repeated or concurrent calls return the
    current set without running the agent again.
    """
    _get_conversation_or_404(db, conversation_id)

    try:
        result = detect_insights(
            db,
            conversation_id,
            request.thread_id,
            request.variables,
            request.user_id,
            message_id=request.message_id,
            challenge_id=request.challenge_id,
        )
    except Exception as e:
        logger.error(f"Insight detection failed for conversation {conversation_id}: {e}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(e) or "Insight detection failed"},
        )

    return {"success": True, "data": result}


@router.get("/{conversation_id}/insights", response_model=InsightList)
async def list_conversation_insights(
    conversation_id: uuid.UUID,
    thread_id: Optional[uuid.UUID] = Query(None, description="Restrict to one conversation thread"),
    db: Session = Depends(get_db),
):
    _get_conversation_or_404(db, conversation_id)

    if thread_id:
        insights = fetch_insights_for_thread(db, conversation_id, thread_id)
    else:
        insights = fetch_insights_for_conversation(db, conversation_id)

    return {"insights": [serialize_insight(insight) for insight in insights]}
