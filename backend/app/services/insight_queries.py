"""
Read helpers for insights.

Rows come back with type, authors and KPIs eagerly loaded so that callers can
serialize without extra round trips.
"""
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session, selectinload

from app.models import Insight, InsightType


def fetch_insight_type_map(db: Session) -> Dict[str, uuid.UUID]:
    """Map of lower-cased insight type name to type id."""
    types = db.query(InsightType).all()
    return {
        insight_type.name.strip().lower(): insight_type.id
        for insight_type in types
        if insight_type.name and insight_type.name.strip()
    }


def _insight_query(db: Session):
    return db.query(Insight).options(
        selectinload(Insight.insight_type),
        selectinload(Insight.authors),
        selectinload(Insight.kpis),
    )


def fetch_insights_for_conversation(db: Session, conversation_id: uuid.UUID) -> List[Insight]:
    return (
        _insight_query(db)
        .filter(Insight.conversation_id == conversation_id)
        .order_by(Insight.created_at.asc())
        .all()
    )


def fetch_insights_for_thread(
    db: Session, conversation_id: uuid.UUID, thread_id: uuid.UUID
) -> List[Insight]:
    return (
        _insight_query(db)
        .filter(
            Insight.conversation_id == conversation_id,
            Insight.conversation_thread_id == thread_id,
        )
        .order_by(Insight.created_at.asc())
        .all()
    )


def fetch_insight_by_id(db: Session, insight_id: uuid.UUID) -> Optional[Insight]:
    return _insight_query(db).filter(Insight.id == insight_id).first()


def serialize_insight(insight: Insight) -> Dict[str, Any]:
    """
    Plain-dict view of an insight for API responses.

    KPIs are exposed with ``label``/``value`` keys, authors with ``user_id``
    and ``name``.
    """
    return {
        "id": str(insight.id),
        "conversation_id": str(insight.conversation_id),
        "thread_id": str(insight.conversation_thread_id) if insight.conversation_thread_id else None,
        "content": insight.content or "",
        "summary": insight.summary,
        "type": insight.type_name,
        "category": insight.category,
        "status": insight.status,
        "priority": insight.priority,
        "challenge_id": insight.challenge_id,
        "related_challenge_ids": list(insight.related_challenge_ids or []),
        "source_message_id": insight.source_message_id,
        "plan_step_id": str(insight.plan_step_id) if insight.plan_step_id else None,
        "authors": [
            {
                "id": str(author.id),
                "user_id": str(author.user_id) if author.user_id else None,
                "name": author.display_name,
            }
            for author in insight.authors
        ],
        "kpis": [
            {
                "id": str(kpi.id),
                "label": kpi.name,
                "value": kpi.metric_data,
                "description": kpi.description,
            }
            for kpi in insight.kpis
        ],
        "created_at": insight.created_at.isoformat() if insight.created_at else None,
        "updated_at": insight.updated_at.isoformat() if insight.updated_at else None,
    }
