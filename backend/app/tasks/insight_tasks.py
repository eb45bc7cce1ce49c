"""
Celery tasks for the insight pipeline.

Tasks:
- generate_insight_embeddings: Embed an insight's content and summary for semantic search
- expire_stale_extraction_jobs: Fail extraction jobs stuck in processing
"""
import logging
from datetime import datetime
from uuid import UUID

from app.core.celery_app import celery_app
from app.db.base import SessionLocal
from app.services.insight_queries import fetch_insight_by_id

logger = logging.getLogger(__name__)


def _embed(text, insight_id, field_name):
    from app.services.embeddings import get_embedding_service

    if not text or not text.strip():
        return None
    try:
        return get_embedding_service().generate_embedding(text)
    except Exception as e:
        logger.error(f"Error generating {field_name} embedding for insight {insight_id}: {e}")
        return None


@celery_app.task
def generate_insight_embeddings(insight_id: str):
    """
    Generate content and summary embeddings for an insight.

    Each embedding is attempted separately; a failure on one is logged and the
    other is still stored.

    Args:
        insight_id: Insight UUID

    Returns:
        Dict with which embeddings were stored
    """
    db = SessionLocal()

    try:
        insight = fetch_insight_by_id(db, UUID(insight_id))
        if not insight:
            logger.warning(f"Insight {insight_id} not found, skipping embeddings")
            return {"content": False, "summary": False}

        content_embedding = _embed(insight.content, insight_id, "content")
        summary_embedding = _embed(insight.summary, insight_id, "summary")

        if content_embedding is None and summary_embedding is None:
            return {"content": False, "summary": False}

        if content_embedding is not None:
            insight.content_embedding = content_embedding
        if summary_embedding is not None:
            insight.summary_embedding = summary_embedding
        insight.embedding_updated_at = datetime.utcnow()
        db.commit()

        return {"content": content_embedding is not None, "summary": summary_embedding is not None}

    finally:
        db.close()


def schedule_insight_embeddings(insight_id) -> None:
    """Queue embedding generation without waiting. Dispatch errors are only logged."""
    try:
        generate_insight_embeddings.apply_async(args=[str(insight_id)], retry=False)
    except Exception as e:
        logger.warning(f"Could not queue embeddings for insight {insight_id}: {e}")


@celery_app.task
def expire_stale_extraction_jobs():
    """Periodic sweep failing extraction jobs stuck past the timeout."""
    from app.services.insight_extraction import expire_stale_jobs

    db = SessionLocal()

    try:
        expired = expire_stale_jobs(db)
        if expired:
            logger.info(f"Expired {expired} stale extraction job(s)")
        return {"expired": expired}

    finally:
        db.close()
