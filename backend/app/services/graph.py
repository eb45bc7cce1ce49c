"""
Knowledge graph edge maintenance.
"""
import logging
import uuid

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.models import GraphEdge

logger = logging.getLogger(__name__)


def delete_edges_for_insight(db: Session, insight_id: uuid.UUID) -> int:
    """Delete every edge where the insight is source or target. Returns the count."""
    deleted = (
        db.query(GraphEdge)
        .filter(
            or_(
                (GraphEdge.source_id == insight_id) & (GraphEdge.source_type == "insight"),
                (GraphEdge.target_id == insight_id) & (GraphEdge.target_type == "insight"),
            )
        )
        .delete(synchronize_session=False)
    )
    if deleted:
        logger.info(f"Deleted {deleted} graph edge(s) for insight {insight_id}")
    return deleted
