"""
Knowledge graph edge model.

Edges link insights (and other entities) for graph views. They are generated
post-interview; the insight pipeline only removes edges of deleted insights.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Float
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base


class GraphEdge(Base):
    __tablename__ = "knowledge_graph_edges"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    source_type = Column(String(50), nullable=False)  # insight, entity, challenge
    target_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    target_type = Column(String(50), nullable=False)
    relationship_type = Column(String(100), nullable=False)  # SIMILAR_TO, RELATED_TO, ...
    confidence = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<GraphEdge({self.source_type}:{self.source_id} -[{self.relationship_type}]-> {self.target_type}:{self.target_id})>"
