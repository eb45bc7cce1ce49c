"""
Agent invocation log.

Every agent execution writes one row with the rendered request and the raw
provider response, so an empty result can be recovered or diagnosed later.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, Float
from sqlalchemy.dialects.postgresql import UUID, JSONB

from app.db.base import Base


class AgentLog(Base):
    __tablename__ = "agent_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    message_id = Column(String(64), nullable=True)
    interaction_type = Column(String(100), nullable=False, index=True)  # e.g. ask.insight.detection

    # Status values: processing, completed, failed
    status = Column(String(50), default="processing", nullable=False)
    request_payload = Column(JSONB, nullable=True)
    response_payload = Column(JSONB, nullable=True)
    error_message = Column(Text, nullable=True)
    model_config_id = Column(String(255), nullable=True)
    latency_seconds = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<AgentLog(id={self.id}, type={self.interaction_type}, status={self.status})>"
