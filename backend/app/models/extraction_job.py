"""
Extraction job model.

One row per insight-extraction attempt. A row in an active status (pending or
processing) is the per-conversation lease: the partial unique index below lets
only one such row exist for a conversation, so a concurrent second insert fails
with a unique violation instead of starting a second agent run.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, Index, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base


ACTIVE_JOB_STATUSES = ("pending", "processing")

_ACTIVE_STATUS_CLAUSE = text("status IN ('pending', 'processing')")


class ExtractionJob(Base):
    __tablename__ = "insight_extraction_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        UUID(as_uuid=True), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    message_id = Column(String(64), nullable=True)  # Message that triggered detection

    # Status values: pending, processing, completed, failed
    status = Column(String(50), default="pending", nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    model_config_id = Column(String(255), nullable=True)

    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    conversation = relationship("Conversation")

    __table_args__ = (
        Index(
            "uq_insight_extraction_jobs_active_conversation",
            "conversation_id",
            unique=True,
            postgresql_where=_ACTIVE_STATUS_CLAUSE,
            sqlite_where=_ACTIVE_STATUS_CLAUSE,
        ),
    )

    def __repr__(self):
        return f"<ExtractionJob(id={self.id}, conversation={self.conversation_id}, status={self.status})>"

    @property
    def duration_seconds(self) -> float:
        """Calculate job duration in seconds."""
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        elif self.started_at:
            return (datetime.utcnow() - self.started_at).total_seconds()
        return 0.0
