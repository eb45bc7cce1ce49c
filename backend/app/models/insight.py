"""
Insight models.

An insight is one observation (idea, question, risk, KPI, ...) extracted from an
interview conversation by the insight-detection agent. Authors and KPI
estimations are child rows that are always rewritten as complete sets.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey, Text, Float
from sqlalchemy.dialects.postgresql import UUID, ARRAY, JSONB
from sqlalchemy.orm import relationship

from app.db.base import Base


class InsightStatus:
    NEW = "new"
    ARCHIVED = "archived"


class InsightType(Base):
    """Vocabulary of insight types (idea, question, risk, ...)."""

    __tablename__ = "insight_types"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(50), unique=True, nullable=False)

    def __repr__(self):
        return f"<InsightType(name={self.name})>"


class Insight(Base):
    __tablename__ = "insights"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        UUID(as_uuid=True), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    conversation_thread_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversation_threads.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    content = Column(Text, nullable=False, default="")
    summary = Column(Text, nullable=True)
    insight_type_id = Column(UUID(as_uuid=True), ForeignKey("insight_types.id"), nullable=False)
    category = Column(String(100), nullable=True)
    status = Column(String(50), default=InsightStatus.NEW, nullable=False)
    priority = Column(String(50), nullable=True)

    # External references (loose, no foreign keys)
    challenge_id = Column(String(64), nullable=True)
    related_challenge_ids = Column(ARRAY(String), nullable=False, default=list)
    source_message_id = Column(String(64), nullable=True)

    plan_step_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversation_plan_steps.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Semantic search (filled asynchronously)
    content_embedding = Column(ARRAY(Float), nullable=True)
    summary_embedding = Column(ARRAY(Float), nullable=True)
    embedding_updated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    insight_type = relationship("InsightType")
    authors = relationship("InsightAuthor", back_populates="insight", cascade="all, delete-orphan")
    kpis = relationship(
        "InsightKpi",
        back_populates="insight",
        cascade="all, delete-orphan",
        order_by="InsightKpi.created_at",
    )

    @property
    def type_name(self):
        return self.insight_type.name if self.insight_type else None

    def __repr__(self):
        return f"<Insight(id={self.id}, type={self.type_name}, status={self.status}, content={(self.content or '')[:30]}...)>"


class InsightAuthor(Base):
    __tablename__ = "insight_authors"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    insight_id = Column(
        UUID(as_uuid=True), ForeignKey("insights.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    display_name = Column(String(255), nullable=True)

    insight = relationship("Insight", back_populates="authors")

    def __repr__(self):
        return f"<InsightAuthor(insight_id={self.insight_id}, user_id={self.user_id})>"


class InsightKpi(Base):
    """KPI estimation attached to an insight."""

    __tablename__ = "insight_kpis"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    insight_id = Column(
        UUID(as_uuid=True), ForeignKey("insights.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    metric_data = Column(JSONB, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    insight = relationship("Insight", back_populates="kpis")

    def __repr__(self):
        return f"<InsightKpi(insight_id={self.insight_id}, name={self.name})>"
