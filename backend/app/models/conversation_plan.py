"""
Conversation plan models.

A plan belongs to a conversation thread and is made of ordered steps. Only the
active step is consumed here (to stamp insights); step advancement lives
elsewhere.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base


class ConversationPlan(Base):
    __tablename__ = "conversation_plans"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_thread_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversation_threads.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    title = Column(String(255), nullable=True)
    status = Column(String(50), default="active", nullable=False)  # active, completed, abandoned

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    steps = relationship(
        "ConversationPlanStep",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="ConversationPlanStep.step_order",
    )

    def __repr__(self):
        return f"<ConversationPlan(id={self.id}, thread={self.conversation_thread_id}, status={self.status})>"


class ConversationPlanStep(Base):
    __tablename__ = "conversation_plan_steps"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    plan_id = Column(
        UUID(as_uuid=True), ForeignKey("conversation_plans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    step_identifier = Column(String(100), nullable=False)  # e.g. "step_1", used in STEP_COMPLETE:<id>
    step_order = Column(Integer, nullable=False)  # 1-based
    title = Column(String(255), nullable=False)
    objective = Column(Text, nullable=True)
    status = Column(String(50), default="pending", nullable=False)  # pending, active, completed, skipped

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    activated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    plan = relationship("ConversationPlan", back_populates="steps")

    def __repr__(self):
        return f"<ConversationPlanStep(id={self.step_identifier}, order={self.step_order}, status={self.status})>"
