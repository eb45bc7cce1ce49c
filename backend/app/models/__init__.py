"""
Database models package.

All SQLAlchemy models are exported from this module for easy imports.
"""
from app.models.user import User
from app.models.conversation import Conversation, ConversationThread
from app.models.conversation_plan import ConversationPlan, ConversationPlanStep
from app.models.insight import Insight, InsightAuthor, InsightKpi, InsightStatus, InsightType
from app.models.extraction_job import ExtractionJob
from app.models.agent_log import AgentLog
from app.models.graph_edge import GraphEdge

__all__ = [
    "User",
    "Conversation",
    "ConversationThread",
    "ConversationPlan",
    "ConversationPlanStep",
    "Insight",
    "InsightAuthor",
    "InsightKpi",
    "InsightStatus",
    "InsightType",
    "ExtractionJob",
    "AgentLog",
    "GraphEdge",
]
