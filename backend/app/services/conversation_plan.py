"""
Conversation plan helpers.

The insight pipeline stamps insights with the active plan step and reports the
``STEP_COMPLETE`` marker the agent writes when a step is done. Advancing the
plan is handled by the plan owner, not here.
"""
import logging
import re
import uuid
from typing import Optional

from sqlalchemy.orm import Session

from app.models import ConversationPlan, ConversationPlanStep

logger = logging.getLogger(__name__)

CURRENT_STEP = "CURRENT"

# Models sometimes wrap the marker in markdown emphasis: **STEP_COMPLETE:step_1**
_EMPHASIS_WRAPPED_MARKER_RE = re.compile(r"(\*{1,2}|_{1,2})(STEP_COMPLETE:?\s*\w*)(\*{1,2}|_{1,2})", re.IGNORECASE)
_MARKER_WITH_ID_RE = re.compile(r"STEP_COMPLETE:\s*(\w+)", re.IGNORECASE)
_BARE_MARKER_RE = re.compile(r"STEP_COMPLETE:?\s*(?!\w)", re.IGNORECASE)
_CLEAN_MARKER_RE = re.compile(r"(\*{1,2}|_{1,2})?(STEP_COMPLETE:?\s*)(\w+)?(\*{1,2}|_{1,2})?", re.IGNORECASE)


def get_active_step_id(db: Session, thread_id: Optional[uuid.UUID]) -> Optional[uuid.UUID]:
    """Identifier of the active step in the thread's plan, or None."""
    if thread_id is None:
        return None

    step = (
        db.query(ConversationPlanStep)
        .join(ConversationPlan, ConversationPlanStep.plan_id == ConversationPlan.id)
        .filter(
            ConversationPlan.conversation_thread_id == thread_id,
            ConversationPlanStep.status == "active",
        )
        .order_by(ConversationPlanStep.step_order.asc())
        .first()
    )
    return step.id if step else None


def detect_step_completion(content: Optional[str]) -> Optional[str]:
    """
    Detect a step-completion marker in agent output.

    Returns:
        The step identifier for ``STEP_COMPLETE:<id>``, ``"CURRENT"`` for a bare
        ``STEP_COMPLETE``, or None when there is no marker.
    """
    if not content:
        return None

    unwrapped = _EMPHASIS_WRAPPED_MARKER_RE.sub(r"\2", content)

    match = _MARKER_WITH_ID_RE.search(unwrapped)
    if match:
        return match.group(1)

    if _BARE_MARKER_RE.search(unwrapped):
        return CURRENT_STEP

    return None


def clean_step_complete_marker(content: Optional[str]) -> str:
    """Remove the marker (and any emphasis around it) from display text."""
    if not content:
        return ""
    return _CLEAN_MARKER_RE.sub("", content).strip()
