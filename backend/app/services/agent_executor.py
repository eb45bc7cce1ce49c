"""
Agent execution for insight detection.

Renders the detection prompt, calls the LLM and records every invocation in
``agent_logs`` with the raw provider payload. The coordinator only sees an
``AgentExecutionResult``; it never talks to a provider directly.
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models import AgentLog
from app.services.llm_providers import LLMService, Message, llm_service

logger = logging.getLogger(__name__)

INSIGHT_DETECTION_INTERACTION = "ask.insight.detection"

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class AgentResponseError(Exception):
    """The agent answered with something the insight pipeline cannot use."""
    pass


@dataclass
class AgentConfig:
    name: str
    system_prompt: str
    user_prompt: str
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    voice: bool = False  # Realtime voice agents stream audio, not text


@dataclass
class AgentExecutionResult:
    content: Optional[str]
    raw: Optional[Dict[str, Any]]
    model_config_id: Optional[str]
    log_id: Optional[uuid.UUID]
    voice_agent: bool = False


INSIGHT_DETECTION_SYSTEM_PROMPT = """You extract insights from a collaborative interview.

Insight types: {{insight_types}}

Existing insights for this conversation (JSON):
{{existing_insights_json}}

Return ONLY JSON of the form {"insights": [...]}. Each item has:
- "content" (required), "summary", "type", "category", "priority"
- "kpis": [{"label", "value", "description"}]
- "authors": [{"userId", "name"}]
- "id" or "duplicateOfId" when it refines an existing insight
- "action": "delete" to drop an existing insight, "merge" with "mergedIntoId"
  to fold it into another one

Do not repeat existing insights unchanged. Return {"insights": []} when there
is nothing new."""

INSIGHT_DETECTION_USER_PROMPT = """Challenge: {{challenge_context}}
Participant: {{participant_name}}

Conversation so far:
{{conversation_history}}

Latest message:
{{latest_message}}"""

INSIGHT_DETECTION_AGENT = AgentConfig(
    name="insight-detection",
    system_prompt=INSIGHT_DETECTION_SYSTEM_PROMPT,
    user_prompt=INSIGHT_DETECTION_USER_PROMPT,
)


def render_template(template: str, variables: Dict[str, Any]) -> str:
    """Substitute ``{{name}}`` placeholders. Unknown names render as ''."""

    def _value(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False, default=str)

    return _PLACEHOLDER_RE.sub(_value, template)


def get_agent_log(db: Session, log_id: Optional[uuid.UUID]) -> Optional[AgentLog]:
    if log_id is None:
        return None
    return db.query(AgentLog).filter(AgentLog.id == log_id).first()


class AgentExecutor:
    """Runs one agent configuration against the LLM service."""

    def __init__(self, config: AgentConfig = INSIGHT_DETECTION_AGENT, llm: Optional[LLMService] = None):
        self.config = config
        self.llm = llm or llm_service

    def execute(
        self,
        db: Session,
        conversation_id: uuid.UUID,
        variables: Dict[str, Any],
        message_id: Optional[str] = None,
    ) -> AgentExecutionResult:
        """
        Execute the agent and log the call.

        Args:
            db: Database session
            conversation_id: Conversation the call belongs to
            variables: Prompt variables
            message_id: Triggering message, if any

        Returns:
            AgentExecutionResult with the text and raw provider payload

        Raises:
            Exception: Provider failures, after the log row is marked failed
        """
        if self.config.voice:
            return AgentExecutionResult(
                content=None, raw=None, model_config_id=None, log_id=None, voice_agent=True
            )

        system_prompt = render_template(self.config.system_prompt, variables)
        user_prompt = render_template(self.config.user_prompt, variables)
        model = self.config.model or settings.insight_agent_model or None

        log = AgentLog(
            conversation_id=conversation_id,
            message_id=message_id,
            interaction_type=INSIGHT_DETECTION_INTERACTION,
            status="processing",
            request_payload={
                "agent": self.config.name,
                "model": model,
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
            },
        )
        db.add(log)
        db.commit()
        db.refresh(log)

        start = time.time()
        try:
            response = self.llm.complete(
                [
                    Message(role="system", content=system_prompt),
                    Message(role="user", content=user_prompt),
                ],
                temperature=self.config.temperature
                if self.config.temperature is not None
                else settings.insight_agent_temperature,
                max_tokens=self.config.max_tokens or settings.insight_agent_max_tokens,
                model=model,
            )
        except Exception as e:
            log.status = "failed"
            log.error_message = str(e)
            log.latency_seconds = time.time() - start
            log.completed_at = datetime.utcnow()
            db.commit()
            logger.error(f"Agent {self.config.name} failed for conversation {conversation_id}: {e}")
            raise

        model_config_id = f"{response.provider}:{response.model}"

        log.status = "completed"
        log.response_payload = response.raw or {"content": response.content}
        log.model_config_id = model_config_id
        log.latency_seconds = time.time() - start
        log.completed_at = datetime.utcnow()
        db.commit()

        logger.info(
            f"Agent {self.config.name} answered in {log.latency_seconds:.2f}s "
            f"({model_config_id}, {len(response.content or '')} chars)"
        )

        return AgentExecutionResult(
            content=response.content or None,
            raw=response.raw,
            model_config_id=model_config_id,
            log_id=log.id,
        )


# Global executor for insight detection
agent_executor = AgentExecutor()
