"""
Insight extraction coordinator.

Runs at most one insight extraction per conversation at a time. The lease is an
``insight_extraction_jobs`` row in an active status: the partial unique index
on ``conversation_id`` lets exactly one concurrent insert win, and the loser
defers to it. A job stuck in ``processing`` past the timeout is expired by the
next caller, and a job completed within the cooldown window suppresses a new
run.

Flow:
1. Active job? Return the current insights (expire it first if stuck).
2. Completed within cooldown? Return the current insights.
3. Insert the job (``processing``). Unique conflict: defer to the winner.
4. Execute the agent. If the job was expired meanwhile, discard the result.
5. Recover the payload, reconcile, complete the job.
6. Any failure in 4-5: mark the job failed (if still processing) and re-raise.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.ids import parse_uuid
from app.models import Conversation, ExtractionJob, Insight
from app.models.extraction_job import ACTIVE_JOB_STATUSES
from app.services.agent_executor import (
    AgentExecutionResult,
    AgentExecutor,
    AgentResponseError,
    agent_executor,
    get_agent_log,
)
from app.services.conversation_plan import detect_step_completion, get_active_step_id
from app.services.insight_candidates import normalize_candidates
from app.services.insight_queries import (
    fetch_insights_for_conversation,
    fetch_insights_for_thread,
    serialize_insight,
)
from app.services.insight_reconciler import InsightReconciler
from app.services.payload_recovery import (
    PayloadKind,
    extract_text_from_raw_response,
    resolve_payload_with_kind,
)

logger = logging.getLogger(__name__)

_UNIQUE_VIOLATION_PGCODE = "23505"


class ExtractionStatus:
    COMPLETED = "completed"
    NO_CANDIDATES = "no_candidates"  # Foreign or unparseable payload
    SKIPPED_ACTIVE = "skipped_active"
    SKIPPED_COOLDOWN = "skipped_cooldown"
    SKIPPED_CONFLICT = "skipped_conflict"
    EXPIRED = "expired"  # Job timed out while the agent ran; result discarded


@dataclass
class ExtractionResult:
    status: str
    insights: List[Insight] = field(default_factory=list)
    job_id: Optional[uuid.UUID] = None
    payload_kind: Optional[PayloadKind] = None
    step_completion: Optional[str] = None

    @property
    def ran_agent(self) -> bool:
        return self.status in (
            ExtractionStatus.COMPLETED,
            ExtractionStatus.NO_CANDIDATES,
            ExtractionStatus.EXPIRED,
        )


# ----------------------------------------------------------------------------
# Job lease
# ----------------------------------------------------------------------------


def get_active_job(db: Session, conversation_id: uuid.UUID) -> Optional[ExtractionJob]:
    return (
        db.query(ExtractionJob)
        .filter(
            ExtractionJob.conversation_id == conversation_id,
            ExtractionJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .order_by(ExtractionJob.created_at.desc())
        .first()
    )


def is_job_stuck(job: ExtractionJob, now: Optional[datetime] = None) -> bool:
    started = job.started_at or job.created_at
    if started is None:
        return False
    now = now or datetime.utcnow()
    return now - started > timedelta(seconds=settings.insight_job_timeout_seconds)


def _transition_job(db: Session, job_id: uuid.UUID, from_statuses, values: Dict[str, Any]) -> bool:
    """Apply ``values`` only while the job is still in ``from_statuses``."""
    values = {**values, "updated_at": datetime.utcnow()}
    updated = (
        db.query(ExtractionJob)
        .filter(ExtractionJob.id == job_id, ExtractionJob.status.in_(from_statuses))
        .update(values, synchronize_session="fetch")
    )
    db.commit()
    return updated > 0


def is_job_processing(db: Session, job_id: uuid.UUID) -> bool:
    status = db.query(ExtractionJob.status).filter(ExtractionJob.id == job_id).scalar()
    return status == "processing"


def expire_job(db: Session, job: ExtractionJob) -> bool:
    job_id, conversation_id = job.id, job.conversation_id
    expired = _transition_job(
        db,
        job_id,
        ACTIVE_JOB_STATUSES,
        {
            "status": "failed",
            "last_error": f"Job timed out after {settings.insight_job_timeout_seconds} seconds",
            "finished_at": datetime.utcnow(),
        },
    )
    if expired:
        logger.warning(f"Expired stuck extraction job {job_id} for conversation {conversation_id}")
    return expired


def find_live_job(db: Session, conversation_id: uuid.UUID) -> Optional[ExtractionJob]:
    """Active job for the conversation, expiring it (and returning None) when stuck."""
    job = get_active_job(db, conversation_id)
    if job is None:
        return None
    if is_job_stuck(job):
        expire_job(db, job)
        return None
    return job


def is_in_cooldown(db: Session, conversation_id: uuid.UUID) -> bool:
    """True when a job completed for the conversation within the cooldown window."""
    cutoff = datetime.utcnow() - timedelta(seconds=settings.insight_job_cooldown_seconds)
    try:
        recent = (
            db.query(ExtractionJob.id)
            .filter(
                ExtractionJob.conversation_id == conversation_id,
                ExtractionJob.status == "completed",
                ExtractionJob.finished_at >= cutoff,
            )
            .first()
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Cooldown check failed for conversation {conversation_id}: {e}")
        return False
    return recent is not None


def create_job(db: Session, conversation_id: uuid.UUID, message_id: Optional[str] = None) -> ExtractionJob:
    """
    Insert the lease row.

    Raises:
        IntegrityError: When another caller holds the lease
    """
    now = datetime.utcnow()
    job = ExtractionJob(
        conversation_id=conversation_id,
        message_id=message_id,
        status="processing",
        attempts=1,
        started_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def complete_job(db: Session, job_id: uuid.UUID, model_config_id: Optional[str] = None) -> bool:
    values: Dict[str, Any] = {"status": "completed", "finished_at": datetime.utcnow(), "last_error": None}
    if model_config_id:
        values["model_config_id"] = model_config_id
    if not _transition_job(db, job_id, ("processing",), values):
        logger.warning(f"Extraction job {job_id} was no longer processing; not marking it completed")
        return False
    return True


def fail_job(db: Session, job_id: uuid.UUID, error: str) -> bool:
    failed = _transition_job(
        db,
        job_id,
        ("processing",),
        {"status": "failed", "last_error": error, "finished_at": datetime.utcnow()},
    )
    if not failed:
        logger.warning(f"Extraction job {job_id} had already finished; dropping error: {error}")
        return False
    attempts = db.query(ExtractionJob.attempts).filter(ExtractionJob.id == job_id).scalar()
    logger.warning(f"Extraction job {job_id} failed after {attempts} attempt(s): {error}")
    return True


def expire_stale_jobs(db: Session) -> int:
    """Expire every stuck active job. Returns how many were expired."""
    cutoff = datetime.utcnow() - timedelta(seconds=settings.insight_job_timeout_seconds)
    stale = (
        db.query(ExtractionJob)
        .filter(
            ExtractionJob.status.in_(ACTIVE_JOB_STATUSES),
            ExtractionJob.started_at < cutoff,
        )
        .all()
    )
    return sum(1 for job in stale if expire_job(db, job))


def _is_unique_violation(error: IntegrityError) -> bool:
    orig = getattr(error, "orig", None)
    if getattr(orig, "pgcode", None) == _UNIQUE_VIOLATION_PGCODE:
        return True
    return "UNIQUE constraint failed" in str(orig or error)


# ----------------------------------------------------------------------------
# Extraction
# ----------------------------------------------------------------------------


def _ensure_agent_output(db: Session, result: AgentExecutionResult) -> AgentExecutionResult:
    """
    Reject voice results and recover empty ones from the invocation log.

    Raises:
        AgentResponseError: Voice result, or empty result with no usable log
    """
    if result.voice_agent:
        raise AgentResponseError("Voice agent response cannot be used for insight detection")

    if result.content or result.raw:
        return result

    log = get_agent_log(db, result.log_id)
    if log is None:
        logger.error(f"Agent returned an empty response and log {result.log_id} was not found")
        raise AgentResponseError(f"Agent returned an empty response (log {result.log_id} not found)")

    recovered = extract_text_from_raw_response(log.response_payload)
    if recovered:
        logger.info(f"Recovered agent output from log {log.id}")
        return replace(result, content=recovered, raw=log.response_payload)

    if log.status == "failed":
        message = f"Agent execution failed (log {log.id}, status {log.status}): {log.error_message or 'unknown error'}"
    else:
        message = (
            f"Agent returned an empty response (log {log.id}, status {log.status}, "
            f"error: {log.error_message or 'none'})"
        )
    logger.error(message)
    raise AgentResponseError(message)


def _current_insights(
    db: Session, conversation_id: uuid.UUID, thread_id: Optional[uuid.UUID]
) -> List[Insight]:
    if thread_id:
        return fetch_insights_for_thread(db, conversation_id, thread_id)
    return fetch_insights_for_conversation(db, conversation_id)


def run_extraction(
    db: Session,
    conversation_id: uuid.UUID,
    variables: Dict[str, Any],
    thread_id: Optional[uuid.UUID] = None,
    current_user_id: Optional[uuid.UUID] = None,
    message_id: Optional[str] = None,
    challenge_id: Optional[str] = None,
    executor: Optional[AgentExecutor] = None,
    embedding_scheduler: Optional[Callable[[uuid.UUID], None]] = None,
) -> ExtractionResult:
    """
    Run one single-flight extraction for a conversation.

    Args:
        db: Database session
        conversation_id: Conversation to extract from
        variables: Prompt variables for the agent
        thread_id: Conversation thread the extraction is scoped to
        current_user_id: Acting user (author fallback)
        message_id: Triggering message, stamped on new insights
        challenge_id: Challenge stamped on new insights
        executor: Agent executor (defaults to the insight-detection agent)
        embedding_scheduler: Called with each created/updated insight id

    Returns:
        ExtractionResult; ``insights`` is the refreshed thread (or conversation)
        set in every case.
    """
    executor = executor or agent_executor

    live_job = find_live_job(db, conversation_id)
    if live_job is not None:
        logger.info(f"Extraction already running for conversation {conversation_id} (job {live_job.id})")
        return ExtractionResult(
            status=ExtractionStatus.SKIPPED_ACTIVE,
            insights=_current_insights(db, conversation_id, thread_id),
            job_id=live_job.id,
        )

    if is_in_cooldown(db, conversation_id):
        logger.info(f"Extraction for conversation {conversation_id} skipped (cooldown)")
        return ExtractionResult(
            status=ExtractionStatus.SKIPPED_COOLDOWN,
            insights=_current_insights(db, conversation_id, thread_id),
        )

    try:
        job = create_job(db, conversation_id, message_id)
    except IntegrityError as e:
        db.rollback()
        if not _is_unique_violation(e):
            raise
        winner = get_active_job(db, conversation_id)
        if winner is None:
            logger.error(f"Job insert for conversation {conversation_id} conflicted but no active job exists")
            raise
        logger.info(f"Lost job race for conversation {conversation_id} to job {winner.id}")
        return ExtractionResult(
            status=ExtractionStatus.SKIPPED_CONFLICT,
            insights=_current_insights(db, conversation_id, thread_id),
            job_id=winner.id,
        )

    job_id = job.id
    logger.info(f"Started extraction job {job_id} for conversation {conversation_id}")

    try:
        agent_result = executor.execute(db, conversation_id, variables, message_id)
        agent_result = _ensure_agent_output(db, agent_result)

        if not is_job_processing(db, job_id):
            logger.warning(
                f"Extraction job {job_id} expired while the agent was running; discarding its result"
            )
            return ExtractionResult(
                status=ExtractionStatus.EXPIRED,
                insights=_current_insights(db, conversation_id, thread_id),
                job_id=job_id,
            )

        if agent_result.model_config_id:
            _transition_job(db, job_id, ("processing",), {"model_config_id": agent_result.model_config_id})

        step_completion = detect_step_completion(agent_result.content)
        if step_completion:
            logger.info(f"Agent reported step completion '{step_completion}' for conversation {conversation_id}")

        payload, kind = resolve_payload_with_kind(agent_result)

        if kind in (PayloadKind.FOREIGN, PayloadKind.UNRECOVERABLE) or payload is None:
            # TODO: confirm with product whether a foreign payload should fail the job
            logger.warning(f"Extraction job {job_id} produced no usable insights ({kind.value})")
            complete_job(db, job_id, agent_result.model_config_id)
            return ExtractionResult(
                status=ExtractionStatus.NO_CANDIDATES,
                insights=_current_insights(db, conversation_id, thread_id),
                job_id=job_id,
                payload_kind=kind,
                step_completion=step_completion,
            )

        candidates = normalize_candidates(payload, str(current_user_id) if current_user_id else None)

        plan_step_id = None
        try:
            plan_step_id = get_active_step_id(db, thread_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Could not resolve active plan step for thread {thread_id}: {e}")

        if challenge_id is None:
            conversation = db.get(Conversation, conversation_id)
            challenge_id = conversation.challenge_id if conversation else None

        reconciler = InsightReconciler(
            db,
            conversation_id,
            fetch_insights_for_conversation(db, conversation_id),
            thread_id=thread_id,
            current_user_id=current_user_id,
            plan_step_id=plan_step_id,
            fallback_challenge_id=challenge_id,
            fallback_message_id=message_id,
            embedding_scheduler=embedding_scheduler,
        )
        reconciler.reconcile(candidates)

        complete_job(db, job_id, agent_result.model_config_id)
        logger.info(
            f"Extraction job {job_id} completed: {len(candidates)} candidate(s) "
            f"for conversation {conversation_id}"
        )

        return ExtractionResult(
            status=ExtractionStatus.COMPLETED,
            insights=_current_insights(db, conversation_id, thread_id),
            job_id=job_id,
            payload_kind=kind,
            step_completion=step_completion,
        )

    except Exception as e:
        db.rollback()
        fail_job(db, job_id, str(e) or e.__class__.__name__)
        raise


def detect_insights(
    db: Session,
    conversation_id: Any,
    thread_id: Any,
    prompt_variables: Dict[str, Any],
    calling_user_id: Any = None,
    message_id: Optional[str] = None,
    challenge_id: Optional[str] = None,
    executor: Optional[AgentExecutor] = None,
    embedding_scheduler: Optional[Callable[[uuid.UUID], None]] = None,
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Detect insights for a conversation and return the refreshed set.

    Safe to call repeatedly: concurrent and rapid calls return the current
    insights without running the agent again.

    Raises:
        ValueError: If ``conversation_id`` is not a UUID
    """
    conversation_uuid = parse_uuid(conversation_id)
    if conversation_uuid is None:
        raise ValueError(f"Invalid conversation id: {conversation_id}")

    result = run_extraction(
        db,
        conversation_uuid,
        prompt_variables or {},
        thread_id=parse_uuid(thread_id),
        current_user_id=parse_uuid(calling_user_id),
        message_id=message_id,
        challenge_id=challenge_id,
        executor=executor,
        embedding_scheduler=embedding_scheduler,
    )
    return {"insights": [serialize_insight(insight) for insight in result.insights]}
