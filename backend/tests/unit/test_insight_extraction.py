"""
Unit tests for the single-flight insight extraction coordinator.

Tests cover:
- Active-job, stuck-job and cooldown handling
- Unique-conflict resolution on the job lease
- Agent output validation and log recovery
- End-to-end detection against SQLite
"""
import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from app.models import AgentLog, ConversationPlan, ConversationPlanStep, ExtractionJob, Insight
from app.services import insight_extraction
from app.services.agent_executor import AgentConfig, AgentExecutionResult, AgentExecutor, AgentResponseError
from app.services.insight_extraction import (
    ExtractionStatus,
    detect_insights,
    expire_stale_jobs,
    run_extraction,
)
from app.services.insight_reconciler import InsightConfigurationError
from app.services.payload_recovery import PayloadKind

INSIGHTS_JSON = '{"insights": [{"content": "Users want SSO", "type": "idea"}]}'


class FakeExecutor:
    """Stands in for the agent executor and counts calls."""

    def __init__(self, content=INSIGHTS_JSON, raw=None, log_id=None, model_config_id="fake:model", on_execute=None):
        self.content = content
        self.raw = raw
        self.log_id = log_id
        self.model_config_id = model_config_id
        self.on_execute = on_execute
        self.calls = 0

    def execute(self, db, conversation_id, variables, message_id=None):
        self.calls += 1
        if self.on_execute:
            self.on_execute(db, conversation_id)
        return AgentExecutionResult(
            content=self.content,
            raw=self.raw,
            model_config_id=self.model_config_id,
            log_id=self.log_id,
        )


class ExplodingExecutor:
    def execute(self, db, conversation_id, variables, message_id=None):
        raise AssertionError("agent must not run")


def _add_job(db, conversation, status, **fields):
    job = ExtractionJob(conversation_id=conversation.id, status=status, attempts=1, **fields)
    db.add(job)
    db.commit()
    return job


def _run(db, conversation, executor, **kwargs):
    return run_extraction(
        db,
        conversation.id,
        {"latest_message": "hello"},
        executor=executor,
        embedding_scheduler=lambda insight_id: None,
        **kwargs,
    )


class TestSingleFlight:
    def test_reentrant_call_sees_active_job(self, db, insight_types, conversation):
        nested_results = []

        def _reenter(session, conversation_id):
            nested_results.append(
                run_extraction(session, conversation_id, {}, executor=ExplodingExecutor())
            )

        executor = FakeExecutor(on_execute=_reenter)

        result = _run(db, conversation, executor)

        assert executor.calls == 1
        assert result.status == ExtractionStatus.COMPLETED
        [nested] = nested_results
        assert nested.status == ExtractionStatus.SKIPPED_ACTIVE
        assert nested.job_id == result.job_id
        assert not nested.ran_agent

    def test_active_job_returns_current_insights(self, db, insight_types, conversation):
        existing = Insight(
            conversation_id=conversation.id, insight_type_id=insight_types["idea"].id, content="Known"
        )
        db.add(existing)
        job = _add_job(db, conversation, "processing", started_at=datetime.utcnow())

        result = _run(db, conversation, ExplodingExecutor())

        assert result.status == ExtractionStatus.SKIPPED_ACTIVE
        assert result.job_id == job.id
        assert [insight.content for insight in result.insights] == ["Known"]

    def test_stuck_job_is_expired_and_replaced(self, db, insight_types, conversation):
        stuck = _add_job(db, conversation, "processing", started_at=datetime.utcnow() - timedelta(seconds=60))
        executor = FakeExecutor()

        result = _run(db, conversation, executor)

        db.refresh(stuck)
        assert stuck.status == "failed"
        assert stuck.last_error == "Job timed out after 30 seconds"
        assert stuck.finished_at is not None
        assert result.status == ExtractionStatus.COMPLETED
        assert result.job_id != stuck.id
        assert executor.calls == 1

    def test_recent_completion_suppresses_run(self, db, insight_types, conversation):
        _add_job(db, conversation, "completed", finished_at=datetime.utcnow() - timedelta(seconds=2))

        result = _run(db, conversation, ExplodingExecutor())

        assert result.status == ExtractionStatus.SKIPPED_COOLDOWN
        assert result.job_id is None

    def test_old_completion_does_not_suppress_run(self, db, insight_types, conversation):
        _add_job(db, conversation, "completed", finished_at=datetime.utcnow() - timedelta(seconds=30))
        executor = FakeExecutor()

        result = _run(db, conversation, executor)

        assert result.status == ExtractionStatus.COMPLETED
        assert executor.calls == 1

    def test_failed_job_does_not_block(self, db, insight_types, conversation):
        _add_job(db, conversation, "failed", finished_at=datetime.utcnow())

        result = _run(db, conversation, FakeExecutor())

        assert result.status == ExtractionStatus.COMPLETED


class TestLeaseConflict:
    def test_conflict_defers_to_winner(self, db, insight_types, conversation, monkeypatch):
        winner = _add_job(db, conversation, "processing", started_at=datetime.utcnow())
        monkeypatch.setattr(insight_extraction, "find_live_job", lambda session, conversation_id: None)

        result = _run(db, conversation, ExplodingExecutor())

        assert result.status == ExtractionStatus.SKIPPED_CONFLICT
        assert result.job_id == winner.id
        assert db.query(ExtractionJob).count() == 1

    def test_conflict_without_winner_raises(self, db, conversation, monkeypatch):
        def _conflicting_insert(session, conversation_id, message_id=None):
            raise IntegrityError(
                "INSERT", {}, Exception("UNIQUE constraint failed: insight_extraction_jobs.conversation_id")
            )

        monkeypatch.setattr(insight_extraction, "create_job", _conflicting_insert)

        with pytest.raises(IntegrityError):
            _run(db, conversation, ExplodingExecutor())

    def test_other_integrity_errors_propagate(self, db, conversation, monkeypatch):
        def _broken_insert(session, conversation_id, message_id=None):
            raise IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: x"))

        monkeypatch.setattr(insight_extraction, "create_job", _broken_insert)

        with pytest.raises(IntegrityError):
            _run(db, conversation, ExplodingExecutor())


class TestAgentOutput:
    def test_voice_agent_fails_job(self, db, insight_types, conversation):
        voice = AgentExecutor(AgentConfig(name="voice", system_prompt="", user_prompt="", voice=True), llm=object())

        with pytest.raises(AgentResponseError, match="Voice agent"):
            _run(db, conversation, voice)

        [job] = db.query(ExtractionJob).all()
        assert job.status == "failed"
        assert "Voice agent" in job.last_error

    def test_empty_result_recovered_from_log(self, db, insight_types, conversation):
        log = AgentLog(
            conversation_id=conversation.id,
            interaction_type="ask.insight.detection",
            status="completed",
            response_payload={"content": [{"type": "text", "text": '{"insights": [{"content": "Recovered"}]}'}]},
        )
        db.add(log)
        db.commit()

        result = _run(db, conversation, FakeExecutor(content=None, log_id=log.id))

        assert result.status == ExtractionStatus.COMPLETED
        assert [insight.content for insight in result.insights] == ["Recovered"]

    def test_empty_result_with_failed_log(self, db, insight_types, conversation):
        log = AgentLog(
            conversation_id=conversation.id,
            interaction_type="ask.insight.detection",
            status="failed",
            error_message="rate limited",
        )
        db.add(log)
        db.commit()

        with pytest.raises(AgentResponseError, match="Agent execution failed"):
            _run(db, conversation, FakeExecutor(content=None, log_id=log.id))

        [job] = db.query(ExtractionJob).all()
        assert job.status == "failed"
        assert "rate limited" in job.last_error

    def test_empty_result_without_log(self, db, insight_types, conversation):
        with pytest.raises(AgentResponseError, match="not found"):
            _run(db, conversation, FakeExecutor(content=None, log_id=uuid.uuid4()))

    def test_foreign_payload_completes_without_insights(self, db, insight_types, conversation):
        result = _run(db, conversation, FakeExecutor(content='{"keywords": ["pricing"]}'))

        assert result.status == ExtractionStatus.NO_CANDIDATES
        assert result.payload_kind == PayloadKind.FOREIGN
        assert result.insights == []
        [job] = db.query(ExtractionJob).all()
        assert job.status == "completed"

    def test_missing_types_fails_job(self, db, conversation):
        with pytest.raises(InsightConfigurationError):
            _run(db, conversation, FakeExecutor())

        [job] = db.query(ExtractionJob).all()
        assert job.status == "failed"
        assert job.last_error == "No insight types configured"
        assert job.finished_at is not None

    def test_provider_error_fails_job_and_propagates(self, db, insight_types, conversation):
        def _boom(session, conversation_id):
            raise RuntimeError("provider unavailable")

        with pytest.raises(RuntimeError):
            _run(db, conversation, FakeExecutor(on_execute=_boom))

        [job] = db.query(ExtractionJob).all()
        assert job.status == "failed"
        assert job.last_error == "provider unavailable"


class TestCompletedRun:
    def test_stamps_insights_and_job(self, db, insight_types, conversation, thread, active_user):
        plan = ConversationPlan(conversation_thread_id=thread.id)
        plan.steps = [
            ConversationPlanStep(step_identifier="step_1", step_order=1, title="Intro", status="completed"),
            ConversationPlanStep(step_identifier="step_2", step_order=2, title="Pains", status="active"),
        ]
        db.add(plan)
        db.commit()
        active_step = plan.steps[1]

        content = "STEP_COMPLETE:step_2\n```json\n" + INSIGHTS_JSON + "\n```"
        result = _run(
            db,
            conversation,
            FakeExecutor(content=content),
            thread_id=thread.id,
            current_user_id=active_user.id,
            message_id="msg-9",
        )

        assert result.status == ExtractionStatus.COMPLETED
        assert result.step_completion == "step_2"
        [insight] = result.insights
        assert insight.plan_step_id == active_step.id
        assert insight.challenge_id == "challenge-1"
        assert insight.source_message_id == "msg-9"
        assert insight.conversation_thread_id == thread.id
        assert insight.user_id == active_user.id

        job = db.get(ExtractionJob, result.job_id)
        assert job.status == "completed"
        assert job.model_config_id == "fake:model"
        assert job.message_id == "msg-9"

    def test_explicit_challenge_wins(self, db, insight_types, conversation):
        result = _run(db, conversation, FakeExecutor(), challenge_id="challenge-override")

        assert result.insights[0].challenge_id == "challenge-override"


class TestDetectInsights:
    def test_returns_serialized_thread_insights(self, db, insight_types, conversation, thread, other_thread):
        db.add(
            Insight(
                conversation_id=conversation.id,
                conversation_thread_id=other_thread.id,
                insight_type_id=insight_types["idea"].id,
                content="Elsewhere",
            )
        )
        db.commit()

        result = detect_insights(
            db,
            str(conversation.id),
            str(thread.id),
            {"latest_message": "We lose deals on pricing"},
            executor=FakeExecutor(),
            embedding_scheduler=lambda insight_id: None,
        )

        assert list(result) == ["insights"]
        [insight] = result["insights"]
        assert insight["content"] == "Users want SSO"
        assert insight["type"] == "idea"
        assert insight["thread_id"] == str(thread.id)
        assert insight["authors"] == []
        assert insight["kpis"] == []

    def test_second_call_returns_same_set_without_agent(self, db, insight_types, conversation):
        first = detect_insights(
            db, conversation.id, None, {}, executor=FakeExecutor(), embedding_scheduler=lambda insight_id: None
        )
        second = detect_insights(db, conversation.id, None, {}, executor=ExplodingExecutor())

        assert [i["id"] for i in second["insights"]] == [i["id"] for i in first["insights"]]

    def test_invalid_conversation_id(self, db):
        with pytest.raises(ValueError):
            detect_insights(db, "not-a-uuid", None, {})


def _expire_active_job(session, conversation_id):
    insight_extraction.expire_job(session, insight_extraction.get_active_job(session, conversation_id))


class TestExpiryDuringRun:
    def test_late_result_is_discarded(self, db, insight_types, conversation):
        executor = FakeExecutor(
            content='{"insights": [{"content": "late result"}]}', on_execute=_expire_active_job
        )

        result = _run(db, conversation, executor)

        assert result.status == ExtractionStatus.EXPIRED
        assert result.ran_agent
        assert result.insights == []
        job = db.get(ExtractionJob, result.job_id)
        db.refresh(job)
        assert job.status == "failed"
        assert job.last_error == "Job timed out after 30 seconds"
        assert db.query(Insight).count() == 0

    def test_replacement_run_owns_the_conversation(self, db, insight_types, conversation):
        nested_results = []

        def _expire_and_rerun(session, conversation_id):
            _expire_active_job(session, conversation_id)
            nested_results.append(
                run_extraction(
                    session, conversation_id, {}, executor=FakeExecutor(), embedding_scheduler=lambda insight_id: None
                )
            )

        executor = FakeExecutor(
            content='{"insights": [{"content": "late result"}]}', on_execute=_expire_and_rerun
        )

        result = _run(db, conversation, executor)

        [nested] = nested_results
        assert nested.status == ExtractionStatus.COMPLETED
        assert result.status == ExtractionStatus.EXPIRED
        assert [insight.content for insight in result.insights] == ["Users want SSO"]
        assert [row.content for row in db.query(Insight).all()] == ["Users want SSO"]

        outer_job = db.get(ExtractionJob, result.job_id)
        nested_job = db.get(ExtractionJob, nested.job_id)
        db.refresh(outer_job)
        db.refresh(nested_job)
        assert outer_job.status == "failed"
        assert nested_job.status == "completed"

    def test_error_after_expiry_keeps_timeout_reason(self, db, insight_types, conversation):
        executor = FakeExecutor(content=None, raw=None, log_id=None, on_execute=_expire_active_job)

        with pytest.raises(AgentResponseError):
            _run(db, conversation, executor)

        job = db.query(ExtractionJob).one()
        assert job.status == "failed"
        assert job.last_error == "Job timed out after 30 seconds"


class TestTerminalTransitions:
    def test_complete_does_not_revive_failed_job(self, db, conversation):
        job = _add_job(db, conversation, "failed", last_error="Job timed out after 30 seconds")

        assert insight_extraction.complete_job(db, job.id, "fake:model") is False

        db.refresh(job)
        assert job.status == "failed"
        assert job.model_config_id is None
        assert job.last_error == "Job timed out after 30 seconds"

    def test_fail_does_not_overwrite_completed_job(self, db, conversation):
        job = _add_job(db, conversation, "completed", finished_at=datetime.utcnow())

        assert insight_extraction.fail_job(db, job.id, "boom") is False

        db.refresh(job)
        assert job.status == "completed"
        assert job.last_error is None

    def test_processing_job_completes(self, db, conversation):
        job = _add_job(db, conversation, "processing", started_at=datetime.utcnow())

        assert insight_extraction.complete_job(db, job.id, "fake:model") is True

        db.refresh(job)
        assert job.status == "completed"
        assert job.model_config_id == "fake:model"
        assert job.finished_at is not None

    def test_expire_skips_finished_job(self, db, conversation):
        job = _add_job(db, conversation, "completed", finished_at=datetime.utcnow())

        assert insight_extraction.expire_job(db, job) is False

        db.refresh(job)
        assert job.status == "completed"


def test_expire_stale_jobs(db, conversation):
    stale = _add_job(db, conversation, "processing", started_at=datetime.utcnow() - timedelta(minutes=5))

    assert expire_stale_jobs(db) == 1

    db.refresh(stale)
    assert stale.status == "failed"
    assert expire_stale_jobs(db) == 0
