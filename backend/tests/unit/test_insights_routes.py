import uuid
from datetime import datetime

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.routes import insights as insights_routes
from app.api.routes import jobs as jobs_routes
from app.db.base import get_db
from app.models import ExtractionJob, Insight
from app.services.agent_executor import AgentExecutionResult
from app.services.insight_extraction import detect_insights


class _StaticExecutor:
    def __init__(self, content: str) -> None:
        self.content = content

    def execute(self, db, conversation_id, variables, message_id=None):  # noqa: ANN001
        return AgentExecutionResult(content=self.content, raw=None, model_config_id="fake:model", log_id=None)


def _create_test_app(db) -> FastAPI:  # noqa: ANN001
    app = FastAPI()
    app.include_router(insights_routes.router, prefix="/api/v1/conversations")
    app.include_router(jobs_routes.router, prefix="/api/v1/jobs")

    def _override_db():
        yield db

    app.dependency_overrides[get_db] = _override_db
    return app


@pytest.fixture
def client(db) -> TestClient:  # noqa: ANN001
    return TestClient(_create_test_app(db))


def test_detect_returns_refreshed_insights(
    client, monkeypatch: pytest.MonkeyPatch, insight_types, conversation, thread, active_user
) -> None:
    def _detect(db, conversation_id, thread_id, variables, user_id, **kwargs):  # noqa: ANN001, ANN003
        return detect_insights(
            db,
            conversation_id,
            thread_id,
            variables,
            user_id,
            executor=_StaticExecutor(
                '{"insights": [{"content": "Checkout is slow", "type": "risk", '
                '"kpis": [{"label": "Latency", "value": 2.5}], "authors": [{"name": "you"}]}]}'
            ),
            embedding_scheduler=lambda insight_id: None,
            **kwargs,
        )

    monkeypatch.setattr(insights_routes, "detect_insights", _detect, raising=True)

    response = client.post(
        f"/api/v1/conversations/{conversation.id}/insights/detect",
        json={
            "thread_id": str(thread.id),
            "user_id": str(active_user.id),
            "message_id": "msg-3",
            "variables": {"latest_message": "Checkout takes forever"},
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    [insight] = body["data"]["insights"]
    assert insight["content"] == "Checkout is slow"
    assert insight["type"] == "risk"
    assert insight["thread_id"] == str(thread.id)
    assert insight["source_message_id"] == "msg-3"
    assert insight["challenge_id"] == "challenge-1"
    assert insight["kpis"][0]["label"] == "Latency"
    assert insight["kpis"][0]["value"] == 2.5
    assert [author["user_id"] for author in insight["authors"]] == [str(active_user.id)]


def test_detect_failure_is_structured(client, monkeypatch: pytest.MonkeyPatch, conversation) -> None:
    def _explode(*args, **kwargs):  # noqa: ANN002, ANN003
        raise RuntimeError("agent exploded")

    monkeypatch.setattr(insights_routes, "detect_insights", _explode, raising=True)

    response = client.post(f"/api/v1/conversations/{conversation.id}/insights/detect", json={})

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "agent exploded"}


def test_detect_unknown_conversation(client) -> None:
    response = client.post(f"/api/v1/conversations/{uuid.uuid4()}/insights/detect", json={})

    assert response.status_code == 404


def test_list_insights_filters_by_thread(client, db, insight_types, conversation, thread, other_thread) -> None:
    for target, content in ((thread, "Mine"), (other_thread, "Theirs")):
        db.add(
            Insight(
                conversation_id=conversation.id,
                conversation_thread_id=target.id,
                insight_type_id=insight_types["question"].id,
                content=content,
            )
        )
    db.commit()

    everything = client.get(f"/api/v1/conversations/{conversation.id}/insights")
    scoped = client.get(f"/api/v1/conversations/{conversation.id}/insights", params={"thread_id": str(thread.id)})

    assert everything.status_code == 200
    assert sorted(i["content"] for i in everything.json()["insights"]) == ["Mine", "Theirs"]
    assert [i["content"] for i in scoped.json()["insights"]] == ["Mine"]
    assert scoped.json()["insights"][0]["type"] == "question"


def test_job_status(client, db, conversation) -> None:
    job = ExtractionJob(
        conversation_id=conversation.id,
        status="failed",
        attempts=1,
        last_error="Job timed out after 30 seconds",
        started_at=datetime.utcnow(),
        finished_at=datetime.utcnow(),
    )
    db.add(job)
    db.commit()

    response = client.get(f"/api/v1/jobs/{job.id}")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "failed"
    assert payload["last_error"] == "Job timed out after 30 seconds"
    assert payload["conversation_id"] == str(conversation.id)


def test_job_status_not_found(client) -> None:
    assert client.get(f"/api/v1/jobs/{uuid.uuid4()}").status_code == 404
