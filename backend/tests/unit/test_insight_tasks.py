import numpy as np
import pytest

from app.models import ExtractionJob, Insight
from app.services import embeddings as embeddings_module
from app.services.embeddings import EmbeddingProvider, EmbeddingService
from app.tasks import insight_tasks


class DummyProvider(EmbeddingProvider):
    def embed_text(self, text: str) -> np.ndarray:
        if "fail" in text:
            raise RuntimeError("model crashed")
        return np.array([3.0, 4.0], dtype=np.float32)

    def get_model_info(self) -> dict:
        return {"provider": "dummy", "model": "dummy", "dimensions": 2}


@pytest.fixture
def task_session(db, monkeypatch):
    monkeypatch.setattr(insight_tasks, "SessionLocal", lambda: db)
    return db


@pytest.fixture
def dummy_embeddings(monkeypatch):
    service = EmbeddingService(provider=DummyProvider())
    monkeypatch.setattr(embeddings_module, "get_embedding_service", lambda: service)
    return service


def test_generate_embedding_is_normalized():
    service = EmbeddingService(provider=DummyProvider())

    assert service.generate_embedding("hello") == pytest.approx([0.6, 0.8])
    assert service.get_dimensions() == 2


def test_generate_embedding_rejects_empty_text():
    with pytest.raises(ValueError):
        EmbeddingService(provider=DummyProvider()).generate_embedding("   ")


def test_task_stores_both_embeddings(task_session, dummy_embeddings, insight_types, conversation):
    insight = Insight(
        conversation_id=conversation.id,
        insight_type_id=insight_types["idea"].id,
        content="Users want SSO",
        summary="SSO",
    )
    task_session.add(insight)
    task_session.commit()

    result = insight_tasks.generate_insight_embeddings(str(insight.id))

    assert result == {"content": True, "summary": True}
    stored = task_session.get(Insight, insight.id)
    assert stored.content_embedding == pytest.approx([0.6, 0.8])
    assert stored.summary_embedding == pytest.approx([0.6, 0.8])
    assert stored.embedding_updated_at is not None


def test_task_keeps_going_when_one_field_fails(task_session, dummy_embeddings, insight_types, conversation):
    insight = Insight(
        conversation_id=conversation.id,
        insight_type_id=insight_types["idea"].id,
        content="this will fail",
        summary="fine",
    )
    task_session.add(insight)
    task_session.commit()

    result = insight_tasks.generate_insight_embeddings(str(insight.id))

    assert result == {"content": False, "summary": True}
    stored = task_session.get(Insight, insight.id)
    assert stored.content_embedding is None
    assert stored.summary_embedding == pytest.approx([0.6, 0.8])


def test_task_skips_missing_insight(task_session, dummy_embeddings):
    import uuid

    assert insight_tasks.generate_insight_embeddings(str(uuid.uuid4())) == {"content": False, "summary": False}


def test_schedule_swallows_dispatch_errors(monkeypatch):
    def _broken_apply_async(*args, **kwargs):
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(insight_tasks.generate_insight_embeddings, "apply_async", _broken_apply_async)

    insight_tasks.schedule_insight_embeddings("some-id")


def test_schedule_passes_string_id(monkeypatch):
    calls = []
    monkeypatch.setattr(
        insight_tasks.generate_insight_embeddings,
        "apply_async",
        lambda *args, **kwargs: calls.append(kwargs),
    )

    import uuid

    insight_id = uuid.uuid4()
    insight_tasks.schedule_insight_embeddings(insight_id)

    assert calls == [{"args": [str(insight_id)], "retry": False}]


def test_expire_task(task_session, conversation):
    from datetime import datetime, timedelta

    task_session.add(
        ExtractionJob(
            conversation_id=conversation.id,
            status="processing",
            attempts=1,
            started_at=datetime.utcnow() - timedelta(minutes=2),
        )
    )
    task_session.commit()

    assert insight_tasks.expire_stale_extraction_jobs() == {"expired": 1}
