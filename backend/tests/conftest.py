"""
Pytest configuration and shared fixtures for the insight pipeline.
"""
import os
import sys
from pathlib import Path

# Ensure backend package is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

# Module-level engine in app.db.base must not need a PostgreSQL driver
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

# Patch PostgreSQL UUID type BEFORE any imports
from sqlalchemy.dialects import postgresql
from sqlalchemy import JSON, TypeDecorator, CHAR
import uuid as uuid_module

class GUID(TypeDecorator):
    """Platform-independent GUID type. Uses PostgreSQL's UUID type, otherwise uses CHAR(36)."""
    impl = CHAR
    cache_ok = True

    def __init__(self, as_uuid=True):
        """Accept as_uuid parameter for compatibility with PostgreSQL UUID."""
        self.as_uuid = as_uuid
        super().__init__()

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(_original_uuid(as_uuid=self.as_uuid))
        else:
            return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif isinstance(value, uuid_module.UUID):
            return str(value)
        else:
            return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        elif isinstance(value, uuid_module.UUID):
            return value
        else:
            return uuid_module.UUID(value)

# Monkey patch BEFORE models are imported
_original_uuid = postgresql.UUID
postgresql.UUID = GUID
_original_jsonb = postgresql.JSONB
_original_array = postgresql.ARRAY


def _to_jsonable(value):  # noqa: ANN001
    if value is None:
        return None
    if isinstance(value, uuid_module.UUID):
        return str(value)
    if isinstance(value, list):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, tuple):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    return value


class JSONB(TypeDecorator):
    """SQLite-friendly stand-in for PostgreSQL JSONB."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(_original_jsonb())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect):
        return _to_jsonable(value)


class ARRAY(TypeDecorator):
    """SQLite-friendly stand-in for PostgreSQL ARRAY."""

    impl = JSON
    cache_ok = True

    def __init__(self, item_type=None, **kwargs):  # noqa: ANN001
        self.item_type = item_type
        super().__init__(**kwargs)

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(_original_array(self.item_type))
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect):
        return _to_jsonable(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        # Convert UUID strings back to UUID objects when the array element is UUID.
        if isinstance(self.item_type, GUID):
            return [
                v if isinstance(v, uuid_module.UUID) else uuid_module.UUID(str(v))
                for v in value
            ]
        return value


postgresql.JSONB = JSONB
postgresql.ARRAY = ARRAY

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


@pytest.fixture(scope="function")
def db():
    """
    Create a fresh database for each test.

    Uses an in-memory SQLite database for fast, isolated testing.
    UUID type has been patched at module level to work with SQLite.
    """
    from app.db.base import Base
    import app.models  # noqa: F401  (register every table on Base.metadata)

    # Create in-memory SQLite database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    Base.metadata.create_all(bind=engine)

    # Create session
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)



@pytest.fixture
def insight_types(db):
    """Seed the insight type vocabulary. Returns name -> InsightType."""
    from app.models import InsightType

    types = {name: InsightType(name=name) for name in ("idea", "question", "risk")}
    db.add_all(types.values())
    db.commit()
    return types


@pytest.fixture
def active_user(db):
    from app.models import User

    user = User(email="participant@example.com", full_name="Participant", is_active=True)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def inactive_user(db):
    from app.models import User

    user = User(email="former@example.com", full_name="Former", is_active=False)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def conversation(db):
    from app.models import Conversation

    conversation = Conversation(title="Onboarding interview", challenge_id="challenge-1")
    db.add(conversation)
    db.commit()
    return conversation


@pytest.fixture
def thread(db, conversation):
    from app.models import ConversationThread

    thread = ConversationThread(conversation_id=conversation.id)
    db.add(thread)
    db.commit()
    return thread


@pytest.fixture
def other_thread(db, conversation):
    from app.models import ConversationThread

    thread = ConversationThread(conversation_id=conversation.id)
    db.add(thread)
    db.commit()
    return thread


@pytest.fixture
def scheduled_embeddings():
    """Embedding scheduler stand-in that records insight ids."""

    class _Recorder(list):
        def __call__(self, insight_id):
            self.append(insight_id)

        def __bool__(self):
            # A callable must stay truthy even while no ids are recorded yet
            return True

    return _Recorder()
