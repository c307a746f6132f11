import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import DEFAULT_RESOLUTION_CONFIG_DIR, Settings
from app.errors import AIServiceError
from app.models.base import Base
from app.models.message import Message
from app.pipeline import DocumentResolutionPipeline
from app.resolution_config.loader import load_resolution_config
from app.schemas.ai import AIExtraction
# Import all models so they register with Base.metadata for create_all
import app.models  # noqa: F401

# In-memory SQLite per test (no Postgres dependency needed for unit tests)
TEST_DATABASE_URL = "sqlite+aiosqlite://"

BASE_TIME = datetime(2025, 12, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def resolution_config():
    return load_resolution_config(DEFAULT_RESOLUTION_CONFIG_DIR)


@pytest.fixture
def test_settings():
    return Settings(
        anthropic_api_key="",
        sentry_dsn="",
        batch_concurrency=1,
        ai_batch_pause_seconds=0,
        backfill_page_size=2,
    )


@pytest.fixture
async def test_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest correctly
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def file_session_factory(tmp_path):
    """File-backed database; concurrent sessions get their own connections."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'resolution.db'}",
        echo=False,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    # Writers queue on the database lock instead of failing with SQLITE_BUSY
    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


class FakeAI:
    """Stands in for ClaudeService; returns canned responses and counts calls."""

    def __init__(self, classification=None, extraction=None, fail=False):
        self.classification = classification
        self.extraction = extraction or AIExtraction()
        self.fail = fail
        self.classify_calls = 0
        self.extract_calls = 0

    async def classify(self, *, subject, body, direction):
        self.classify_calls += 1
        if self.fail or self.classification is None:
            raise AIServiceError("AI collaborator unavailable")
        return self.classification

    async def extract(self, *, subject, body, attachment_text="", direction):
        self.extract_calls += 1
        if self.fail:
            raise AIServiceError("AI collaborator unavailable")
        return self.extraction


@pytest.fixture
def make_ai():
    return FakeAI


@pytest.fixture
def pipeline(test_settings, resolution_config):
    return DocumentResolutionPipeline(test_settings, config=resolution_config)


@pytest.fixture
def make_message(db_session):
    """Insert a message; keyword overrides for any column, `minutes` offsets received_at."""

    async def _make(minutes: int = 0, **overrides) -> Message:
        values = {
            "id": uuid.uuid4(),
            "sender_address": "noreply@maersk.com",
            "sender_name": None,
            "apparent_sender": None,
            "subject": "",
            "body_text": "",
            "attachment_text": "",
            "received_at": BASE_TIME + timedelta(minutes=minutes),
        }
        values.update(overrides)
        message = Message(**values)
        db_session.add(message)
        await db_session.flush()
        return message

    return _make


@pytest.fixture
async def client(db_session, pipeline, session_factory):
    from app.database import get_db
    from app.dependencies import get_resolution_pipeline, get_session_factory
    from app.main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_resolution_pipeline] = lambda: pipeline
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
