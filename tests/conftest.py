"""Pytest configuration and fixtures."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ad_batch.config import Settings
from ad_batch.core.exceptions import ProviderError
from ad_batch.db.database import init_db
from ad_batch.services.batch_scheduler import BatchScheduler
from ad_batch.services.change_broker import ChangeBroker
from ad_batch.services.credential_service import CredentialService
from ad_batch.services.generation_client import TASK_COMPLETED, TASK_PROCESSING, TaskStatus
from ad_batch.services.job_orchestrator import JobOrchestrator
from ad_batch.services.state_store import StateStore

# Test database - in-memory SQLite with StaticPool for connection sharing
TEST_DATABASE_URL = "sqlite:///:memory:"

OWNER_ID = "owner-1"
SOURCE_IMAGE_URL = "https://cdn.example.com/uploads/product.png"


class FakeGenerationClient:
    """In-memory generation provider.

    Submissions for ``fail_styles`` raise ProviderError. Status checks return
    ``task_states`` in order, then completion (or ``processing`` forever when
    ``stuck``). ``on_status`` runs before each status check.
    """

    def __init__(self, fail_styles=(), task_states=None, stuck=False, on_status=None):
        self.fail_styles = set(fail_styles)
        self.task_states = list(task_states or [])
        self.stuck = stuck
        self.on_status = on_status
        self.submitted: list[dict] = []
        self.status_calls: list[str] = []
        self.closed = False

    async def submit(self, variant, params):
        if variant.get("style_id") in self.fail_styles:
            raise ProviderError("KIE.AI API error: 500 - upstream unavailable")
        task_id = f"task-{len(self.submitted) + 1}"
        self.submitted.append({"task_id": task_id, "variant": variant, "params": params})
        return task_id

    async def status(self, task_id):
        self.status_calls.append(task_id)
        if self.on_status is not None:
            self.on_status(task_id)
        if self.task_states:
            return self.task_states.pop(0)
        if self.stuck:
            return TaskStatus(status=TASK_PROCESSING)
        return TaskStatus(status=TASK_COMPLETED, result_ref=f"https://cdn.example.com/{task_id}.png")

    async def aclose(self):
        self.closed = True


class FakeClock:
    """Monotonic clock advanced by the injected sleep."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


def make_variants(count: int, prefix: str = "style") -> list[dict]:
    return [
        {
            "style_id": f"{prefix}-{i}",
            "style_name": f"Style {i}",
            "platform": "instagram",
            "aspect_ratio": "1:1",
            "prompt": "A product on a marble table",
        }
        for i in range(1, count + 1)
    ]


@pytest.fixture(scope="function")
def settings() -> Settings:
    """Settings tuned for fast, deterministic runs."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        kie_api_key="platform-key",
        use_arq_worker=False,
        item_poll_interval_seconds=0,
        item_poll_timeout_seconds=5,
        scheduler_wave_size=2,
        job_cleanup_interval_seconds=3600,
        cache_refresh_interval_seconds=3600,
    )


@pytest.fixture(scope="function")
def engine():
    """Fresh in-memory database per test."""
    test_engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(test_engine, "connect")
    def enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    init_db(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def broker() -> ChangeBroker:
    return ChangeBroker(queue_size=100)


@pytest.fixture(scope="function")
def store(session_factory, broker) -> StateStore:
    return StateStore(session_factory, broker)


@pytest.fixture(scope="function")
def credentials(store, settings) -> CredentialService:
    return CredentialService(store, settings)


@pytest.fixture(scope="function")
def orchestrator(store, credentials, settings) -> JobOrchestrator:
    return JobOrchestrator(store, credentials, settings)


@pytest.fixture(scope="function")
def owner_id() -> str:
    return OWNER_ID


@pytest.fixture(scope="function")
def make_job(orchestrator):
    """Create a job with ``count`` variants for OWNER_ID."""

    def _make_job(count: int = 3, owner_id: str = OWNER_ID, **input_params):
        params = {"source_image_url": SOURCE_IMAGE_URL, "quality": "2K", **input_params}
        return orchestrator.create_job(owner_id, params, make_variants(count))

    return _make_job


@pytest.fixture(scope="function")
def make_client():
    """Build a FakeGenerationClient."""
    return FakeGenerationClient


@pytest.fixture(scope="function")
def make_scheduler(store, orchestrator, credentials, settings):
    """Build a BatchScheduler whose client factory always returns ``client``."""

    def _make_scheduler(client, scheduler_cls=BatchScheduler, **processor_options):
        return scheduler_cls(
            store,
            orchestrator,
            credentials,
            lambda api_key: client,
            settings=settings,
            **processor_options,
        )

    return _make_scheduler


@pytest.fixture(scope="function")
def fake_client() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture(scope="function")
def pipeline(settings, session_factory, broker, fake_client):
    """Pipeline on the test database, generating through fake_client."""
    from ad_batch.services.factory import build_pipeline

    return build_pipeline(
        settings,
        session_factory=session_factory,
        broker=broker,
        client_factory=lambda api_key: fake_client,
    )


@pytest.fixture(scope="function")
def client(pipeline):
    """Create test client running on the test pipeline."""
    from ad_batch.main import app

    app.state.pipeline = pipeline

    with TestClient(app) as test_client:
        yield test_client

    app.state.pipeline = None


@pytest.fixture(scope="function")
def owner_headers() -> dict:
    """Owner identification headers."""
    return {"X-Owner-Id": OWNER_ID}


@pytest.fixture(scope="function")
def variant_factory():
    return make_variants


@pytest.fixture(scope="function")
def fake_clock() -> FakeClock:
    return FakeClock()
