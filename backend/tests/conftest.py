"""
SiteSurvey Backend — Test Configuration (conftest.py)
=======================================================

What:  Shared pytest fixtures for the entire test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.

Fixture Hierarchy:
    Function-scoped (created fresh for each test):
    ├── mock_db_session:  Mock async session (no real DB needed)
    ├── make_image:       Real Pillow-encoded image bytes
    ├── make_file:        IncomingFile factory
    ├── fake_storage:     In-memory RemoteStorageClient that records calls
    ├── orchestrator:     UploadOrchestrator over fake_storage, no retry waits
    ├── db_session:       Real AsyncSession on SQLite (tables created/dropped)
    └── test_client:      HTTPX AsyncClient against the app, local-disk storage
"""

import asyncio
import io
import os
import tempfile
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

# Override settings for testing BEFORE any app imports
# Why: Prevents tests from using a production database or storage bucket
_TMP_DIR = tempfile.mkdtemp(prefix="sitesurvey_test_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR}/test.db"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["STORAGE_ROOT"] = os.path.join(_TMP_DIR, "storage")
os.environ["RETRY_INITIAL_DELAY"] = "0"
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce noise during tests

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from PIL import Image

from app.services.file_service import IncomingFile
from app.services.retry import RetryPolicy
from app.services.storage_base import RemoteStorageClient
from app.services.upload_orchestrator import UploadOrchestrator

NO_WAIT = RetryPolicy(max_attempts=3, initial_delay=0.0, backoff_multiplier=2.0)


async def no_sleep(_seconds: float) -> None:
    return None


class FakeStorageClient(RemoteStorageClient):
    """
    In-memory storage backend.

    Attributes:
        objects:       logical path → bytes for every successful put
        put_calls:     logical paths in the order uploads started
        deleted:       every url passed to delete()
        fail_when:     predicate (path, content) deciding which puts raise
        max_in_flight: highest number of concurrent _put_once calls seen
    """

    service_name = "fake"

    def __init__(self, fail_when=None, delay: float = 0.0, **kwargs):
        kwargs.setdefault("retry_policy", NO_WAIT)
        kwargs.setdefault("sleep", no_sleep)
        super().__init__(**kwargs)
        self.objects: Dict[str, bytes] = {}
        self.put_calls: List[str] = []
        self.deleted: List[str] = []
        self.events: List[str] = []
        self.fail_when = fail_when
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.healthy = True

    async def _put_once(self, content, content_type, folder, filename, on_stage):
        path = f"{folder}/{filename}"
        self.put_calls.append(path)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_when is not None and self.fail_when(path, content):
                raise ConnectionError(f"simulated outage for {path}")
            self.objects[path] = content
            self.events.append(f"put:{path}")
            return f"https://files.example.com/{path}"
        finally:
            self.in_flight -= 1

    async def delete(self, url_or_ref: str) -> bool:
        self.deleted.append(url_or_ref)
        self.events.append(f"delete:{url_or_ref}")
        path = url_or_ref.replace("https://files.example.com/", "")
        return self.objects.pop(path, None) is not None

    async def get_stream(self, logical_path: str):
        yield self.objects[logical_path]

    async def health_check(self) -> bool:
        return self.healthy


def encode_image(
    size=(64, 48),
    fmt: str = "JPEG",
    mode: str = "RGB",
    color=(200, 30, 30),
) -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format=fmt)
    return buffer.getvalue()


# ══════════════════════════════════════════════════════════════════════════
# Function-Scoped Fixtures (created fresh for each test)
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def mock_db_session():
    """
    Provides a mock async database session.

    Usage:
        mock_db_session.execute.return_value.scalar_one_or_none.return_value = dealer
    """
    session = AsyncMock()
    session.execute = AsyncMock(return_value=MagicMock())
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.delete = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def make_image():
    """Factory for real image bytes: make_image(size=(4000, 3000), fmt="PNG")."""
    return encode_image


@pytest.fixture
def make_file():
    def _make(
        filename: str = "photo.jpg",
        content: Optional[bytes] = None,
        content_type: str = "image/jpeg",
        field_name: str = "photos",
    ) -> IncomingFile:
        return IncomingFile(
            filename=filename,
            content=encode_image() if content is None else content,
            content_type=content_type,
            field_name=field_name,
        )
    return _make


@pytest.fixture
def fake_storage():
    return FakeStorageClient()


@pytest.fixture
def orchestrator(fake_storage):
    return UploadOrchestrator(storage=fake_storage, batch_size=3, rollback_on_failure=False)


@pytest_asyncio.fixture
async def db_session():
    """
    Real AsyncSession on the SQLite test database.

    Tables are created before and dropped after every test so rows never
    leak between tests.
    """
    from app.database import Base, async_session_factory, engine
    from app.models import dealer, survey  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def test_client(tmp_path):
    """
    HTTPX AsyncClient talking to the app over ASGITransport.

    The database tables exist for the duration of the test; storage is a
    LocalStorageClient rooted in tmp_path, wired in via dependency_overrides.
    """
    from app import dependencies
    from app.database import Base, engine
    from app.main import app
    from app.models import dealer, survey  # noqa: F401
    from app.services.dealer_service import DealerService
    from app.services.local_storage import LocalStorageClient
    from app.services.survey_form_service import SurveyFormService
    from app.services.survey_service import SurveyService

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    storage = LocalStorageClient(storage_root=str(tmp_path / "storage"), retry_policy=NO_WAIT)
    orchestrator = UploadOrchestrator(storage=storage)
    dealer_service = DealerService(orchestrator)
    survey_service = SurveyService(orchestrator)
    form_service = SurveyFormService(dealer_service, survey_service, orchestrator)

    app.dependency_overrides[dependencies.get_storage_client] = lambda: storage
    app.dependency_overrides[dependencies.get_dealer_service] = lambda: dealer_service
    app.dependency_overrides[dependencies.get_survey_service] = lambda: survey_service
    app.dependency_overrides[dependencies.get_survey_form_service] = lambda: form_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
