"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from timetiles.core.config import GeocodingSettings, ImportSettings, Settings, get_settings
from timetiles.database import configure_engine, get_db
from timetiles.main import app
from timetiles.models import import_all_models
from timetiles.models.audit_log import AuditLog
from timetiles.models.catalog import Catalog
from timetiles.models.dataset import Dataset
from timetiles.models.event import Event
from timetiles.models.geocoding_provider import GeocodingProvider
from timetiles.models.import_file import ImportFile
from timetiles.models.import_job import ImportJob
from timetiles.models.location_cache import LocationCache
from timetiles.models.quota_usage import QuotaUsage
from timetiles.models.scheduled_import import ScheduledImport
from timetiles.models.schema_version import SchemaVersion
from timetiles.models.url_fetch_cache import UrlFetchCache
from timetiles.schemas.jsonb_types import ProviderConfig
from timetiles.services import geocoding_service
from timetiles.services.geocoding_providers import GeocodeResult, GeocodingAdapter, NoGeocodeResultError

# Test database URL (using SQLite for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"

# Children first so foreign keys never dangle between tests
CLEANUP_ORDER = [
    AuditLog,
    Event,
    QuotaUsage,
    UrlFetchCache,
    LocationCache,
    GeocodingProvider,
    ImportJob,
    SchemaVersion,
    ImportFile,
    ScheduledImport,
    Dataset,
    Catalog,
]


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Test settings with test database."""
    return Settings(database_url=TEST_DATABASE_URL, debug=True)


@pytest.fixture
def import_settings(tmp_path) -> ImportSettings:
    """Import settings with small batches and a throwaway upload directory."""
    return ImportSettings(
        batch_size=50,
        duplicate_check_chunk_size=50,
        upload_dir=str(tmp_path / "uploads"),
    )


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    """Keep files uploaded through the API out of the working tree."""
    target = tmp_path / "api-uploads"
    monkeypatch.setattr(get_settings().imports, "upload_dir", str(target))
    return target


@pytest.fixture
async def test_engine(test_settings: Settings):
    """Create test database engine."""
    engine = configure_engine(create_async_engine(TEST_DATABASE_URL, echo=False, future=True))

    # Every table model must be registered with SQLModel.metadata before create_all
    import_all_models()

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine (used by the worker and scheduler)."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for each test with proper cleanup."""
    async with session_factory() as session:
        yield session

        await session.rollback()
        for model in CLEANUP_ORDER:
            await session.execute(model.__table__.delete())
        await session.commit()


@pytest.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


def actor_headers(actor_id: str = "tester", trust_level: int = 2) -> dict[str, str]:
    """Headers the upstream auth layer would attach to a request."""
    return {"X-Actor-Id": actor_id, "X-Actor-Trust-Level": str(trust_level)}


@pytest.fixture
def headers() -> dict[str, str]:
    return actor_headers()


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
async def catalog(db_session: AsyncSession) -> Catalog:
    catalog = Catalog(name="City Events", slug="city-events", created_by="tester")
    db_session.add(catalog)
    await db_session.commit()
    await db_session.refresh(catalog)
    return catalog


@pytest.fixture
async def dataset(db_session: AsyncSession, catalog: Catalog) -> Dataset:
    dataset = Dataset(
        catalog_id=catalog.id,
        name="Concerts",
        slug="concerts",
        id_strategy={"type": "external", "external_id_path": "id", "duplicate_strategy": "skip"},
        created_by="tester",
    )
    db_session.add(dataset)
    await db_session.commit()
    await db_session.refresh(dataset)
    return dataset


# =============================================================================
# Geocoding without the network
# =============================================================================


class FakeAdapter(GeocodingAdapter):
    """Answers from a fixed address book and records every call."""

    def __init__(self, name: str, settings: GeocodingSettings, answers: dict[str, tuple[float, float]]):
        super().__init__(name, ProviderConfig(), settings)
        self.answers = answers
        self.calls: list[str] = []
        self.failure: Exception | None = None

    async def _geocode(self, address: str) -> GeocodeResult:
        self.calls.append(address)
        if self.failure is not None:
            raise self.failure
        key = address.strip().lower()
        if key not in self.answers:
            raise NoGeocodeResultError(self.name, address)
        latitude, longitude = self.answers[key]
        return GeocodeResult(latitude=latitude, longitude=longitude, confidence=0.9, provider=self.name)


@pytest.fixture
async def fake_geocoder(db_session: AsyncSession, monkeypatch) -> FakeAdapter:
    """An enabled provider row whose adapter is replaced by FakeAdapter."""
    provider = GeocodingProvider(name="fake", provider_type="nominatim", priority=1)
    db_session.add(provider)
    await db_session.commit()

    adapter = FakeAdapter(
        "fake",
        get_settings().geocoding,
        {
            "riga": (56.9496, 24.1052),
            "berlin": (52.52, 13.405),
            "main st 1, springfield": (39.7817, -89.6501),
        },
    )
    monkeypatch.setattr(geocoding_service, "build_adapter", lambda provider, settings=None: adapter)
    return adapter
