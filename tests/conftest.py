import pytest

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from msp_sync.config import ConnectWiseConfig, settings
from msp_sync.core.connectwise_client import ConnectWiseClient
from msp_sync.core.rate_limiter import RateLimiter
from msp_sync.core.store import SyncStore
from msp_sync.database import create_engine, get_db, get_session_maker
from msp_sync.models import Base
from tests.cw_helpers import FakeConnectWise


@pytest.fixture()
async def engine(tmp_path):
    db_file = tmp_path / "test.db"
    eng = create_engine(f"sqlite+aiosqlite:///{db_file}")
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture()
async def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def db_session(engine, session_maker: async_sessionmaker[AsyncSession]):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with session_maker() as session:
        yield session


@pytest.fixture()
async def store(db_session, session_maker) -> SyncStore:
    return SyncStore(session_maker)


@pytest.fixture()
def fake_cw() -> FakeConnectWise:
    return FakeConnectWise()


@pytest.fixture()
def cw_config() -> ConnectWiseConfig:
    return ConnectWiseConfig(
        client_id="client-id",
        public_key="pub",
        private_key="priv",
        base_url="https://api-na.example.com",
        company_id="acme",
        codebase="v2024_1/",
    )


@pytest.fixture()
async def cw_client(cw_config, fake_cw):
    client = ConnectWiseClient(
        cw_config,
        page_size=1000,
        rate_limiter=RateLimiter(delay_ms=0, max_retries=0),
        transport=fake_cw.transport(),
    )
    try:
        yield client
    finally:
        await client.close()


@pytest.fixture()
def cw_settings(monkeypatch):
    """Complete ConnectWise settings with no request pacing."""
    monkeypatch.setattr(settings, "cw_client_id", "client-id")
    monkeypatch.setattr(settings, "cw_public_key", "pub")
    monkeypatch.setattr(settings, "cw_private_key", "priv")
    monkeypatch.setattr(settings, "cw_base_url", "api-na.example.com")
    monkeypatch.setattr(settings, "cw_company_id", "acme")
    monkeypatch.setattr(settings, "cw_codebase", "v2024_1/")
    monkeypatch.setattr(settings, "cw_api_delay_ms", 0)
    monkeypatch.setattr(settings, "allowed_engineer_identifiers", ["eng1", "eng2"])
    monkeypatch.setattr(settings, "service_board_names", ["HelpDesk (MS)"])
    return settings


@pytest.fixture()
async def app(engine, session_maker: async_sessionmaker[AsyncSession], fake_cw):
    """
    FastAPI app with:
    - DB dependencies overridden to use a per-test SQLite DB
    - ConnectWise requests served by the in-memory fake
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    from msp_sync.main import app as fastapi_app
    from msp_sync.api.sync import get_connectwise_transport

    async def override_get_db():
        async with session_maker() as session:
            yield session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_session_maker] = lambda: session_maker
    fastapi_app.dependency_overrides[get_connectwise_transport] = fake_cw.transport

    try:
        yield fastapi_app
    finally:
        fastapi_app.dependency_overrides.clear()


@pytest.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
