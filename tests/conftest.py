from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from download_guard.api.modules.ratelimit.schema import DeviceSignals
from download_guard.api.modules.ratelimit.services.envelope import (
    EnvelopeCodec,
    EnvelopeSealer,
    InMemoryNonceStore,
)
from download_guard.api.modules.ratelimit.services.envelope.codec import now_ms
from download_guard.application import get_production_app
from download_guard.clients.metering import MeteringClient
from download_guard.database import create_engine, create_session_factory, create_tables
from download_guard.database.uow import UnitOfWork
from download_guard.settings import APIConfig, Config, EnvelopeConfig

TEST_SECRET = "test-envelope-secret-0123456789"
TEST_KDF_ITERATIONS = 1_000

BASE_SIGNALS: dict[str, Any] = {
    "hardware": {
        "platform": "MacIntel",
        "hardware_concurrency": 8,
        "device_memory": 8,
        "screen_width": 1440,
        "screen_height": 900,
        "color_depth": 30,
        "pixel_ratio": 2.0,
        "max_touch_points": 0,
    },
    "canvas": {"render_hash": "9f2c61d0a3b4"},
    "webgl": {"vendor": "Apple Inc.", "renderer": "Apple M1"},
    "audio": {"render_hash": "124.04347527516074"},
    "fonts": {"detected": ["Arial", "Helvetica", "Menlo"]},
    "timezone": {"name": "Europe/Berlin", "utc_offset_minutes": 60},
    "storage": {
        "local_storage": True,
        "session_storage": True,
        "indexed_db": True,
        "persisted": False,
        "quota_bucket_mb": 2048,
        "private_mode": False,
    },
}


@pytest.fixture
def make_signals() -> Callable[..., DeviceSignals]:
    """Build DeviceSignals from the base device, replacing whole groups."""

    def _make_signals(**groups: Any) -> DeviceSignals:
        data = {**BASE_SIGNALS, **groups}
        return DeviceSignals.model_validate(
            {name: value for name, value in data.items() if value is not None}
        )

    return _make_signals


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        _env_file=None,
        api=APIConfig(allowed_hosts=["http://test"]),
        envelope=EnvelopeConfig(
            secret=TEST_SECRET,
            kdf_iterations=TEST_KDF_ITERATIONS,
        ),
        database_dsn=f"sqlite+aiosqlite:///{tmp_path / 'metering.db'}",
    )


@pytest_asyncio.fixture
async def engine(config: Config) -> AsyncIterator[AsyncEngine]:
    engine = create_engine(config.database_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def uow(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[UnitOfWork]:
    async with session_factory() as session:
        yield UnitOfWork(session)


@pytest.fixture
def make_sealer() -> Callable[..., EnvelopeSealer]:
    def _make_sealer(
        secret: str = TEST_SECRET,
        clock: Callable[[], int] = now_ms,
    ) -> EnvelopeSealer:
        return EnvelopeSealer(secret=secret, kdf_iterations=TEST_KDF_ITERATIONS, clock=clock)

    return _make_sealer


@pytest.fixture
def sealer(make_sealer) -> EnvelopeSealer:
    return make_sealer()


@pytest.fixture
def codec() -> EnvelopeCodec:
    return EnvelopeCodec(
        secret=TEST_SECRET,
        kdf_iterations=TEST_KDF_ITERATIONS,
        nonce_store=InMemoryNonceStore(),
    )


@pytest.fixture
def client_for(engine: AsyncEngine):
    """Open an API client for an app built from ``config``; tables already exist."""

    @asynccontextmanager
    async def _client_for(config: Config) -> AsyncIterator[httpx.AsyncClient]:
        app = get_production_app(config)
        transport = httpx.ASGITransport(app=app)
        try:
            async with httpx.AsyncClient(
                transport=transport,
                base_url="http://test",
            ) as client:
                yield client
        finally:
            await app.state.dishka_container.close()

    return _client_for


@pytest_asyncio.fixture
async def client(client_for, config: Config) -> AsyncIterator[httpx.AsyncClient]:
    async with client_for(config) as client:
        yield client


@pytest.fixture
def metering_client(client: httpx.AsyncClient, sealer: EnvelopeSealer) -> MeteringClient:
    return MeteringClient(client, sealer)
