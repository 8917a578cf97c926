"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- HTTP test client with the database override
- JTD / tenant config factories and queue helpers
"""
# Settings are read at import time, so the environment goes first
import os
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

import itertools
import pytest
from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch
from httpx import Response

from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from jtd_pipeline.core.clock import utcnow
from jtd_pipeline.core.config import settings
from jtd_pipeline.db.database import Base, get_db
from jtd_pipeline.db.models import (
    Jtd,
    JtdChannel,
    JtdQueueMessage,
    QueueName,
    TenantConfig,
    TenantSourceConfig,
)
from jtd_pipeline.domain.services.jtd_service import ClaimedJob, JtdService
from jtd_pipeline.domain.services.providers import reset_providers
from jtd_pipeline.state_machine.manager import JtdStateManager
from jtd_pipeline.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# pytest-asyncio runs with asyncio_mode=auto and a function-scoped loop,
# so no custom event_loop fixture is needed


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": settings.ADMIN_API_KEY, "X-Admin-Name": "alice"}


# ============================================================================
# Mock External Services
# ============================================================================

@pytest.fixture
def mock_gateway():
    """Mock the notification gateway HTTP API"""
    with patch("httpx.AsyncClient") as mock_client:
        mock_response = MagicMock(spec=Response)
        mock_response.status_code = 200
        mock_response.json.return_value = {"message_id": "gw-123", "cost": "0.0450"}
        mock_response.text = '{"message_id": "gw-123"}'

        mock_instance = AsyncMock()
        mock_instance.post = AsyncMock(return_value=mock_response)
        mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
        mock_instance.__aexit__ = AsyncMock(return_value=None)

        mock_client.return_value = mock_instance

        yield mock_instance


@pytest.fixture(autouse=True)
def reset_delivery_providers():
    """Provider singletons must not leak between tests"""
    reset_providers()
    yield
    reset_providers()


# ============================================================================
# Test Data Factories
# ============================================================================

_source_ids = itertools.count(1)


@pytest.fixture
def jtd_factory(db_session: AsyncSession):
    """Create a job through JtdService, returning the stored row"""
    async def _create_jtd(
        event_type: str = "notification",
        channel: JtdChannel = JtdChannel.EMAIL,
        tenant_id: str = "tenant-1",
        source_type: str = "user_invite",
        source_id: str | None = None,
        recipient_data: dict | None = None,
        **kwargs,
    ) -> Jtd:
        result = await JtdService(db_session).create_jtd(
            event_type=event_type,
            channel=channel,
            tenant_id=tenant_id,
            source_type=source_type,
            source_id=source_id or f"invite-{next(_source_ids)}",
            recipient_data=recipient_data if recipient_data is not None else {
                "email": "user@example.com",
                "mobile": "+15550001111",
                "user_id": "u-1",
            },
            **kwargs,
        )
        assert result.success, result.to_dict()
        return await JtdStateManager(db_session).get_job(result.jtd_id)

    return _create_jtd


@pytest.fixture
def tenant_config_factory(db_session: AsyncSession):
    async def _create(
        tenant_id: str = "tenant-1",
        tenant_name: str | None = "Acme Corp",
        is_live: bool = False,
        is_active: bool = True,
        credit_balance: Decimal | None = None,
    ) -> TenantConfig:
        config = TenantConfig(
            tenant_id=tenant_id,
            tenant_name=tenant_name,
            is_live=is_live,
            credit_balance=credit_balance,
            is_active=is_active,
        )
        db_session.add(config)
        await db_session.commit()
        await db_session.refresh(config)
        return config

    return _create


@pytest.fixture
def source_config_factory(db_session: AsyncSession):
    async def _create(
        tenant_id: str = "tenant-1",
        source_type: str = "user_invite",
        email_enabled: bool = True,
        sms_enabled: bool = True,
        whatsapp_enabled: bool = True,
        inapp_enabled: bool = True,
        is_active: bool = True,
    ) -> TenantSourceConfig:
        config = TenantSourceConfig(
            tenant_id=tenant_id,
            source_type=source_type,
            email_enabled=email_enabled,
            sms_enabled=sms_enabled,
            whatsapp_enabled=whatsapp_enabled,
            inapp_enabled=inapp_enabled,
            is_active=is_active,
        )
        db_session.add(config)
        await db_session.commit()
        await db_session.refresh(config)
        return config

    return _create


# ============================================================================
# Queue helpers
# ============================================================================

@pytest.fixture
def claim_job(db_session: AsyncSession):
    """Lease the next Main Queue entry as a worker; fails the test if nothing is visible"""
    async def _claim(worker_name: str = "worker-1") -> ClaimedJob:
        claimed = await JtdService(db_session).claim_next(worker_name)
        assert claimed is not None, "expected a visible job on the main queue"
        return claimed

    return _claim


@pytest.fixture
def make_visible(db_session: AsyncSession):
    """Pull a job's Main Queue entry back into the past (backoff or lease elapsed)"""
    async def _make_visible(jtd_id: str, seconds_ago: int = 1) -> None:
        await db_session.execute(
            update(JtdQueueMessage)
            .where(
                JtdQueueMessage.queue_name == QueueName.MAIN.value,
                JtdQueueMessage.jtd_id == jtd_id,
            )
            .values(vt=utcnow() - timedelta(seconds=seconds_ago))
        )
        await db_session.commit()

    return _make_visible


@pytest.fixture
def dead_letter_factory(db_session: AsyncSession, jtd_factory, claim_job):
    """A job that failed its only attempt and now sits in the DLQ"""
    async def _create(error_message: str = "gateway returned status 500", **kwargs) -> Jtd:
        job = await jtd_factory(max_retries=1, **kwargs)
        claimed = await claim_job()
        assert claimed.jtd_id == job.id
        return await JtdService(db_session).report_failure(job.id, error_message, "HTTP_500")

    return _create
