"""
Tests for the Celery worker - jtd_pipeline/workers/tasks.py

Covers:
- batch delivery through the provider picked by is_live
- provider failures turned into failed attempts
- live jobs held while their tenant has no credit left
- outcome reports that lose a race with an admin action
- the task wrappers (own event loop, own DB session) and the beat schedule
"""
import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from jtd_pipeline.core.config import settings
from jtd_pipeline.core.exceptions import ConflictingTransitionError, ProviderError
from jtd_pipeline.db.database import Base
from jtd_pipeline.db.models import JtdStatus, QueueName
from jtd_pipeline.domain.services.jtd_service import JtdService
from jtd_pipeline.domain.services.providers import DeliveryResult
from jtd_pipeline.domain.services.providers.gateway_provider import GatewayProvider
from jtd_pipeline.domain.services.providers.sandbox_provider import SandboxProvider
from jtd_pipeline.domain.services.queue_service import QueueService
from jtd_pipeline.state_machine.manager import JtdStateManager
from jtd_pipeline.workers import tasks
from jtd_pipeline.workers.celery_app import celery_app


def _task_session(seed=None):
    """
    Stand-in for get_task_session: a fresh in-memory database created inside
    the task's own event loop, optionally seeded before the task uses it.
    """
    @asynccontextmanager
    async def _session():
        engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        try:
            async with maker() as session:
                if seed is not None:
                    await seed(session)
                yield session
        finally:
            await engine.dispose()

    return _session


async def _seed_two_jobs(session):
    service = JtdService(session)
    for n in range(2):
        result = await service.create_jtd(
            event_type="notification",
            channel="email",
            tenant_id="tenant-1",
            source_type="user_invite",
            source_id=f"invite-{n}",
            recipient_data={"email": f"user{n}@example.com"},
        )
        assert result.success


class TestProcessQueueBatch:

    @pytest.mark.asyncio
    async def test_delivers_queued_jobs_through_sandbox(self, db_session, jtd_factory):
        jobs = [await jtd_factory() for _ in range(3)]

        results = await tasks.process_queue_batch(db_session, batch_size=10, worker_name="worker-1")

        assert [r["jtd_id"] for r in results] == [job.id for job in jobs]
        assert all(r["success"] and r["status"] == "sent" for r in results)
        manager = JtdStateManager(db_session)
        for job in jobs:
            sent = await manager.get_job(job.id)
            assert sent.provider_code == "sandbox"
            assert sent.performed_by_name == "worker-1"
        assert await QueueService(db_session).depth(QueueName.MAIN) == 0

    @pytest.mark.asyncio
    async def test_batch_size_limits_claims(self, db_session, jtd_factory):
        for _ in range(3):
            await jtd_factory()

        results = await tasks.process_queue_batch(db_session, batch_size=2, worker_name="worker-1")

        assert len(results) == 2
        assert await QueueService(db_session).depth(QueueName.MAIN) == 1

    @pytest.mark.asyncio
    async def test_live_jobs_use_gateway(self, db_session, jtd_factory):
        job = await jtd_factory(is_live=True)
        send = AsyncMock(side_effect=ProviderError("gateway", "gateway returned status 502", "HTTP_502"))

        with patch.object(GatewayProvider, "send", send):
            results = await tasks.process_queue_batch(db_session, batch_size=1, worker_name="worker-1")

        send.assert_called_once()
        assert results == [{"jtd_id": job.id, "success": False, "status": "queued"}]

    @pytest.mark.asyncio
    async def test_provider_error_records_failed_attempt(self, db_session, jtd_factory):
        job = await jtd_factory()

        with patch.object(
            SandboxProvider,
            "send",
            AsyncMock(side_effect=ProviderError("sandbox", "mailbox unavailable", "INVALID_RECIPIENT")),
        ):
            results = await tasks.process_queue_batch(db_session, batch_size=5, worker_name="worker-1")

        assert results == [{"jtd_id": job.id, "success": False, "status": "queued"}]
        job = await JtdStateManager(db_session).get_job(job.id)
        assert job.retry_count == 1
        assert job.error_code == "INVALID_RECIPIENT"

    @pytest.mark.asyncio
    async def test_lost_race_is_logged_not_raised(self, db_session, jtd_factory):
        job = await jtd_factory()

        with patch.object(
            JtdService,
            "report_success",
            AsyncMock(side_effect=ConflictingTransitionError(job.id, "processing", "sent")),
        ):
            results = await tasks.process_queue_batch(db_session, batch_size=1, worker_name="worker-1")

        assert results[0]["success"] is False
        assert "changed concurrently" in results[0]["error"]

    @pytest.mark.asyncio
    async def test_tenant_without_credits_holds_live_job(self, db_session, tenant_config_factory, jtd_factory):
        await tenant_config_factory(is_live=True, credit_balance=Decimal("0"))
        job = await jtd_factory()
        send = AsyncMock()

        with patch.object(GatewayProvider, "send", send):
            results = await tasks.process_queue_batch(db_session, batch_size=5, worker_name="worker-1")

        assert results == []
        send.assert_not_called()
        held = await JtdStateManager(db_session).get_job(job.id)
        assert held.current_status == JtdStatus.QUEUED
        assert held.blocked_reason == "no_credits"
        assert held.retry_count == 0
        queue = QueueService(db_session)
        assert await queue.get_job_message(QueueName.MAIN, job.id) is not None
        assert await queue.lease(60) is None

    @pytest.mark.asyncio
    async def test_credit_check_can_be_switched_off(self, db_session, tenant_config_factory, jtd_factory):
        await tenant_config_factory(is_live=True, credit_balance=Decimal("0"))
        job = await jtd_factory()
        send = AsyncMock(return_value=DeliveryResult(provider_code="gateway", provider_message_id="gw-1"))

        with patch.object(settings, "JTD_CREDIT_CHECK_ENABLED", False), patch.object(GatewayProvider, "send", send):
            results = await tasks.process_queue_batch(db_session, batch_size=5, worker_name="worker-1")

        assert results == [{"jtd_id": job.id, "success": True, "status": "sent"}]
        send.assert_called_once()

    @pytest.mark.asyncio
    async def test_empty_queue(self, db_session):
        assert await tasks.process_queue_batch(db_session, batch_size=5, worker_name="worker-1") == []


class TestCeleryTasks:
    """Task wrappers run in their own event loop with their own session"""

    def test_process_jtd_queue_task(self):
        with patch.object(tasks, "get_task_session", _task_session(_seed_two_jobs)):
            result = tasks.process_jtd_queue(batch_size=10)

        assert result["processed"] == 2
        assert all(r["status"] == JtdStatus.SENT.value for r in result["results"])

    def test_promote_scheduled_jobs_task(self):
        with patch.object(tasks, "get_task_session", _task_session()):
            assert tasks.promote_scheduled_jobs() == {"promoted": 0}

    def test_recover_expired_leases_task(self):
        with patch.object(tasks, "get_task_session", _task_session()):
            assert tasks.recover_expired_leases(limit=10) == {"recovered": 0}

    def test_run_async_closes_its_loop(self):
        captured = {}

        async def _grab_loop():
            captured["loop"] = asyncio.get_running_loop()
            return "done"

        assert tasks.run_async(_grab_loop()) == "done"
        assert captured["loop"].is_closed()


class TestBeatSchedule:

    @pytest.mark.unit
    def test_periodic_tasks_registered(self):
        schedule = celery_app.conf.beat_schedule
        registered = {entry["task"] for entry in schedule.values()}

        assert registered == {
            "jtd_pipeline.workers.tasks.process_jtd_queue",
            "jtd_pipeline.workers.tasks.promote_scheduled_jobs",
            "jtd_pipeline.workers.tasks.recover_expired_leases",
        }
        for name in registered:
            assert name in celery_app.tasks
