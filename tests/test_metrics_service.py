"""
Tests for MetricsService - queue metrics, DLQ listing, tenant stats, worker health
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from jtd_pipeline.core.clock import utcnow
from jtd_pipeline.core.config import settings
from jtd_pipeline.db.models import Jtd, JtdChannel, JtdQueueMessage, JtdStatus
from jtd_pipeline.domain.services.jtd_service import JtdService
from jtd_pipeline.domain.services.metrics_service import MetricsService
from jtd_pipeline.domain.services.providers import DeliveryResult


async def _deliver(db_session, claimed, cost: str = "0.05"):
    return await JtdService(db_session).report_success(
        claimed.jtd_id,
        DeliveryResult(provider_code="sandbox", provider_message_id=f"m-{claimed.jtd_id}", cost=Decimal(cost)),
        msg_id=claimed.msg_id,
    )


async def _backdate_entry(db_session, jtd_id: str, hours: int):
    await db_session.execute(
        update(JtdQueueMessage)
        .where(JtdQueueMessage.jtd_id == jtd_id)
        .values(enqueued_at=utcnow() - timedelta(hours=hours))
    )
    await db_session.commit()


class TestQueueMetrics:

    @pytest.mark.asyncio
    async def test_empty_pipeline(self, db_session):
        metrics = await MetricsService(db_session).get_queue_metrics()

        assert metrics["main_queue"] == {"length": 0, "oldest_age_sec": 0}
        assert metrics["dlq"] == {"length": 0, "oldest_age_sec": 0}
        assert set(metrics["status_distribution"]) == {s.value for s in JtdStatus}
        assert all(count == 0 for count in metrics["status_distribution"].values())
        assert metrics["actionable"] == {
            "currently_processing": 0,
            "failed_retryable": 0,
            "scheduled_due": 0,
            "no_credits_waiting": 0,
        }

    @pytest.mark.asyncio
    async def test_counts_reflect_pipeline_state(self, db_session, jtd_factory, claim_job, dead_letter_factory):
        await dead_letter_factory()
        await jtd_factory(channel=JtdChannel.SMS, event_type="reminder")
        await jtd_factory(channel=JtdChannel.SMS, event_type="reminder")
        await claim_job()

        metrics = await MetricsService(db_session).get_queue_metrics()

        assert metrics["main_queue"]["length"] == 2
        assert metrics["dlq"]["length"] == 1
        assert metrics["actionable"]["currently_processing"] == 1
        assert metrics["status_distribution"]["queued"] == 1
        assert metrics["status_distribution"]["processing"] == 1
        assert metrics["status_distribution"]["dead_letter"] == 1
        assert metrics["last_24h"]["by_channel"] == {"email": 1, "sms": 2}
        assert metrics["last_24h"]["by_event_type"] == {"notification": 1, "reminder": 2}

    @pytest.mark.asyncio
    async def test_blocked_jobs_counted_as_waiting(self, db_session, jtd_factory):
        await jtd_factory()

        async def no_credits(_job):
            return "no_credits"

        await JtdService(db_session).claim_next(precondition=no_credits)

        metrics = await MetricsService(db_session).get_queue_metrics()
        assert metrics["actionable"]["no_credits_waiting"] == 1

    @pytest.mark.asyncio
    async def test_scheduled_due(self, db_session, jtd_factory):
        job = await jtd_factory(scheduled_at=utcnow() + timedelta(hours=1))
        await db_session.execute(
            update(Jtd).where(Jtd.id == job.id).values(scheduled_at=utcnow() - timedelta(minutes=1))
        )
        await db_session.commit()

        metrics = await MetricsService(db_session).get_queue_metrics()
        assert metrics["actionable"]["scheduled_due"] == 1

    @pytest.mark.asyncio
    async def test_oldest_age_ignores_entries_not_yet_visible(self, db_session, jtd_factory):
        scheduled = await jtd_factory(scheduled_at=utcnow() + timedelta(days=7))
        waiting = await jtd_factory()
        await _backdate_entry(db_session, scheduled.id, hours=2)
        await _backdate_entry(db_session, waiting.id, hours=1)

        main = (await MetricsService(db_session).get_queue_metrics())["main_queue"]

        assert main["length"] == 2
        assert 3600 <= main["oldest_age_sec"] < 7200

    @pytest.mark.asyncio
    async def test_only_scheduled_entries_report_no_age(self, db_session, jtd_factory):
        job = await jtd_factory(scheduled_at=utcnow() + timedelta(days=7))
        await _backdate_entry(db_session, job.id, hours=2)

        main = (await MetricsService(db_session).get_queue_metrics())["main_queue"]

        assert main == {"length": 1, "oldest_age_sec": 0}


class TestDlqListing:

    @pytest.mark.asyncio
    async def test_items_joined_with_job_and_tenant(self, db_session, dead_letter_factory, tenant_config_factory):
        await tenant_config_factory(tenant_id="tenant-1", tenant_name="Acme Corp")
        named = await dead_letter_factory(tenant_id="tenant-1")
        unnamed = await dead_letter_factory(tenant_id="tenant-2")

        items, total = await MetricsService(db_session).list_dlq_messages()

        assert total == 2
        assert [item["jtd_id"] for item in items] == [named.id, unnamed.id]
        first = items[0]
        assert first["tenant_name"] == "Acme Corp"
        assert first["status"] == "dead_letter"
        assert first["error_code"] == "HTTP_500"
        assert first["retry_count"] == 1
        assert first["read_ct"] == 1
        assert first["age_seconds"] >= 0
        assert items[1]["tenant_name"] == "tenant-2"

    @pytest.mark.asyncio
    async def test_pagination(self, db_session, dead_letter_factory):
        for _ in range(3):
            await dead_letter_factory()

        items, total = await MetricsService(db_session).list_dlq_messages(page=2, limit=2)

        assert total == 3
        assert len(items) == 1


class TestTenantStats:

    @pytest.mark.asyncio
    async def test_per_tenant_rollup(self, db_session, jtd_factory, claim_job, dead_letter_factory, tenant_config_factory):
        await tenant_config_factory(tenant_id="tenant-1", tenant_name="Acme Corp")
        await jtd_factory(tenant_id="tenant-1")
        await _deliver(db_session, await claim_job(), cost="0.05")
        await dead_letter_factory(tenant_id="tenant-1", channel=JtdChannel.SMS)
        await jtd_factory(tenant_id="tenant-2")

        stats = await MetricsService(db_session).get_tenant_stats()

        assert [entry["tenant_id"] for entry in stats] == ["tenant-1", "tenant-2"]
        acme = stats[0]
        assert acme["tenant_name"] == "Acme Corp"
        assert acme["total_jtds"] == 2
        assert acme["sent"] == 1
        assert acme["failed"] == 1
        assert acme["success_rate"] == 50.0
        assert acme["total_cost"] == pytest.approx(0.05)
        assert acme["by_channel"] == {"email": 1, "sms": 1}
        assert stats[1]["tenant_name"] == "tenant-2"
        assert stats[1]["success_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_filtered_by_tenant(self, db_session, jtd_factory):
        await jtd_factory(tenant_id="tenant-1")
        await jtd_factory(tenant_id="tenant-2")

        stats = await MetricsService(db_session).get_tenant_stats(tenant_id="tenant-2", days=7)

        assert [entry["tenant_id"] for entry in stats] == ["tenant-2"]


class TestWorkerHealth:

    @pytest.mark.asyncio
    async def test_idle_when_nothing_to_do(self, db_session):
        health = await MetricsService(db_session).get_worker_health()

        assert health["status"] == "idle"
        assert health["queue"]["length"] == 0
        assert health["last_executed_at"] is None

    @pytest.mark.asyncio
    async def test_stalled_when_visible_work_never_picked_up(self, db_session, jtd_factory):
        await jtd_factory()

        health = await MetricsService(db_session).get_worker_health()

        assert health["status"] == "stalled"
        assert health["queue"]["visible"] == 1

    @pytest.mark.asyncio
    async def test_healthy_while_worker_is_executing(self, db_session, jtd_factory, claim_job):
        await jtd_factory()
        await jtd_factory()
        await _deliver(db_session, await claim_job())

        health = await MetricsService(db_session).get_worker_health()

        assert health["status"] == "healthy"
        assert health["throughput"]["last_1h"] == 1
        assert health["throughput"]["last_24h"] == 1
        assert health["throughput"]["avg_duration_sec"] is not None
        assert health["errors"] == {"failures_1h": 0, "error_rate_1h": 0.0}
        assert health["last_executed_at"] is not None

    @pytest.mark.asyncio
    async def test_degraded_with_stuck_job(self, db_session, jtd_factory, claim_job):
        job = await jtd_factory()
        await claim_job()
        await db_session.execute(
            update(Jtd)
            .where(Jtd.id == job.id)
            .values(executed_at=utcnow() - timedelta(seconds=settings.JTD_STUCK_PROCESSING_SECONDS + 60))
        )
        await db_session.commit()

        health = await MetricsService(db_session).get_worker_health()

        assert health["status"] == "degraded"
        assert health["stuck_count"] == 1
        assert health["currently_processing"] == 1

    @pytest.mark.asyncio
    async def test_degraded_on_high_error_rate(self, db_session, jtd_factory, claim_job):
        job = await jtd_factory()
        await claim_job()
        await JtdService(db_session).report_failure(job.id, "gateway down", "HTTP_503")
        await jtd_factory()
        await claim_job()

        health = await MetricsService(db_session).get_worker_health()

        assert health["errors"]["failures_1h"] == 1
        assert health["errors"]["error_rate_1h"] == 1.0
        assert health["status"] == "degraded"
