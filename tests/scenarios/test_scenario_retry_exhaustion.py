"""
Scenario 2 - retry exhaustion and DLQ recovery

Covers:
- every failed attempt counts; the third of three goes to dead_letter
- the DLQ entry carries the Main Queue read count
- admin requeue from the DLQ gets the job delivered on the next pass
- a lost lease is a failed attempt too
"""
from unittest.mock import AsyncMock, patch

import pytest

from jtd_pipeline.core.exceptions import ProviderError
from jtd_pipeline.db.models import JtdStatus, QueueName
from jtd_pipeline.domain.services.admin_recovery_service import AdminRecoveryService
from jtd_pipeline.domain.services.jtd_service import JtdService, LEASE_EXPIRED_ERROR_CODE
from jtd_pipeline.domain.services.providers.sandbox_provider import SandboxProvider
from jtd_pipeline.domain.services.queue_service import QueueService


def _failing_sandbox():
    return patch.object(
        SandboxProvider,
        "send",
        AsyncMock(side_effect=ProviderError("sandbox", "gateway returned status 500", "HTTP_500")),
    )


@pytest.mark.scenario
class TestRetryExhaustion:

    @pytest.mark.asyncio
    async def test_three_failures_then_dlq_then_requeue(
        self,
        db_session,
        jtd_factory,
        run_worker,
        fast_retries,
        assert_status,
        history_trail,
        assert_queue_placement,
    ):
        job = await jtd_factory(max_retries=3)

        with _failing_sandbox():
            for attempt in range(1, 4):
                results = await run_worker(batch_size=1)
                assert results[0]["jtd_id"] == job.id
                failed = await assert_status(
                    job.id, JtdStatus.DEAD_LETTER if attempt == 3 else JtdStatus.QUEUED
                )
                assert failed.retry_count == attempt

        assert failed.error_code == "HTTP_500"
        assert failed.completed_at is not None
        await assert_queue_placement(job.id, QueueName.DLQ)
        dlq_message = await QueueService(db_session).get_job_message(QueueName.DLQ, job.id)
        assert dlq_message.read_ct == 3

        assert await history_trail(job.id) == [
            "created", "pending", "queued",
            "processing", "failed", "queued",
            "processing", "failed", "queued",
            "processing", "dead_letter",
        ]

        # admin brings it back; the gateway has recovered
        await AdminRecoveryService(db_session).requeue_from_dlq(dlq_message.msg_id, "alice", "gateway fixed")
        requeued = await assert_status(job.id, JtdStatus.QUEUED)
        assert requeued.completed_at is None
        assert requeued.retry_count == 3
        await assert_queue_placement(job.id, QueueName.MAIN)

        results = await run_worker()

        assert results == [{"jtd_id": job.id, "success": True, "status": "sent"}]
        await assert_status(job.id, JtdStatus.SENT)
        await assert_queue_placement(job.id)
        assert (await history_trail(job.id))[-4:] == ["dead_letter", "queued", "processing", "sent"]

    @pytest.mark.asyncio
    async def test_lost_lease_counts_as_attempt(
        self, db_session, jtd_factory, claim_job, make_visible, fast_retries, assert_status
    ):
        job = await jtd_factory(max_retries=2)
        await claim_job("crashed-worker")

        # the worker dies; its visibility timeout elapses
        await make_visible(job.id)
        assert await JtdService(db_session).recover_expired_leases() == 1

        recovered = await assert_status(job.id, JtdStatus.QUEUED)
        assert recovered.retry_count == 1
        assert recovered.error_code == LEASE_EXPIRED_ERROR_CODE

        await claim_job("crashed-again")
        await make_visible(job.id)
        await JtdService(db_session).recover_expired_leases()

        dead = await assert_status(job.id, JtdStatus.DEAD_LETTER)
        assert dead.retry_count == 2

    @pytest.mark.asyncio
    async def test_requeued_job_failing_again_returns_to_dlq(
        self, db_session, dead_letter_factory, run_worker, assert_status, assert_queue_placement
    ):
        job = await dead_letter_factory()
        dlq_message = await QueueService(db_session).get_job_message(QueueName.DLQ, job.id)
        await AdminRecoveryService(db_session).requeue_from_dlq(dlq_message.msg_id, "alice", "try again")

        # the gateway is still down
        with _failing_sandbox():
            results = await run_worker()

        assert results == [{"jtd_id": job.id, "success": False, "status": "dead_letter"}]
        dead = await assert_status(job.id, JtdStatus.DEAD_LETTER)
        assert dead.retry_count <= dead.max_retries
        assert dead.retry_count == 1
        await assert_queue_placement(job.id, QueueName.DLQ)
