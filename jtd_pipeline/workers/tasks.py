"""
Celery Tasks - the JTD worker

Leases jobs from the Main Queue, hands them to the transport provider picked
by ``is_live`` and reports the outcome back. Delivery is at-least-once: a
worker that dies mid-delivery loses its lease, and the job is retried.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from jtd_pipeline.workers.celery_app import celery_app
from jtd_pipeline.db.database import get_task_session
from jtd_pipeline.domain.services.channel_config_service import ChannelConfigService
from jtd_pipeline.domain.services.jtd_service import ClaimedJob, JtdService
from jtd_pipeline.domain.services.providers import get_delivery_provider
from jtd_pipeline.core.config import settings
from jtd_pipeline.core.exceptions import JtdException, ProviderError
from jtd_pipeline.core.logging import get_logger, log_async_operation, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Fresh event loop per task, closed with its pending tasks and async
    generators when the task finishes.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Run async code from a sync Celery task"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _deliver_claimed(service: JtdService, claimed: ClaimedJob, worker_name: str) -> dict:
    """Send one claimed job and report the outcome"""
    job = claimed.job
    provider = get_delivery_provider(job.is_live)

    try:
        result = await provider.send(job)
    except ProviderError as exc:
        logger.warning(
            "JTD delivery failed",
            extra_data={
                "jtd_id": claimed.jtd_id,
                "msg_id": claimed.msg_id,
                "provider": exc.provider_code,
                "error_code": exc.provider_error_code,
                "error": exc.message,
            }
        )
        job = await service.report_failure(
            claimed.jtd_id, exc.message, exc.provider_error_code, worker_name=worker_name
        )
        return {"jtd_id": claimed.jtd_id, "success": False, "status": job.current_status.value}

    job = await service.report_success(
        claimed.jtd_id, result, msg_id=claimed.msg_id, worker_name=worker_name
    )
    return {"jtd_id": claimed.jtd_id, "success": True, "status": job.current_status.value}


async def process_queue_batch(db, batch_size: int, worker_name: str) -> list[dict]:
    service = JtdService(db)
    precondition = ChannelConfigService(db).check_credits if settings.JTD_CREDIT_CHECK_ENABLED else None
    results = []
    for _ in range(batch_size):
        claimed = await service.claim_next(worker_name, precondition)
        if claimed is None:
            break
        try:
            results.append(await _deliver_claimed(service, claimed, worker_name))
        except JtdException as exc:
            # outcome lost a race with an admin action
            await db.rollback()
            logger.warning(
                "JTD outcome not recorded",
                extra_data={"jtd_id": claimed.jtd_id, "error_code": exc.error_code.value, "error": exc.message}
            )
            results.append({"jtd_id": claimed.jtd_id, "success": False, "error": exc.message})
    return results


@celery_app.task(name="jtd_pipeline.workers.tasks.process_jtd_queue")
def process_jtd_queue(batch_size: int | None = None):
    """Claim and deliver up to ``batch_size`` jobs from the Main Queue"""
    worker_name = settings.JTD_WORKER_NAME

    async def _process():
        async with get_task_session() as db:
            results = await process_queue_batch(
                db, batch_size or settings.JTD_WORKER_BATCH_SIZE, worker_name
            )
        if results:
            logger.info(
                "JTD batch processed",
                extra_data={
                    "processed": len(results),
                    "sent": sum(1 for r in results if r.get("success")),
                }
            )
        return {"processed": len(results), "results": results}

    return run_async(_process())


@celery_app.task(name="jtd_pipeline.workers.tasks.promote_scheduled_jobs")
def promote_scheduled_jobs(limit: int = 100):
    """Move due scheduled jobs to queued"""

    @log_async_operation("promote_scheduled_jobs")
    async def _promote():
        async with get_task_session() as db:
            promoted = await JtdService(db).promote_due_scheduled(limit=limit)
        return {"promoted": promoted}

    return run_async(_promote())


@celery_app.task(name="jtd_pipeline.workers.tasks.recover_expired_leases")
def recover_expired_leases(limit: int = 100):
    """Record lost attempts for processing jobs whose lease ran out"""

    @log_async_operation("recover_expired_leases")
    async def _recover():
        async with get_task_session() as db:
            recovered = await JtdService(db).recover_expired_leases(limit=limit)
        return {"recovered": recovered}

    return run_async(_recover())
