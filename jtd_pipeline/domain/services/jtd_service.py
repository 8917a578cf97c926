"""
JTD Service - job creation, worker claim/outcome reporting and status queries

Creation replaces the old insert trigger with an explicit, synchronous step
inside one transaction: created -> pending -> queued (-> scheduled).

Outcome reporting is idempotent under at-least-once delivery: a duplicate
success on a ``sent`` job, or a failure report for a job that is no longer
``processing``, is a no-op.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable
from sqlalchemy import case, select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jtd_pipeline.core.clock import utcnow, to_naive_utc
from jtd_pipeline.core.config import settings
from jtd_pipeline.core.exceptions import (
    AppException,
    ConflictingTransitionError,
    JtdNotFoundError,
    ValidationException,
)
from jtd_pipeline.core.logging import get_logger
from jtd_pipeline.db.models.jtd import Jtd, JtdChannel, JtdStatus, PerformedByType
from jtd_pipeline.db.models.jtd_queue_message import JtdQueueMessage, QueueName
from jtd_pipeline.db.models.jtd_status_history import JtdStatusHistory
from jtd_pipeline.domain.services.channel_config_service import ChannelConfigService
from jtd_pipeline.domain.services.providers.base_provider import DeliveryResult
from jtd_pipeline.domain.services.queue_service import QueueService, calculate_backoff_seconds
from jtd_pipeline.state_machine.manager import JtdStateManager
from jtd_pipeline.state_machine.states import TERMINAL_STATUSES

logger = get_logger(__name__)

LEASE_EXPIRED_ERROR_CODE = "LEASE_EXPIRED"

# Returns a blocked reason (e.g. "no_credits") or None when the job may run
Precondition = Callable[[Jtd], Awaitable[str | None]]


@dataclass
class CreateJtdResult:
    success: bool
    jtd_id: str | None = None
    skipped: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "jtd_id": self.jtd_id}
        if self.skipped:
            return {"success": False, "skipped": True}
        return {"success": False, "error": self.error}


@dataclass
class ClaimedJob:
    """A job leased by a worker and moved to ``processing``"""

    job: Jtd
    msg_id: int
    read_ct: int

    @property
    def jtd_id(self) -> str:
        return self.job.id


@dataclass
class JobFilters:
    status: JtdStatus | None = None
    tenant_id: str | None = None
    event_type: str | None = None
    channel: JtdChannel | None = None
    source_type: str | None = None

    def clauses(self) -> list:
        where = [Jtd.is_active.is_(True)]
        if self.status is not None:
            where.append(Jtd.current_status == self.status)
        if self.tenant_id:
            where.append(Jtd.tenant_id == self.tenant_id)
        if self.event_type:
            where.append(Jtd.event_type == self.event_type)
        if self.channel is not None:
            where.append(Jtd.channel == self.channel)
        if self.source_type:
            where.append(Jtd.source_type == self.source_type)
        return where


@dataclass
class JobDetail:
    job: Jtd
    history: list[JtdStatusHistory] = field(default_factory=list)
    queue_message: JtdQueueMessage | None = None


class JtdService:
    """Job creation and the worker-facing side of the pipeline"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.queue = QueueService(db)
        self.state = JtdStateManager(db, self.queue)
        self.channel_config = ChannelConfigService(db)

    # ==================== Creation ====================

    async def create_jtd(
        self,
        *,
        event_type: str,
        channel: JtdChannel | str,
        tenant_id: str,
        source_type: str,
        source_id: str | None = None,
        recipient_data: dict | None = None,
        template_data: dict | None = None,
        priority: int | None = None,
        scheduled_at: datetime | None = None,
        metadata: dict | None = None,
        is_live: bool | None = None,
        max_retries: int | None = None,
    ) -> CreateJtdResult:
        """
        Create a job after checking the tenant channel gate.

        A disabled channel is not an error: the result is ``skipped`` so the
        originating business event carries on.
        """
        try:
            channel = JtdChannel(channel)
        except ValueError:
            raise ValidationException(f"Unknown channel: {channel}", field="channel")
        if max_retries is not None and max_retries < 1:
            raise ValidationException("max_retries must be at least 1", field="max_retries")

        if not await self.channel_config.is_channel_enabled(tenant_id, source_type, channel):
            logger.info(
                "JTD creation skipped, channel disabled",
                extra_data={
                    "tenant_id": tenant_id,
                    "source_type": source_type,
                    "source_id": source_id,
                    "channel": channel.value,
                }
            )
            return CreateJtdResult(success=False, skipped=True)

        if is_live is None:
            is_live = await self.channel_config.resolve_is_live(tenant_id)

        now = utcnow()
        scheduled_at = to_naive_utc(scheduled_at)
        is_future = scheduled_at is not None and scheduled_at > now

        try:
            job = Jtd(
                event_type=event_type,
                channel=channel,
                tenant_id=tenant_id,
                source_type=source_type,
                source_id=source_id,
                current_status=JtdStatus.CREATED,
                priority=settings.JTD_DEFAULT_PRIORITY if priority is None else priority,
                recipient_data=recipient_data or {},
                template_data=template_data or {},
                job_metadata=metadata or {},
                retry_count=0,
                max_retries=settings.JTD_DEFAULT_MAX_RETRIES if max_retries is None else max_retries,
                scheduled_at=scheduled_at,
                is_live=is_live,
                is_active=True,
                performed_by_type=PerformedByType.SYSTEM.value,
                status_changed_at=now,
                created_at=now,
                updated_at=now,
            )
            self.db.add(job)
            await self.db.flush()

            await self.state.record_history(
                job.id, None, JtdStatus.CREATED, PerformedByType.SYSTEM, reason="job created", at=now
            )
            await self.state.transition(
                job.id, JtdStatus.PENDING, PerformedByType.SYSTEM,
                reason="auto-enqueue", commit=False,
            )
            await self.state.transition(
                job.id, JtdStatus.QUEUED, PerformedByType.SYSTEM,
                reason="admitted to main queue",
                not_before=scheduled_at if is_future else None,
                commit=False,
            )
            if is_future:
                await self.state.transition(
                    job.id, JtdStatus.SCHEDULED, PerformedByType.SYSTEM,
                    reason="scheduled_at in the future", commit=False,
                )
            await self.db.commit()
        except (SQLAlchemyError, AppException) as exc:
            await self.db.rollback()
            logger.error(
                "JTD creation failed",
                extra_data={"tenant_id": tenant_id, "source_type": source_type, "error": str(exc)},
                exc_info=True,
            )
            return CreateJtdResult(success=False, error=str(exc))

        logger.info(
            "JTD created",
            extra_data={
                "jtd_id": job.id,
                "tenant_id": tenant_id,
                "channel": channel.value,
                "event_type": event_type,
                "is_live": is_live,
                "scheduled": is_future,
            }
        )
        return CreateJtdResult(success=True, jtd_id=job.id)

    # ==================== Queries ====================

    async def get_status(self, source_type: str, source_id: str) -> dict[str, Any] | None:
        """Delivery state of the latest job for a business entity, or None"""
        result = await self.db.execute(
            select(Jtd)
            .where(
                Jtd.source_type == source_type,
                Jtd.source_id == source_id,
                Jtd.is_active.is_(True),
            )
            .order_by(Jtd.created_at.desc())
            .limit(1)
        )
        job = result.scalar_one_or_none()
        if job is None:
            return None
        return {
            "jtd_id": job.id,
            "status": job.current_status.value,
            "sent_at": job.sent_at,
            "delivered_at": job.delivered_at,
            "error": job.error_message,
        }

    async def list_jobs(
        self,
        filters: JobFilters | None = None,
        *,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[Jtd], int]:
        where = (filters or JobFilters()).clauses()
        total = (await self.db.execute(select(func.count(Jtd.id)).where(*where))).scalar() or 0
        result = await self.db.execute(
            select(Jtd)
            .where(*where)
            .order_by(Jtd.created_at.desc(), Jtd.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def get_history(self, jtd_id: str) -> list[JtdStatusHistory]:
        result = await self.db.execute(
            select(JtdStatusHistory)
            .where(JtdStatusHistory.jtd_id == jtd_id)
            .order_by(JtdStatusHistory.created_at.asc(), JtdStatusHistory.id.asc())
        )
        return list(result.scalars().all())

    async def get_job_detail(self, jtd_id: str) -> JobDetail:
        job = await self.state.get_job(jtd_id)
        queue_message = await self.queue.get_job_message(QueueName.MAIN, jtd_id)
        if queue_message is None:
            queue_message = await self.queue.get_job_message(QueueName.DLQ, jtd_id)
        return JobDetail(job=job, history=await self.get_history(jtd_id), queue_message=queue_message)

    # ==================== Worker: claim ====================

    async def claim_next(
        self,
        worker_name: str | None = None,
        precondition: Precondition | None = None,
    ) -> ClaimedJob | None:
        """
        Lease the next Main Queue entry and move its job to ``processing``.

        Entries whose job cannot run are handled on the way:
        - due ``scheduled`` job: promoted, then claimed
        - ``processing`` job (previous lease expired): lost attempt recorded
        - terminal / non-queued job: orphaned entry acked
        - precondition blocked: job stays ``queued``, lease returned with delay
        """
        worker_name = worker_name or settings.JTD_WORKER_NAME

        for _ in range(settings.JTD_WORKER_BATCH_SIZE):
            message = await self.queue.lease(settings.JTD_VISIBILITY_TIMEOUT_SECONDS, worker_name)
            if message is None:
                await self.db.commit()
                return None

            try:
                claimed = await self._claim_message(message, worker_name, precondition)
            except ConflictingTransitionError:
                # someone else moved the job first; our lease is rolled back too
                await self.db.rollback()
                continue

            await self.db.commit()
            if claimed is not None:
                return claimed

        return None

    async def _claim_message(
        self,
        message: JtdQueueMessage,
        worker_name: str,
        precondition: Precondition | None,
    ) -> ClaimedJob | None:
        job = await self.db.get(Jtd, message.jtd_id, populate_existing=True)
        if job is None or not job.is_active:
            await self.queue.ack(message.msg_id)
            return None

        status = job.current_status

        if status == JtdStatus.SCHEDULED:
            if job.scheduled_at is not None and job.scheduled_at > utcnow():
                delay = int((job.scheduled_at - utcnow()).total_seconds()) + 1
                await self.queue.nack(message.msg_id, delay_seconds=delay)
                return None
            job = await self.state.transition(
                job.id, JtdStatus.QUEUED, PerformedByType.SYSTEM,
                reason="scheduled time reached", commit=False,
            )
            status = job.current_status

        if status == JtdStatus.PROCESSING:
            logger.warning(
                "Lease expired while processing",
                extra_data={"jtd_id": job.id, "msg_id": message.msg_id, "read_ct": message.read_ct}
            )
            await self._record_failure(
                job,
                error_message="visibility timeout expired while processing",
                error_code=LEASE_EXPIRED_ERROR_CODE,
                performed_by_type=PerformedByType.WORKER,
                performed_by_name=worker_name,
            )
            return None

        if status != JtdStatus.QUEUED:
            logger.info(
                "Acking orphaned queue entry",
                extra_data={"jtd_id": job.id, "msg_id": message.msg_id, "status": status.value}
            )
            await self.queue.ack(message.msg_id)
            return None

        if precondition is not None:
            blocked_reason = await precondition(job)
            if blocked_reason:
                job.blocked_reason = blocked_reason
                await self.queue.nack(message.msg_id, delay_seconds=settings.JTD_RETRY_BASE_SECONDS)
                logger.info(
                    "JTD blocked on precondition",
                    extra_data={"jtd_id": job.id, "blocked_reason": blocked_reason}
                )
                return None

        job = await self.state.transition(
            job.id, JtdStatus.PROCESSING, PerformedByType.WORKER, worker_name,
            reason="leased by worker",
            extra_values={"blocked_reason": None},
            commit=False,
        )
        return ClaimedJob(job=job, msg_id=message.msg_id, read_ct=message.read_ct)

    # ==================== Worker: outcomes ====================

    async def report_success(
        self,
        jtd_id: str,
        result: DeliveryResult,
        *,
        msg_id: int | None = None,
        worker_name: str | None = None,
    ) -> Jtd:
        job = await self.state.get_job(jtd_id)

        if job.current_status == JtdStatus.SENT:
            logger.info("Duplicate success report ignored", extra_data={"jtd_id": jtd_id})
            if msg_id is not None:
                await self.queue.ack(msg_id)
            await self.db.commit()
            return job

        job = await self.state.transition(
            jtd_id, JtdStatus.SENT, PerformedByType.WORKER,
            worker_name or settings.JTD_WORKER_NAME,
            reason="delivered",
            extra_values={
                "provider_code": result.provider_code,
                "provider_message_id": result.provider_message_id,
                "cost": result.cost,
                "error_message": None,
                "error_code": None,
            },
            commit=False,
        )
        if msg_id is not None:
            await self.queue.ack(msg_id)
        await self.db.commit()
        return job

    async def report_failure(
        self,
        jtd_id: str,
        error_message: str,
        error_code: str | None = None,
        *,
        worker_name: str | None = None,
    ) -> Jtd:
        """
        Record a failed delivery attempt.

        The retry threshold is applied in the same conditional write that
        records the failure: the attempt that reaches ``max_retries`` goes
        straight to ``dead_letter``.
        """
        job = await self.state.get_job(jtd_id)

        if job.current_status != JtdStatus.PROCESSING:
            # duplicate or stale report: the attempt was already accounted for
            logger.info(
                "Failure report ignored, job not processing",
                extra_data={"jtd_id": jtd_id, "status": job.current_status.value}
            )
            return job

        job = await self._record_failure(
            job,
            error_message=error_message,
            error_code=error_code,
            performed_by_type=PerformedByType.WORKER,
            performed_by_name=worker_name or settings.JTD_WORKER_NAME,
        )
        await self.db.commit()
        return job

    async def _record_failure(
        self,
        job: Jtd,
        *,
        error_message: str,
        error_code: str | None,
        performed_by_type: PerformedByType,
        performed_by_name: str | None,
    ) -> Jtd:
        previous_retries = job.retry_count
        attempts = previous_retries + 1
        failure_values = {
            "retry_count": Jtd.retry_count + 1,
            "error_message": (error_message or "")[:1000],
            "error_code": error_code,
        }

        if attempts >= job.max_retries:
            # a requeued DLQ job already spent its budget; the stored count stays capped
            failure_values["retry_count"] = case(
                (Jtd.retry_count + 1 > Jtd.max_retries, Jtd.max_retries),
                else_=Jtd.retry_count + 1,
            )
            return await self.state.transition(
                job.id, JtdStatus.DEAD_LETTER, performed_by_type, performed_by_name,
                reason=f"retries exhausted ({min(attempts, job.max_retries)}/{job.max_retries}): {error_message}",
                extra_values=failure_values,
                commit=False,
            )

        job = await self.state.transition(
            job.id, JtdStatus.FAILED, performed_by_type, performed_by_name,
            reason=error_message,
            extra_values=failure_values,
            commit=False,
        )

        if settings.JTD_AUTO_RETRY_ENABLED:
            delay = calculate_backoff_seconds(
                previous_retries,
                base_seconds=settings.JTD_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.JTD_MAX_BACKOFF_SECONDS,
            )
            job = await self.state.transition(
                job.id, JtdStatus.QUEUED, PerformedByType.SYSTEM,
                reason=f"automatic retry {attempts}/{job.max_retries} in {delay}s",
                not_before=utcnow() + timedelta(seconds=delay),
                commit=False,
            )
        return job

    async def record_delivery_receipt(
        self,
        provider_message_id: str,
        delivered_at: datetime | None = None,
    ) -> Jtd:
        """
        Mark a sent job as delivered (no status change).

        Receipts for jobs that are not ``sent`` are ignored; repeated receipts
        keep the first ``delivered_at``.
        """
        result = await self.db.execute(
            select(Jtd).where(Jtd.provider_message_id == provider_message_id)
        )
        job = result.scalars().first()
        if job is None:
            raise JtdNotFoundError(provider_message_id)

        if job.current_status != JtdStatus.SENT:
            logger.warning(
                "Delivery receipt for a job that is not sent",
                extra_data={"jtd_id": job.id, "status": job.current_status.value}
            )
            return job

        if job.delivered_at is None:
            job.delivered_at = to_naive_utc(delivered_at) or utcnow()
            await self.db.commit()
            logger.info("JTD delivered", extra_data={"jtd_id": job.id})
        return job

    # ==================== Periodic maintenance ====================

    async def promote_due_scheduled(self, limit: int = 100) -> int:
        """Flip due ``scheduled`` jobs to ``queued``; returns how many moved"""
        now = utcnow()
        result = await self.db.execute(
            select(Jtd.id)
            .where(
                Jtd.current_status == JtdStatus.SCHEDULED,
                Jtd.scheduled_at <= now,
                Jtd.is_active.is_(True),
            )
            .order_by(Jtd.scheduled_at.asc())
            .limit(limit)
        )
        promoted = 0
        for jtd_id in result.scalars().all():
            try:
                job = await self.state.transition(
                    jtd_id, JtdStatus.QUEUED, PerformedByType.SYSTEM,
                    reason="scheduled time reached", commit=False,
                )
                if await self.queue.get_job_message(QueueName.MAIN, jtd_id) is None:
                    await self.queue.enqueue(jtd_id, job.priority)
                await self.db.commit()
                promoted += 1
            except ConflictingTransitionError:
                await self.db.rollback()

        if promoted:
            logger.info("Scheduled jobs promoted", extra_data={"count": promoted})
        return promoted

    async def recover_expired_leases(self, limit: int = 100) -> int:
        """
        Record a lost attempt for every ``processing`` job whose lease expired
        without an outcome report. Expiry counts toward ``retry_count``.
        """
        expired = [(m.msg_id, m.jtd_id) for m in await self.queue.expired_leases(limit)]
        recovered = 0
        for msg_id, jtd_id in expired:
            job = await self.db.get(Jtd, jtd_id, populate_existing=True)
            try:
                if job is None or not job.is_active or job.current_status in TERMINAL_STATUSES:
                    await self.queue.ack(msg_id)
                elif job.current_status == JtdStatus.PROCESSING:
                    await self._record_failure(
                        job,
                        error_message="visibility timeout expired while processing",
                        error_code=LEASE_EXPIRED_ERROR_CODE,
                        performed_by_type=PerformedByType.SYSTEM,
                        performed_by_name="lease-recovery",
                    )
                    recovered += 1
                await self.db.commit()
            except ConflictingTransitionError:
                await self.db.rollback()

        if recovered:
            logger.warning("Expired leases recovered", extra_data={"count": recovered})
        return recovered
