"""
JTD State Manager - validated, optimistic-concurrency status transitions

Every status change goes through ``transition``:
1. load the active job
2. validate (current, target) against JTD_TRANSITIONS
3. conditional UPDATE ``WHERE current_status = <observed>``; zero rows means
   another actor won the race (ConflictingTransitionError)
4. append one history row and apply the queue side effect

The conditional write, history row and queue side effect share the caller's
transaction.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jtd_pipeline.core.clock import utcnow, seconds_between
from jtd_pipeline.core.exceptions import (
    ConflictingTransitionError,
    InvalidTransitionError,
    JtdNotFoundError,
)
from jtd_pipeline.core.logging import get_logger
from jtd_pipeline.db.models.jtd import Jtd, JtdStatus, PerformedByType
from jtd_pipeline.db.models.jtd_queue_message import QueueName
from jtd_pipeline.db.models.jtd_status_history import JtdStatusHistory
from jtd_pipeline.domain.services.queue_service import QueueService
from jtd_pipeline.state_machine.states import COMPLETED_STATUSES, is_valid_transition

logger = get_logger(__name__)


def _status_value(status: JtdStatus | str | None) -> str | None:
    if status is None:
        return None
    return status.value if isinstance(status, JtdStatus) else str(status)


class JtdStateManager:
    """Manages JTD status transitions"""

    def __init__(self, db: AsyncSession, queue: QueueService | None = None):
        self.db = db
        self.queue = queue or QueueService(db)

    async def get_job(self, jtd_id: str) -> Jtd:
        """Active job by id, or JtdNotFoundError"""
        result = await self.db.execute(
            select(Jtd)
            .where(Jtd.id == jtd_id, Jtd.is_active.is_(True))
            .execution_options(populate_existing=True)
        )
        job = result.scalar_one_or_none()
        if job is None:
            raise JtdNotFoundError(jtd_id)
        return job

    async def record_history(
        self,
        jtd_id: str,
        from_status: JtdStatus | None,
        to_status: JtdStatus,
        performed_by_type: PerformedByType,
        performed_by_name: str | None = None,
        reason: str | None = None,
        *,
        duration_seconds: float = 0.0,
        at: datetime | None = None,
    ) -> JtdStatusHistory:
        entry = JtdStatusHistory(
            jtd_id=jtd_id,
            from_status=_status_value(from_status),
            to_status=_status_value(to_status),
            duration_seconds=duration_seconds,
            performed_by_type=performed_by_type.value,
            performed_by_name=performed_by_name,
            reason=reason,
            created_at=at or utcnow(),
        )
        self.db.add(entry)
        return entry

    async def transition(
        self,
        jtd_id: str,
        to_status: JtdStatus,
        performed_by_type: PerformedByType,
        performed_by_name: str | None = None,
        reason: str | None = None,
        *,
        extra_values: dict[str, Any] | None = None,
        not_before: datetime | None = None,
        queue_priority: int | None = None,
        commit: bool = True,
    ) -> Jtd:
        """
        Move a job to ``to_status``.

        Raises JtdNotFoundError, InvalidTransitionError or
        ConflictingTransitionError; state is left unchanged on any of them.

        ``not_before`` / ``queue_priority`` shape the Main Queue entry when
        the target is ``queued``. ``extra_values`` are written in the same
        conditional UPDATE (e.g. an atomic ``retry_count`` increment).
        """
        job = await self.get_job(jtd_id)
        from_status = job.current_status

        if not is_valid_transition(from_status, to_status):
            logger.warning(
                "Invalid JTD transition rejected",
                extra_data={
                    "jtd_id": jtd_id,
                    "current_status": from_status.value,
                    "target_status": to_status.value,
                    "performed_by_type": performed_by_type.value,
                }
            )
            raise InvalidTransitionError(jtd_id, from_status.value, to_status.value)

        job = await self._apply(
            job,
            from_status,
            to_status,
            performed_by_type,
            performed_by_name,
            reason,
            extra_values=extra_values,
            not_before=not_before,
            queue_priority=queue_priority,
        )

        if commit:
            await self.db.commit()
        return job

    async def _apply(
        self,
        job: Jtd,
        from_status: JtdStatus,
        to_status: JtdStatus,
        performed_by_type: PerformedByType,
        performed_by_name: str | None,
        reason: str | None,
        *,
        extra_values: dict[str, Any] | None = None,
        not_before: datetime | None = None,
        queue_priority: int | None = None,
    ) -> Jtd:
        now = utcnow()
        jtd_id = job.id
        duration = seconds_between(job.status_changed_at, now)

        values: dict[str, Any] = {
            "current_status": to_status,
            "status_changed_at": now,
            "updated_at": now,
            "performed_by_type": performed_by_type.value,
            "performed_by_name": performed_by_name,
        }
        values.update(self._timestamp_values(to_status, now))
        if extra_values:
            values.update(extra_values)

        result = await self.db.execute(
            update(Jtd)
            .where(
                Jtd.id == jtd_id,
                Jtd.current_status == from_status,
                Jtd.is_active.is_(True),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(
                "Conflicting JTD transition",
                extra_data={
                    "jtd_id": jtd_id,
                    "expected_status": from_status.value,
                    "target_status": to_status.value,
                }
            )
            raise ConflictingTransitionError(jtd_id, from_status.value, to_status.value)

        await self.record_history(
            jtd_id,
            from_status,
            to_status,
            performed_by_type,
            performed_by_name,
            reason,
            duration_seconds=duration,
            at=now,
        )

        await self.db.refresh(job)
        await self._apply_queue_side_effect(job, from_status, to_status, not_before, queue_priority)

        logger.info(
            "JTD status transition",
            extra_data={
                "jtd_id": jtd_id,
                "tenant_id": job.tenant_id,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "performed_by_type": performed_by_type.value,
                "performed_by_name": performed_by_name,
                "reason": reason,
            }
        )
        return job

    @staticmethod
    def _timestamp_values(to_status: JtdStatus, now: datetime) -> dict[str, Any]:
        values: dict[str, Any] = {}
        if to_status == JtdStatus.PROCESSING:
            values["executed_at"] = now
        elif to_status == JtdStatus.SENT:
            values["sent_at"] = now
        elif to_status in (JtdStatus.FAILED, JtdStatus.DEAD_LETTER):
            values["failed_at"] = now

        values["completed_at"] = now if to_status in COMPLETED_STATUSES else None
        return values

    async def _apply_queue_side_effect(
        self,
        job: Jtd,
        from_status: JtdStatus,
        to_status: JtdStatus,
        not_before: datetime | None,
        queue_priority: int | None,
    ) -> None:
        if to_status == JtdStatus.QUEUED:
            # a scheduled job already holds its Main Queue entry
            if from_status == JtdStatus.SCHEDULED:
                return
            if from_status == JtdStatus.DEAD_LETTER:
                await self.queue.remove_job(QueueName.DLQ, job.id)
            await self.queue.enqueue(
                job.id,
                job.priority if queue_priority is None else queue_priority,
                not_before=not_before,
            )
        elif to_status == JtdStatus.DEAD_LETTER:
            await self.queue.move_to_dlq(job.id, job.priority)
        elif to_status in (JtdStatus.SENT, JtdStatus.CANCELLED):
            await self.queue.remove_job(QueueName.MAIN, job.id)
