"""
Admin Recovery Service - the externally triggered mutations on jobs

retry, cancel, force-complete, requeue-from-DLQ and purge-DLQ. Each one
appends exactly one status history row per affected job, performed by
``admin``. Preconditions are checked here and surface as typed errors;
the conditional write in the state manager catches anything that changed
in between (ConflictingTransitionError).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jtd_pipeline.core.config import settings
from jtd_pipeline.core.exceptions import (
    NotCancellableError,
    NotInProcessingError,
    NotRetryableError,
    QueueMessageNotFoundError,
    ValidationException,
)
from jtd_pipeline.core.logging import get_logger
from jtd_pipeline.db.models.jtd import JtdStatus, PerformedByType
from jtd_pipeline.db.models.jtd_queue_message import QueueName
from jtd_pipeline.domain.services.queue_service import QueueService
from jtd_pipeline.state_machine.manager import JtdStateManager
from jtd_pipeline.state_machine.states import CANCELLABLE_STATUSES

logger = get_logger(__name__)

REASON_RETRY = "manual retry"
REASON_CANCEL = "admin cancel"
REASON_FORCE_COMPLETE = "admin override"
REASON_REQUEUE = "requeued from DLQ"
REASON_PURGE = "DLQ purge"

FORCE_FAILED_ERROR_CODE = "ADMIN_FORCE_FAILED"

# force-complete outcome -> target status
_FORCE_COMPLETE_TARGETS = {
    JtdStatus.SENT: JtdStatus.SENT,
    JtdStatus.FAILED: JtdStatus.DEAD_LETTER,
}


@dataclass
class ActionResult:
    success: bool
    message: str
    jtd_id: str | None = None
    affected: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.jtd_id is not None:
            data["jtd_id"] = self.jtd_id
        if self.affected is not None:
            data["affected"] = self.affected
        return data


class AdminRecoveryService:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.queue = QueueService(db)
        self.state_manager = JtdStateManager(db, self.queue)

    async def retry(self, jtd_id: str, actor: str | None, reason: str | None = None) -> ActionResult:
        """failed -> queued. retry_count is left as is."""
        job = await self.state_manager.get_job(jtd_id)
        if job.current_status != JtdStatus.FAILED or job.retry_count >= job.max_retries:
            raise NotRetryableError(jtd_id, job.current_status.value)

        await self.state_manager.transition(
            jtd_id, JtdStatus.QUEUED, PerformedByType.ADMIN, actor, reason or REASON_RETRY
        )
        return ActionResult(success=True, message=f"JTD {jtd_id} queued for retry", jtd_id=jtd_id)

    async def cancel(self, jtd_id: str, actor: str | None, reason: str | None = None) -> ActionResult:
        """Only before processing: there is no abort signal to a provider mid-delivery"""
        job = await self.state_manager.get_job(jtd_id)
        if job.current_status not in CANCELLABLE_STATUSES:
            raise NotCancellableError(jtd_id, job.current_status.value)

        await self.state_manager.transition(
            jtd_id, JtdStatus.CANCELLED, PerformedByType.ADMIN, actor, reason or REASON_CANCEL
        )
        return ActionResult(success=True, message=f"JTD {jtd_id} cancelled", jtd_id=jtd_id)

    async def force_complete(
        self,
        jtd_id: str,
        outcome: JtdStatus | str,
        actor: str | None,
        reason: str | None = None,
    ) -> ActionResult:
        """
        Close a ``processing`` job without the worker.

        ``sent`` -> sent. ``failed`` -> dead_letter, inserted straight into the
        DLQ since the job holds no retryable queue position any more.
        """
        try:
            outcome = JtdStatus(outcome)
        except ValueError:
            outcome = None
        if outcome not in _FORCE_COMPLETE_TARGETS:
            raise ValidationException("outcome must be 'sent' or 'failed'", field="outcome")

        job = await self.state_manager.get_job(jtd_id)
        if job.current_status != JtdStatus.PROCESSING:
            raise NotInProcessingError(jtd_id, job.current_status.value)

        reason = reason or REASON_FORCE_COMPLETE
        extra_values = None
        if outcome == JtdStatus.FAILED:
            extra_values = {"error_message": reason, "error_code": FORCE_FAILED_ERROR_CODE}

        await self.state_manager.transition(
            jtd_id,
            _FORCE_COMPLETE_TARGETS[outcome],
            PerformedByType.ADMIN,
            actor,
            reason,
            extra_values=extra_values,
        )
        return ActionResult(
            success=True,
            message=f"JTD {jtd_id} force-completed as {outcome.value}",
            jtd_id=jtd_id,
        )

    async def requeue_from_dlq(
        self,
        msg_id: int,
        actor: str | None,
        reason: str | None = None,
    ) -> ActionResult:
        """DLQ entry back to the Main Queue at default priority; counters untouched"""
        message = await self.queue.get_message(QueueName.DLQ, msg_id)
        if message is None:
            raise QueueMessageNotFoundError(QueueName.DLQ.value, msg_id)
        jtd_id = message.jtd_id

        await self.state_manager.transition(
            jtd_id,
            JtdStatus.QUEUED,
            PerformedByType.ADMIN,
            actor,
            reason or REASON_REQUEUE,
            queue_priority=settings.JTD_DEFAULT_PRIORITY,
        )
        return ActionResult(
            success=True,
            message=f"DLQ message {msg_id} requeued",
            jtd_id=jtd_id,
        )

    async def purge_dlq(self, actor: str | None, reason: str | None = None) -> ActionResult:
        """
        Drop every DLQ entry in one transaction.

        Jobs stay in the Job Store as ``dead_letter`` with no queue reference.
        Either the whole DLQ is purged or nothing is.
        """
        reason = reason or REASON_PURGE
        try:
            jtd_ids = await self.queue.purge(QueueName.DLQ)
            for jtd_id in jtd_ids:
                await self.state_manager.record_history(
                    jtd_id,
                    JtdStatus.DEAD_LETTER,
                    JtdStatus.DEAD_LETTER,
                    PerformedByType.ADMIN,
                    actor,
                    reason,
                )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.error(
                "DLQ purge failed, rolled back",
                extra_data={"performed_by_name": actor},
                exc_info=True,
            )
            raise

        logger.info(
            "DLQ purged",
            extra_data={
                "purged_count": len(jtd_ids),
                "performed_by_type": PerformedByType.ADMIN.value,
                "performed_by_name": actor,
                "reason": reason,
            }
        )
        return ActionResult(
            success=True,
            message=f"Purged {len(jtd_ids)} DLQ messages",
            affected=len(jtd_ids),
        )
