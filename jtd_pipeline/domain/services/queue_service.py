"""
Queue Service - lease-based Main Queue and Dead-Letter Queue

Both queues live in ``jtd_queue_messages`` so that every queue side effect
joins the caller's transaction. Nothing here commits: the calling service
owns the unit of work.

Ordering: ascending priority, then ``available_at`` (FIFO within a
priority), then ``msg_id``. A message is visible when ``vt <= now``.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from jtd_pipeline.core.clock import utcnow
from jtd_pipeline.core.logging import get_logger
from jtd_pipeline.db.models.jtd_queue_message import JtdQueueMessage, QueueName

logger = get_logger(__name__)

# Attempts to claim a candidate row before reporting the queue as empty
_LEASE_CLAIM_ATTEMPTS = 3


def calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff ``base_seconds * 2**retry_count`` capped at
    ``max_backoff_seconds``.

    Large retry counts short-circuit to the cap instead of computing the power.
    """
    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0
    retry_count = max(retry_count, 0)

    # smallest power of two whose product with base reaches the cap
    doublings_to_cap = max((max_backoff_seconds - 1) // base_seconds, 0).bit_length()
    if retry_count >= doublings_to_cap:
        return max_backoff_seconds
    return min(base_seconds << retry_count, max_backoff_seconds)


class QueueService:
    """Main Queue / DLQ primitives: enqueue, lease, ack, nack, dead-letter"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_message(self, queue_name: QueueName, msg_id: int) -> JtdQueueMessage | None:
        result = await self.db.execute(
            select(JtdQueueMessage).where(
                JtdQueueMessage.queue_name == queue_name.value,
                JtdQueueMessage.msg_id == msg_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_job_message(self, queue_name: QueueName, jtd_id: str) -> JtdQueueMessage | None:
        result = await self.db.execute(
            select(JtdQueueMessage).where(
                JtdQueueMessage.queue_name == queue_name.value,
                JtdQueueMessage.jtd_id == jtd_id,
            )
        )
        return result.scalar_one_or_none()

    async def enqueue(
        self,
        jtd_id: str,
        priority: int,
        not_before: datetime | None = None,
    ) -> JtdQueueMessage:
        """
        Put a job reference on the Main Queue, invisible until ``not_before``.

        A job has at most one Main Queue entry: if one already exists it is
        reset (new priority, new visibility, lease cleared) and keeps its
        ``read_ct``.
        """
        now = utcnow()
        visible_at = not_before or now

        message = await self.get_job_message(QueueName.MAIN, jtd_id)
        if message is None:
            message = JtdQueueMessage(
                queue_name=QueueName.MAIN.value,
                jtd_id=jtd_id,
                read_ct=0,
            )
            self.db.add(message)

        message.priority = priority
        message.enqueued_at = now
        message.available_at = visible_at
        message.vt = visible_at
        message.leased_by = None
        await self.db.flush()

        logger.debug(
            "Job enqueued",
            extra_data={
                "jtd_id": jtd_id,
                "msg_id": message.msg_id,
                "priority": priority,
                "not_before": visible_at.isoformat(),
            }
        )
        return message

    async def lease(
        self,
        visibility_timeout: int,
        worker_name: str | None = None,
    ) -> JtdQueueMessage | None:
        """
        Claim the next visible Main Queue entry for ``visibility_timeout``
        seconds and bump its read counter.

        Non-blocking: returns None when nothing is visible. The claim is a
        conditional UPDATE on ``vt``, so two workers racing for the same row
        cannot both win; on PostgreSQL ``SKIP LOCKED`` keeps them apart in
        the first place.
        """
        for _ in range(_LEASE_CLAIM_ATTEMPTS):
            now = utcnow()
            candidate = await self.db.execute(
                select(JtdQueueMessage.msg_id)
                .where(
                    JtdQueueMessage.queue_name == QueueName.MAIN.value,
                    JtdQueueMessage.vt <= now,
                )
                .order_by(
                    JtdQueueMessage.priority.asc(),
                    JtdQueueMessage.available_at.asc(),
                    JtdQueueMessage.msg_id.asc(),
                )
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            msg_id = candidate.scalar_one_or_none()
            if msg_id is None:
                return None

            claimed = await self.db.execute(
                update(JtdQueueMessage)
                .where(JtdQueueMessage.msg_id == msg_id, JtdQueueMessage.vt <= now)
                .values(
                    vt=now + timedelta(seconds=visibility_timeout),
                    read_ct=JtdQueueMessage.read_ct + 1,
                    last_read_at=now,
                    leased_by=worker_name,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 1:
                return await self.db.get(JtdQueueMessage, msg_id, populate_existing=True)

        return None

    async def ack(self, msg_id: int) -> bool:
        """Remove a Main Queue entry. Returns False if it was already gone."""
        result = await self.db.execute(
            delete(JtdQueueMessage)
            .where(
                JtdQueueMessage.queue_name == QueueName.MAIN.value,
                JtdQueueMessage.msg_id == msg_id,
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0

    async def nack(self, msg_id: int, delay_seconds: int = 0) -> bool:
        """Return a leased entry to the visible state, optionally after a delay"""
        visible_at = utcnow() + timedelta(seconds=max(delay_seconds, 0))
        result = await self.db.execute(
            update(JtdQueueMessage)
            .where(
                JtdQueueMessage.queue_name == QueueName.MAIN.value,
                JtdQueueMessage.msg_id == msg_id,
            )
            .values(vt=visible_at, leased_by=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def remove_job(self, queue_name: QueueName, jtd_id: str) -> int:
        result = await self.db.execute(
            delete(JtdQueueMessage)
            .where(
                JtdQueueMessage.queue_name == queue_name.value,
                JtdQueueMessage.jtd_id == jtd_id,
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    async def move_to_dlq(self, jtd_id: str, priority: int) -> JtdQueueMessage:
        """
        Move a job's Main Queue entry to the DLQ, carrying ``read_ct``.

        When the job has no Main Queue entry the DLQ entry is inserted
        directly. Age in the DLQ counts from this moment.
        """
        now = utcnow()
        main_message = await self.get_job_message(QueueName.MAIN, jtd_id)
        read_ct = main_message.read_ct if main_message is not None else 0
        if main_message is not None:
            await self.db.delete(main_message)

        dlq_message = await self.get_job_message(QueueName.DLQ, jtd_id)
        if dlq_message is None:
            dlq_message = JtdQueueMessage(queue_name=QueueName.DLQ.value, jtd_id=jtd_id)
            self.db.add(dlq_message)

        dlq_message.priority = priority
        dlq_message.enqueued_at = now
        dlq_message.available_at = now
        dlq_message.vt = now
        dlq_message.read_ct = read_ct
        dlq_message.leased_by = None
        await self.db.flush()

        logger.info(
            "Job moved to DLQ",
            extra_data={"jtd_id": jtd_id, "msg_id": dlq_message.msg_id, "read_ct": read_ct}
        )
        return dlq_message

    async def depth(self, queue_name: QueueName) -> int:
        result = await self.db.execute(
            select(func.count(JtdQueueMessage.msg_id)).where(
                JtdQueueMessage.queue_name == queue_name.value
            )
        )
        return result.scalar() or 0

    async def oldest_enqueued_at(
        self,
        queue_name: QueueName,
        visible_at: datetime | None = None,
    ) -> datetime | None:
        """With ``visible_at``, entries not yet visible at that time are left out"""
        where = [JtdQueueMessage.queue_name == queue_name.value]
        if visible_at is not None:
            where.append(JtdQueueMessage.vt <= visible_at)
        result = await self.db.execute(select(func.min(JtdQueueMessage.enqueued_at)).where(*where))
        return result.scalar()

    async def list_messages(
        self,
        queue_name: QueueName,
        *,
        offset: int = 0,
        limit: int = 50,
    ) -> list[JtdQueueMessage]:
        """Oldest first"""
        result = await self.db.execute(
            select(JtdQueueMessage)
            .where(JtdQueueMessage.queue_name == queue_name.value)
            .order_by(JtdQueueMessage.enqueued_at.asc(), JtdQueueMessage.msg_id.asc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def expired_leases(self, limit: int = 100) -> list[JtdQueueMessage]:
        """Main Queue entries that were leased and whose lease has run out"""
        result = await self.db.execute(
            select(JtdQueueMessage)
            .where(
                JtdQueueMessage.queue_name == QueueName.MAIN.value,
                JtdQueueMessage.read_ct > 0,
                JtdQueueMessage.leased_by.is_not(None),
                JtdQueueMessage.vt <= utcnow(),
            )
            .order_by(JtdQueueMessage.vt.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def purge(self, queue_name: QueueName) -> list[str]:
        """Delete every entry in ``queue_name``; returns the affected job ids"""
        result = await self.db.execute(
            select(JtdQueueMessage.jtd_id).where(JtdQueueMessage.queue_name == queue_name.value)
        )
        jtd_ids = list(result.scalars().all())
        if jtd_ids:
            await self.db.execute(
                delete(JtdQueueMessage)
                .where(JtdQueueMessage.queue_name == queue_name.value)
                .execution_options(synchronize_session="fetch")
            )
        return jtd_ids
