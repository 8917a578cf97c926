"""
Metrics Service - read-only rollups for the JTD admin dashboards

Everything is computed on demand from the Job Store, status history and
queue tables; there is no materialised state to keep in sync.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from jtd_pipeline.core.clock import utcnow, seconds_between
from jtd_pipeline.core.config import settings
from jtd_pipeline.db.models.jtd import Jtd, JtdStatus
from jtd_pipeline.db.models.jtd_queue_message import JtdQueueMessage, QueueName
from jtd_pipeline.db.models.jtd_status_history import JtdStatusHistory
from jtd_pipeline.domain.services.channel_config_service import ChannelConfigService
from jtd_pipeline.domain.services.queue_service import QueueService

# error rate over the last hour above which the worker is "degraded"
DEGRADED_ERROR_RATE = 0.25

_FAILED_STATUSES = (JtdStatus.FAILED, JtdStatus.DEAD_LETTER)


def _age_seconds(since: datetime | None, now: datetime) -> int:
    return int(seconds_between(since, now)) if since else 0


def _enum_key(value) -> str:
    return value.value if hasattr(value, "value") else str(value)


class MetricsService:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.queue = QueueService(db)
        self.channel_config = ChannelConfigService(db)

    async def _count(self, *where) -> int:
        result = await self.db.execute(select(func.count(Jtd.id)).where(Jtd.is_active.is_(True), *where))
        return result.scalar() or 0

    async def _queue_snapshot(self, queue_name: QueueName, now: datetime) -> dict[str, int]:
        # future-scheduled and backed-off Main Queue entries do not count as waiting
        visible_at = now if queue_name == QueueName.MAIN else None
        return {
            "length": await self.queue.depth(queue_name),
            "oldest_age_sec": _age_seconds(await self.queue.oldest_enqueued_at(queue_name, visible_at), now),
        }

    # ==================== Queue metrics ====================

    async def get_queue_metrics(self) -> dict[str, Any]:
        now = utcnow()
        since_24h = now - timedelta(hours=24)

        actionable = {
            "currently_processing": await self._count(Jtd.current_status == JtdStatus.PROCESSING),
            "failed_retryable": await self._count(
                Jtd.current_status == JtdStatus.FAILED,
                Jtd.retry_count < Jtd.max_retries,
            ),
            "scheduled_due": await self._count(
                Jtd.current_status == JtdStatus.SCHEDULED,
                Jtd.scheduled_at <= now,
            ),
            "no_credits_waiting": await self._count(
                Jtd.current_status == JtdStatus.QUEUED,
                Jtd.blocked_reason.is_not(None),
            ),
        }

        distribution = {status.value: 0 for status in JtdStatus}
        rows = await self.db.execute(
            select(Jtd.current_status, func.count(Jtd.id))
            .where(Jtd.is_active.is_(True))
            .group_by(Jtd.current_status)
        )
        for status, count in rows.all():
            distribution[_enum_key(status)] = count

        by_event_type: dict[str, int] = {}
        rows = await self.db.execute(
            select(Jtd.event_type, func.count(Jtd.id))
            .where(Jtd.created_at >= since_24h)
            .group_by(Jtd.event_type)
        )
        for event_type, count in rows.all():
            by_event_type[event_type] = count

        by_channel: dict[str, int] = {}
        rows = await self.db.execute(
            select(Jtd.channel, func.count(Jtd.id))
            .where(Jtd.created_at >= since_24h)
            .group_by(Jtd.channel)
        )
        for channel, count in rows.all():
            by_channel[_enum_key(channel)] = count

        return {
            "main_queue": await self._queue_snapshot(QueueName.MAIN, now),
            "dlq": await self._queue_snapshot(QueueName.DLQ, now),
            "actionable": actionable,
            "status_distribution": distribution,
            "last_24h": {"by_event_type": by_event_type, "by_channel": by_channel},
            "generated_at": now.isoformat(),
        }

    # ==================== DLQ listing ====================

    async def list_dlq_messages(self, *, page: int = 1, limit: int = 50) -> tuple[list[dict[str, Any]], int]:
        """DLQ entries joined with their jobs, oldest first"""
        now = utcnow()
        total = await self.queue.depth(QueueName.DLQ)

        rows = await self.db.execute(
            select(JtdQueueMessage, Jtd)
            .join(Jtd, Jtd.id == JtdQueueMessage.jtd_id)
            .where(JtdQueueMessage.queue_name == QueueName.DLQ.value)
            .order_by(JtdQueueMessage.enqueued_at.asc(), JtdQueueMessage.msg_id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        pairs = rows.all()
        tenant_names = await self.channel_config.get_tenant_names({job.tenant_id for _, job in pairs})

        items = [
            {
                "msg_id": message.msg_id,
                "jtd_id": job.id,
                "tenant_id": job.tenant_id,
                "tenant_name": tenant_names.get(job.tenant_id, job.tenant_id),
                "event_type": job.event_type,
                "channel": _enum_key(job.channel),
                "status": _enum_key(job.current_status),
                "error_message": job.error_message,
                "error_code": job.error_code,
                "retry_count": job.retry_count,
                "read_ct": message.read_ct,
                "enqueued_at": message.enqueued_at,
                "age_seconds": _age_seconds(message.enqueued_at, now),
            }
            for message, job in pairs
        ]
        return items, total

    # ==================== Tenant stats ====================

    async def get_tenant_stats(self, tenant_id: str | None = None, days: int | None = None) -> list[dict[str, Any]]:
        where = [Jtd.is_active.is_(True)]
        if tenant_id:
            where.append(Jtd.tenant_id == tenant_id)
        if days:
            where.append(Jtd.created_at >= utcnow() - timedelta(days=days))

        rows = await self.db.execute(
            select(
                Jtd.tenant_id,
                Jtd.current_status,
                Jtd.channel,
                func.count(Jtd.id),
                func.coalesce(func.sum(Jtd.cost), 0),
            )
            .where(*where)
            .group_by(Jtd.tenant_id, Jtd.current_status, Jtd.channel)
        )

        stats: dict[str, dict[str, Any]] = {}
        for row_tenant, status, channel, count, cost in rows.all():
            entry = stats.setdefault(row_tenant, {
                "tenant_id": row_tenant,
                "total_jtds": 0,
                "sent": 0,
                "failed": 0,
                "total_cost": 0.0,
                "by_channel": {},
            })
            entry["total_jtds"] += count
            if status == JtdStatus.SENT:
                entry["sent"] += count
            elif status in _FAILED_STATUSES:
                entry["failed"] += count
            entry["total_cost"] += float(cost or 0)
            channel_key = _enum_key(channel)
            entry["by_channel"][channel_key] = entry["by_channel"].get(channel_key, 0) + count

        tenant_names = await self.channel_config.get_tenant_names(set(stats))
        result = []
        for entry in sorted(stats.values(), key=lambda item: item["total_jtds"], reverse=True):
            total = entry["total_jtds"]
            entry["tenant_name"] = tenant_names.get(entry["tenant_id"], entry["tenant_id"])
            entry["success_rate"] = round(entry["sent"] * 100.0 / total, 2) if total else 0.0
            entry["total_cost"] = round(entry["total_cost"], 4)
            result.append(entry)
        return result

    # ==================== Worker health ====================

    async def get_worker_health(self) -> dict[str, Any]:
        now = utcnow()
        hour_ago = now - timedelta(hours=1)
        day_ago = now - timedelta(hours=24)
        stuck_before = now - timedelta(seconds=settings.JTD_STUCK_PROCESSING_SECONDS)

        processing = await self._count(Jtd.current_status == JtdStatus.PROCESSING)
        stuck_count = await self._count(
            Jtd.current_status == JtdStatus.PROCESSING,
            Jtd.executed_at < stuck_before,
        )
        sent_1h = await self._count(Jtd.sent_at >= hour_ago)
        sent_24h = await self._count(Jtd.sent_at >= day_ago)

        failures_1h = (await self.db.execute(
            select(func.count(JtdStatusHistory.id)).where(
                JtdStatusHistory.from_status == JtdStatus.PROCESSING.value,
                JtdStatusHistory.to_status.in_([s.value for s in _FAILED_STATUSES]),
                JtdStatusHistory.created_at >= hour_ago,
            )
        )).scalar() or 0
        attempts_1h = sent_1h + failures_1h
        error_rate_1h = round(failures_1h / attempts_1h, 4) if attempts_1h else 0.0

        avg_duration = (await self.db.execute(
            select(func.avg(JtdStatusHistory.duration_seconds)).where(
                and_(
                    JtdStatusHistory.from_status == JtdStatus.PROCESSING.value,
                    JtdStatusHistory.to_status == JtdStatus.SENT.value,
                    JtdStatusHistory.created_at >= day_ago,
                )
            )
        )).scalar()

        last_executed_at = (await self.db.execute(select(func.max(Jtd.executed_at)))).scalar()

        visible = (await self.db.execute(
            select(func.count(JtdQueueMessage.msg_id)).where(
                JtdQueueMessage.queue_name == QueueName.MAIN.value,
                JtdQueueMessage.vt <= now,
            )
        )).scalar() or 0
        main_snapshot = await self._queue_snapshot(QueueName.MAIN, now)

        if main_snapshot["length"] == 0 and processing == 0:
            status = "idle"
        elif visible and (last_executed_at is None or last_executed_at < stuck_before):
            status = "stalled"
        elif stuck_count or error_rate_1h > DEGRADED_ERROR_RATE:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "stuck_count": stuck_count,
            "currently_processing": processing,
            "throughput": {
                "last_1h": sent_1h,
                "last_24h": sent_24h,
                "avg_duration_sec": round(float(avg_duration), 2) if avg_duration is not None else None,
            },
            "errors": {"failures_1h": failures_1h, "error_rate_1h": error_rate_1h},
            "last_executed_at": last_executed_at.isoformat() if last_executed_at else None,
            "queue": {
                "length": main_snapshot["length"],
                "visible": visible,
                "oldest_age_sec": main_snapshot["oldest_age_sec"],
                "dlq_length": await self.queue.depth(QueueName.DLQ),
            },
            "generated_at": now.isoformat(),
        }
