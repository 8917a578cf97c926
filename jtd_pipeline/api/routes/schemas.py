"""
Shared response models for the JTD routes
"""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class PaginationResponse(BaseModel):
    current_page: int
    total_pages: int
    total_records: int
    has_next: bool
    has_prev: bool


def build_pagination(total: int, page: int, limit: int) -> PaginationResponse:
    total_pages = max(1, (total + limit - 1) // limit)
    return PaginationResponse(
        current_page=page,
        total_pages=total_pages,
        total_records=total,
        has_next=page < total_pages,
        has_prev=page > 1,
    )


class JtdResponse(BaseModel):
    """A job as shown in lists"""
    id: str
    event_type: str
    channel: str
    tenant_id: str
    source_type: str
    source_id: Optional[str] = None
    status: str
    priority: int
    retry_count: int
    max_retries: int
    cost: Optional[float] = None
    provider_code: Optional[str] = None
    provider_message_id: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    blocked_reason: Optional[str] = None
    is_live: bool
    scheduled_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    performed_by_type: str
    performed_by_name: Optional[str] = None


class StatusHistoryResponse(BaseModel):
    id: int
    from_status: Optional[str] = None
    to_status: str
    duration_seconds: float
    performed_by_type: str
    performed_by_name: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ActionResponse(BaseModel):
    """Result of an admin mutation"""
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    jtd_id: Optional[str] = None
    affected: Optional[int] = None
    details: dict[str, Any] = Field(default_factory=dict)


def job_to_response(job) -> JtdResponse:
    return JtdResponse(
        id=job.id,
        event_type=job.event_type,
        channel=job.channel.value,
        tenant_id=job.tenant_id,
        source_type=job.source_type,
        source_id=job.source_id,
        status=job.current_status.value,
        priority=job.priority,
        retry_count=job.retry_count,
        max_retries=job.max_retries,
        cost=float(job.cost) if job.cost is not None else None,
        provider_code=job.provider_code,
        provider_message_id=job.provider_message_id,
        error_message=job.error_message,
        error_code=job.error_code,
        blocked_reason=job.blocked_reason,
        is_live=job.is_live,
        scheduled_at=job.scheduled_at,
        executed_at=job.executed_at,
        sent_at=job.sent_at,
        delivered_at=job.delivered_at,
        completed_at=job.completed_at,
        created_at=job.created_at,
        performed_by_type=job.performed_by_type,
        performed_by_name=job.performed_by_name,
    )
