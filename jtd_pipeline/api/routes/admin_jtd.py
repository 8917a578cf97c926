"""
Admin JTD Endpoints - Event Explorer, Queue Monitor and recovery actions

Read endpoints feed the dashboards. Mutations (retry, cancel, force-complete,
requeue-from-DLQ, purge-DLQ) return ``{success, message}`` or
``{success: false, error, error_code}``; the UI re-fetches after a success.
All endpoints require X-Admin-API-Key; the acting admin is X-Admin-Name.
"""
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from jtd_pipeline.api.dependencies.admin_auth import get_admin_actor, require_admin_api_key
from jtd_pipeline.api.routes.schemas import (
    ActionResponse,
    JtdResponse,
    PaginationResponse,
    StatusHistoryResponse,
    build_pagination,
    job_to_response,
)
from jtd_pipeline.core.exceptions import AppException
from jtd_pipeline.core.logging import get_logger
from jtd_pipeline.db.database import get_db
from jtd_pipeline.db.models.jtd import JtdChannel, JtdStatus
from jtd_pipeline.domain.services.admin_recovery_service import ActionResult, AdminRecoveryService
from jtd_pipeline.domain.services.jtd_service import JobFilters, JtdService
from jtd_pipeline.domain.services.metrics_service import MetricsService

logger = get_logger(__name__)

router = APIRouter()

_AUTH_RESPONSES = {
    401: {"description": "Missing API key"},
    403: {"description": "Invalid API key"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class PaginatedJtdResponse(BaseModel):
    items: list[JtdResponse]
    pagination: PaginationResponse


class QueueMessageInfo(BaseModel):
    msg_id: int
    queue_name: str
    read_ct: int
    enqueued_at: datetime
    visible_at: datetime


class JtdDetailResponse(BaseModel):
    job: JtdResponse
    history: list[StatusHistoryResponse]
    queue_message: Optional[QueueMessageInfo] = None
    recipient_data: dict[str, Any] = Field(default_factory=dict)
    template_data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DlqMessageResponse(BaseModel):
    msg_id: int
    jtd_id: str
    tenant_id: str
    tenant_name: str
    event_type: str
    channel: str
    status: str
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: int
    read_ct: int
    enqueued_at: datetime
    age_seconds: int


class PaginatedDlqResponse(BaseModel):
    items: list[DlqMessageResponse]
    pagination: PaginationResponse


class TenantStatsResponse(BaseModel):
    tenant_id: str
    tenant_name: str
    total_jtds: int
    sent: int
    failed: int
    success_rate: float
    total_cost: float
    by_channel: dict[str, int]


class JtdActionRequest(BaseModel):
    jtd_id: str = Field(min_length=1, max_length=36)
    reason: Optional[str] = Field(default=None, max_length=500)


class ForceCompleteRequest(JtdActionRequest):
    outcome: str = Field(pattern="^(sent|failed)$", description="sent | failed")


class RequeueDlqRequest(BaseModel):
    msg_id: int = Field(ge=1)
    reason: Optional[str] = Field(default=None, max_length=500)


class PurgeDlqRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


# ─── Helpers ────────────────────────────────────────────────────────────────

async def _run_action(
    db: AsyncSession,
    action_name: str,
    admin_name: str,
    action: Callable[[], Awaitable[ActionResult]],
):
    """Run an admin mutation; typed failures become ``{success: false}`` bodies"""
    try:
        result = await action()
    except AppException as exc:
        await db.rollback()
        logger.warning(
            "Admin action rejected",
            extra_data={
                "action": action_name,
                "admin_name": admin_name,
                "error_code": exc.error_code.value,
                "error": exc.message,
                **({"jtd_id": exc.details["jtd_id"]} if "jtd_id" in exc.details else {}),
            }
        )
        body = ActionResponse(
            success=False,
            error=exc.message,
            error_code=exc.error_code.value,
            details=exc.details,
        )
        return JSONResponse(status_code=exc.status_code, content=body.model_dump())

    logger.info(
        "Admin action completed",
        extra_data={"action": action_name, "admin_name": admin_name, **result.to_dict()}
    )
    return ActionResponse(**result.to_dict())


def _parse_enum(enum_cls, value: Optional[str], field: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {field}: {value}",
        )


# ─── Event Explorer ─────────────────────────────────────────────────────────

@router.get(
    "/events",
    response_model=PaginatedJtdResponse,
    summary="List JTDs",
    description="Filter by status, tenant, event type, channel and source type; newest first.",
    responses=_AUTH_RESPONSES,
)
async def list_events(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    status_filter: Optional[str] = Query(None, alias="status"),
    tenant_id: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None),
    channel: Optional[str] = Query(None),
    source_type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
) -> PaginatedJtdResponse:
    filters = JobFilters(
        status=_parse_enum(JtdStatus, status_filter, "status"),
        tenant_id=tenant_id,
        event_type=event_type,
        channel=_parse_enum(JtdChannel, channel, "channel"),
        source_type=source_type,
    )
    jobs, total = await JtdService(db).list_jobs(filters, page=page, limit=limit)
    return PaginatedJtdResponse(
        items=[job_to_response(job) for job in jobs],
        pagination=build_pagination(total, page, limit),
    )


@router.get(
    "/events/{jtd_id}",
    response_model=JtdDetailResponse,
    summary="JTD detail with full status history",
    responses={**_AUTH_RESPONSES, 404: {"description": "JTD not found"}},
)
async def get_event_detail(
    jtd_id: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> JtdDetailResponse:
    detail = await JtdService(db).get_job_detail(jtd_id)
    message = detail.queue_message
    return JtdDetailResponse(
        job=job_to_response(detail.job),
        history=[StatusHistoryResponse.model_validate(entry) for entry in detail.history],
        queue_message=QueueMessageInfo(
            msg_id=message.msg_id,
            queue_name=message.queue_name,
            read_ct=message.read_ct,
            enqueued_at=message.enqueued_at,
            visible_at=message.vt,
        ) if message is not None else None,
        recipient_data=detail.job.recipient_data or {},
        template_data=detail.job.template_data or {},
        metadata=detail.job.job_metadata or {},
    )


# ─── Queue Monitor ──────────────────────────────────────────────────────────

@router.get(
    "/queue-metrics",
    summary="Queue metrics snapshot",
    description="Main queue and DLQ depth/age, actionable counts, status distribution, last 24h.",
    responses=_AUTH_RESPONSES,
)
async def get_queue_metrics(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await MetricsService(db).get_queue_metrics()


@router.get(
    "/dlq-messages",
    response_model=PaginatedDlqResponse,
    summary="List DLQ messages",
    responses=_AUTH_RESPONSES,
)
async def list_dlq_messages(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
) -> PaginatedDlqResponse:
    items, total = await MetricsService(db).list_dlq_messages(page=page, limit=limit)
    return PaginatedDlqResponse(
        items=[DlqMessageResponse(**item) for item in items],
        pagination=build_pagination(total, page, limit),
    )


@router.get(
    "/tenant-stats",
    response_model=list[TenantStatsResponse],
    summary="Per-tenant delivery stats",
    responses=_AUTH_RESPONSES,
)
async def get_tenant_stats(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    tenant_id: Optional[str] = Query(None),
    days: Optional[int] = Query(None, ge=1, le=365),
) -> list[TenantStatsResponse]:
    stats = await MetricsService(db).get_tenant_stats(tenant_id=tenant_id, days=days)
    return [TenantStatsResponse(**entry) for entry in stats]


@router.get(
    "/worker-health",
    summary="Worker health",
    description="healthy | idle | degraded | stalled, with throughput, error rate and queue state.",
    responses=_AUTH_RESPONSES,
)
async def get_worker_health(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await MetricsService(db).get_worker_health()


# ─── Recovery actions ───────────────────────────────────────────────────────

@router.post(
    "/retry-event",
    response_model=ActionResponse,
    summary="Retry a failed JTD",
    responses={**_AUTH_RESPONSES, 404: {"description": "JTD not found"}, 409: {"description": "Not retryable"}},
)
async def retry_event(
    request: JtdActionRequest,
    admin_name: str = Depends(get_admin_actor),
    db: AsyncSession = Depends(get_db),
):
    service = AdminRecoveryService(db)
    return await _run_action(
        db, "retry", admin_name,
        lambda: service.retry(request.jtd_id, admin_name, request.reason),
    )


@router.post(
    "/cancel-event",
    response_model=ActionResponse,
    summary="Cancel a JTD that has not started processing",
    responses={**_AUTH_RESPONSES, 404: {"description": "JTD not found"}, 409: {"description": "Not cancellable"}},
)
async def cancel_event(
    request: JtdActionRequest,
    admin_name: str = Depends(get_admin_actor),
    db: AsyncSession = Depends(get_db),
):
    service = AdminRecoveryService(db)
    return await _run_action(
        db, "cancel", admin_name,
        lambda: service.cancel(request.jtd_id, admin_name, request.reason),
    )


@router.post(
    "/force-complete",
    response_model=ActionResponse,
    summary="Force-complete a processing JTD as sent or failed",
    responses={
        **_AUTH_RESPONSES,
        404: {"description": "JTD not found"},
        409: {"description": "Not in processing, or changed concurrently"},
    },
)
async def force_complete(
    request: ForceCompleteRequest,
    admin_name: str = Depends(get_admin_actor),
    db: AsyncSession = Depends(get_db),
):
    service = AdminRecoveryService(db)
    return await _run_action(
        db, "force_complete", admin_name,
        lambda: service.force_complete(request.jtd_id, request.outcome, admin_name, request.reason),
    )


@router.post(
    "/requeue-dlq",
    response_model=ActionResponse,
    summary="Move a DLQ message back to the main queue",
    responses={**_AUTH_RESPONSES, 404: {"description": "DLQ message not found"}},
)
async def requeue_dlq(
    request: RequeueDlqRequest,
    admin_name: str = Depends(get_admin_actor),
    db: AsyncSession = Depends(get_db),
):
    service = AdminRecoveryService(db)
    return await _run_action(
        db, "requeue_dlq", admin_name,
        lambda: service.requeue_from_dlq(request.msg_id, admin_name, request.reason),
    )


@router.post(
    "/purge-dlq",
    response_model=ActionResponse,
    summary="Purge every DLQ message",
    description="Jobs stay in the Job Store as dead_letter without a queue reference.",
    responses=_AUTH_RESPONSES,
)
async def purge_dlq(
    request: PurgeDlqRequest | None = None,
    admin_name: str = Depends(get_admin_actor),
    db: AsyncSession = Depends(get_db),
):
    service = AdminRecoveryService(db)
    reason = request.reason if request is not None else None
    return await _run_action(
        db, "purge_dlq", admin_name,
        lambda: service.purge_dlq(admin_name, reason),
    )
