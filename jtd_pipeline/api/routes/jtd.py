"""
JTD collaborator endpoints - job creation, status lookup, delivery receipts

Called by the business flows that originate notifications (e.g. the
invitation flow) and by the transport gateway for receipts.
"""
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from jtd_pipeline.db.database import get_db
from jtd_pipeline.db.models.jtd import JtdChannel
from jtd_pipeline.domain.services.jtd_service import JtdService

router = APIRouter()


class JtdCreateRequest(BaseModel):
    event_type: str = Field(min_length=1, max_length=50)
    channel: JtdChannel
    tenant_id: str = Field(min_length=1, max_length=64)
    source_type: str = Field(min_length=1, max_length=50)
    source_id: Optional[str] = Field(default=None, max_length=64)
    recipient_data: dict[str, Any] = Field(default_factory=dict)
    template_data: dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = Field(default=None, ge=1, le=100)
    scheduled_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_live: Optional[bool] = None
    max_retries: Optional[int] = Field(default=None, ge=1, le=20)


class JtdCreateResponse(BaseModel):
    success: bool
    jtd_id: Optional[str] = None
    skipped: Optional[bool] = None
    error: Optional[str] = None


class JtdStatusResponse(BaseModel):
    jtd_id: str
    status: str
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    error: Optional[str] = None


class DeliveryReceiptRequest(BaseModel):
    provider_message_id: str = Field(min_length=1, max_length=128)
    delivered_at: Optional[datetime] = None


@router.post(
    "",
    response_model=JtdCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a JTD",
    description=(
        "Creates a notification job after checking the tenant channel config. "
        "A disabled channel returns success=false, skipped=true with status 200."
    ),
    responses={
        200: {"description": "Channel disabled, creation skipped"},
        500: {"description": "Job could not be stored"},
    },
)
async def create_jtd(
    request: JtdCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    result = await JtdService(db).create_jtd(
        event_type=request.event_type,
        channel=request.channel,
        tenant_id=request.tenant_id,
        source_type=request.source_type,
        source_id=request.source_id,
        recipient_data=request.recipient_data,
        template_data=request.template_data,
        priority=request.priority,
        scheduled_at=request.scheduled_at,
        metadata=request.metadata,
        is_live=request.is_live,
        max_retries=request.max_retries,
    )
    if result.success:
        return JtdCreateResponse(**result.to_dict())

    status_code = status.HTTP_200_OK if result.skipped else status.HTTP_500_INTERNAL_SERVER_ERROR
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.get(
    "/status",
    response_model=JtdStatusResponse,
    summary="Delivery status for a business entity",
    responses={404: {"description": "No job for this source"}},
)
async def get_jtd_status(
    source_type: str = Query(..., min_length=1),
    source_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
) -> JtdStatusResponse:
    job_status = await JtdService(db).get_status(source_type, source_id)
    if job_status is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No JTD for {source_type}/{source_id}",
        )
    return JtdStatusResponse(**job_status)


@router.post(
    "/receipts",
    response_model=JtdStatusResponse,
    summary="Record a provider delivery receipt",
    responses={404: {"description": "Unknown provider message id"}},
)
async def record_delivery_receipt(
    request: DeliveryReceiptRequest,
    db: AsyncSession = Depends(get_db),
) -> JtdStatusResponse:
    job = await JtdService(db).record_delivery_receipt(
        request.provider_message_id, request.delivered_at
    )
    return JtdStatusResponse(
        jtd_id=job.id,
        status=job.current_status.value,
        sent_at=job.sent_at,
        delivered_at=job.delivered_at,
        error=job.error_message,
    )
