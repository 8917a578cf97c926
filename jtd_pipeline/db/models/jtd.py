"""
JTD Model - Job To Deliver records (the Job Store)

One row per outbound notification. Rows are long-lived for audit; normal
operation never deletes them, cancellation and DLQ purge only change status
and queue presence.
"""
import enum
import uuid
from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Boolean, Numeric, Index,
)

from jtd_pipeline.core.clock import utcnow
from jtd_pipeline.db.database import Base


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class JtdChannel(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    INAPP = "inapp"


class JtdStatus(str, enum.Enum):
    CREATED = "created"
    PENDING = "pending"
    QUEUED = "queued"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"
    CANCELLED = "cancelled"


class PerformedByType(str, enum.Enum):
    SYSTEM = "system"
    ADMIN = "admin"
    WORKER = "worker"


class Jtd(Base):
    """A unit of outbound notification work"""

    __tablename__ = "jtd_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    event_type = Column(String(50), nullable=False, index=True)  # e.g. "notification"
    channel = Column(
        SQLEnum(JtdChannel, name="jtd_channel", values_callable=_enum_values),
        nullable=False,
    )

    tenant_id = Column(String(64), nullable=False, index=True)
    source_type = Column(String(50), nullable=False)  # e.g. "user_invite"
    source_id = Column(String(64), nullable=True)

    current_status = Column(
        SQLEnum(JtdStatus, name="jtd_status", values_callable=_enum_values),
        nullable=False,
        default=JtdStatus.CREATED,
        index=True,
    )
    priority = Column(Integer, nullable=False, default=5)

    recipient_data = Column(JSON, nullable=False, default=dict)  # email / mobile / name
    template_data = Column(JSON, nullable=False, default=dict)  # opaque to the pipeline
    job_metadata = Column("metadata", JSON, nullable=False, default=dict)

    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)

    cost = Column(Numeric(10, 4), nullable=True)
    provider_code = Column(String(50), nullable=True)
    provider_message_id = Column(String(128), nullable=True, index=True)

    error_message = Column(String(1000), nullable=True)
    error_code = Column(String(50), nullable=True)
    # External precondition the worker is waiting on (e.g. "no_credits")
    blocked_reason = Column(String(50), nullable=True)

    # Timestamps
    scheduled_at = Column(DateTime, nullable=True)  # null = immediate
    executed_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    status_changed_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    is_live = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    performed_by_type = Column(String(20), nullable=False, default=PerformedByType.SYSTEM.value)
    performed_by_name = Column(String(100), nullable=True)

    __table_args__ = (
        Index("ix_jtd_jobs_source", "source_type", "source_id"),
        Index("ix_jtd_jobs_status_scheduled", "current_status", "scheduled_at"),
    )

    @property
    def is_retryable(self) -> bool:
        return self.current_status == JtdStatus.FAILED and self.retry_count < self.max_retries
