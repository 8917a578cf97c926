"""
Tenant JTD configuration

TenantConfig holds the tenant-wide live/test switch and credit balance;
TenantSourceConfig holds per-source-type channel toggles. Missing rows are
resolved by the channel gate: channels fail open, live mode fails closed.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Numeric, UniqueConstraint

from jtd_pipeline.core.clock import utcnow
from jtd_pipeline.db.database import Base


class TenantConfig(Base):
    __tablename__ = "jtd_tenant_config"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, unique=True)
    tenant_name = Column(String(200), nullable=True)
    is_live = Column(Boolean, nullable=False, default=False)
    # Prepaid balance for live delivery; NULL means unmetered
    credit_balance = Column(Numeric(12, 4), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class TenantSourceConfig(Base):
    __tablename__ = "jtd_tenant_source_config"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    source_type = Column(String(50), nullable=False)

    email_enabled = Column(Boolean, nullable=False, default=True)
    sms_enabled = Column(Boolean, nullable=False, default=True)
    whatsapp_enabled = Column(Boolean, nullable=False, default=True)
    inapp_enabled = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "source_type", name="uq_jtd_tenant_source_config"),
    )
