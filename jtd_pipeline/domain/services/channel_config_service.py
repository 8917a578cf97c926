"""
Tenant Channel Config Gate

Consulted before a job is created:
- channel toggles fail OPEN: no active row for (tenant, source_type) means
  every channel is enabled
- live mode fails CLOSED: no active tenant row means test mode

Also supplies the worker precondition that holds live jobs of tenants with
no credit left.
"""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jtd_pipeline.core.logging import get_logger
from jtd_pipeline.db.models.jtd import Jtd, JtdChannel
from jtd_pipeline.db.models.tenant_config import TenantConfig, TenantSourceConfig

logger = get_logger(__name__)

BLOCKED_NO_CREDITS = "no_credits"

_CHANNEL_FLAGS = {
    JtdChannel.EMAIL: "email_enabled",
    JtdChannel.SMS: "sms_enabled",
    JtdChannel.WHATSAPP: "whatsapp_enabled",
    JtdChannel.INAPP: "inapp_enabled",
}


class ChannelConfigService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_source_config(self, tenant_id: str, source_type: str) -> TenantSourceConfig | None:
        result = await self.db.execute(
            select(TenantSourceConfig).where(
                TenantSourceConfig.tenant_id == tenant_id,
                TenantSourceConfig.source_type == source_type,
                TenantSourceConfig.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def get_tenant_config(self, tenant_id: str) -> TenantConfig | None:
        result = await self.db.execute(
            select(TenantConfig).where(
                TenantConfig.tenant_id == tenant_id,
                TenantConfig.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def is_channel_enabled(
        self,
        tenant_id: str,
        source_type: str,
        channel: JtdChannel | str,
    ) -> bool:
        config = await self.get_source_config(tenant_id, source_type)
        if config is None:
            logger.debug(
                "No channel config, defaulting to enabled",
                extra_data={"tenant_id": tenant_id, "source_type": source_type}
            )
            return True
        return bool(getattr(config, _CHANNEL_FLAGS[JtdChannel(channel)]))

    async def resolve_is_live(self, tenant_id: str) -> bool:
        config = await self.get_tenant_config(tenant_id)
        if config is None:
            logger.debug(
                "No tenant config, defaulting to test mode",
                extra_data={"tenant_id": tenant_id}
            )
            return False
        return bool(config.is_live)

    async def check_credits(self, job: Jtd) -> str | None:
        """
        Worker precondition: a live job waits while its tenant's credit
        balance is spent. Test-mode jobs and unmetered tenants always run.
        """
        if not job.is_live:
            return None
        config = await self.get_tenant_config(job.tenant_id)
        if config is None or config.credit_balance is None:
            return None
        if config.credit_balance <= 0:
            return BLOCKED_NO_CREDITS
        return None

    async def get_tenant_names(self, tenant_ids: set[str]) -> dict[str, str]:
        """tenant_id -> tenant_name for the ids that have a configured name"""
        if not tenant_ids:
            return {}
        result = await self.db.execute(
            select(TenantConfig.tenant_id, TenantConfig.tenant_name).where(
                TenantConfig.tenant_id.in_(tenant_ids)
            )
        )
        return {tenant_id: name for tenant_id, name in result.all() if name}
