"""
Sandbox provider for test-mode tenants (``is_live = false``).

Nothing leaves the process: the message is logged and accepted with a
synthetic provider message id and zero cost.
"""
from __future__ import annotations

import uuid
from decimal import Decimal

from jtd_pipeline.core.logging import get_logger
from jtd_pipeline.db.models.jtd import Jtd, JtdChannel
from jtd_pipeline.domain.services.providers.base_provider import (
    BaseDeliveryProvider,
    DeliveryResult,
)

logger = get_logger(__name__)


class SandboxProvider(BaseDeliveryProvider):

    @property
    def provider_name(self) -> str:
        return "sandbox"

    async def send(self, job: Jtd) -> DeliveryResult:
        recipient = self.resolve_recipient(job)
        message_id = f"sandbox-{uuid.uuid4().hex}"
        logger.info(
            "Sandbox delivery accepted",
            extra_data={
                "jtd_id": job.id,
                "tenant_id": job.tenant_id,
                "channel": JtdChannel(job.channel).value,
                "recipient": recipient,
                "provider_message_id": message_id,
            }
        )
        return DeliveryResult(
            provider_code=self.provider_name,
            provider_message_id=message_id,
            cost=Decimal("0"),
        )
