"""
Gateway Provider - live delivery through the notification HTTP gateway.

POST {JTD_GATEWAY_URL}/send with the job's channel, recipient and template
payload. The gateway answers ``{"message_id": ..., "cost": ...}``.

A single attempt per call: retries belong to the queue (backoff,
max_retries, DLQ), not to the provider.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation

import httpx

from jtd_pipeline.core.config import settings
from jtd_pipeline.core.exceptions import ProviderError
from jtd_pipeline.core.logging import get_logger
from jtd_pipeline.db.models.jtd import Jtd, JtdChannel
from jtd_pipeline.domain.services.providers.base_provider import (
    BaseDeliveryProvider,
    DeliveryResult,
)

logger = get_logger(__name__)


def _parse_cost(raw) -> Decimal | None:
    if raw is None:
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        return None


class GatewayProvider(BaseDeliveryProvider):

    def __init__(
        self,
        gateway_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._gateway_url = gateway_url if gateway_url is not None else settings.JTD_GATEWAY_URL
        self._api_key = api_key if api_key is not None else settings.JTD_GATEWAY_API_KEY
        self._timeout = timeout if timeout is not None else settings.JTD_GATEWAY_TIMEOUT_SECONDS

    @property
    def provider_name(self) -> str:
        return "gateway"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_payload(self, job: Jtd) -> dict:
        channel = JtdChannel(job.channel)
        return {
            "jtd_id": job.id,
            "tenant_id": job.tenant_id,
            "event_type": job.event_type,
            "channel": channel.value,
            "to": self.resolve_recipient(job),
            "recipient": job.recipient_data or {},
            "template_data": job.template_data or {},
            "metadata": job.job_metadata or {},
        }

    async def send(self, job: Jtd) -> DeliveryResult:
        if not self._gateway_url:
            raise ProviderError(
                provider_code=self.provider_name,
                message="JTD_GATEWAY_URL is not configured",
                provider_error_code="NOT_CONFIGURED",
            )

        payload = self._build_payload(job)

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._gateway_url}/send",
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.TimeoutException:
            raise ProviderError(
                provider_code=self.provider_name,
                message="gateway request timed out",
                provider_error_code="TIMEOUT",
                details={"timeout_seconds": self._timeout},
            )
        except httpx.RequestError as exc:
            raise ProviderError(
                provider_code=self.provider_name,
                message=f"gateway network error: {exc}",
                provider_error_code="NETWORK_ERROR",
            )

        if response.status_code not in (200, 201, 202):
            logger.warning(
                "Gateway rejected delivery",
                extra_data={"jtd_id": job.id, "status_code": response.status_code}
            )
            raise ProviderError.from_response(self.provider_name, response)

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            # accepted, but the body carries no message id or cost
            body = {}

        return DeliveryResult(
            provider_code=self.provider_name,
            provider_message_id=body.get("message_id"),
            cost=_parse_cost(body.get("cost")),
        )
