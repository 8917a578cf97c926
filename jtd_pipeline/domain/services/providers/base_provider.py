"""
Base interface for JTD transport providers.

The worker depends on this interface only; live and sandbox delivery are
interchangeable implementations chosen per job by ``is_live``.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

from jtd_pipeline.core.exceptions import ProviderError
from jtd_pipeline.db.models.jtd import Jtd, JtdChannel

# recipient_data key each channel is addressed by
RECIPIENT_KEYS = {
    JtdChannel.EMAIL: "email",
    JtdChannel.SMS: "mobile",
    JtdChannel.WHATSAPP: "mobile",
    JtdChannel.INAPP: "user_id",
}


@dataclass(frozen=True)
class DeliveryResult:
    """What a provider reports back after accepting a message"""

    provider_code: str
    provider_message_id: str | None = None
    cost: Decimal | None = None


class BaseDeliveryProvider(ABC):
    """
    Uniform delivery interface.

    Implementations raise ProviderError on any failure; the worker turns that
    into a failed attempt on the job.
    """

    @abstractmethod
    async def send(self, job: Jtd) -> DeliveryResult:
        """Deliver one job. Raises ProviderError on failure."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider code stored on the job and used in logs"""

    def resolve_recipient(self, job: Jtd) -> str:
        """Channel address from ``recipient_data``, or ProviderError"""
        channel = JtdChannel(job.channel)
        key = RECIPIENT_KEYS[channel]
        address = (job.recipient_data or {}).get(key)
        if not address:
            raise ProviderError(
                provider_code=self.provider_name,
                message=f"recipient_data has no '{key}' for channel {channel.value}",
                provider_error_code="INVALID_RECIPIENT",
            )
        return str(address)
