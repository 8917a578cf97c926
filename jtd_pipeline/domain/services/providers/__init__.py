"""
JTD transport providers
"""
from jtd_pipeline.domain.services.providers.base_provider import (
    BaseDeliveryProvider,
    DeliveryResult,
)
from jtd_pipeline.domain.services.providers.provider_factory import (
    get_delivery_provider,
    reset_providers,
)

__all__ = [
    "BaseDeliveryProvider",
    "DeliveryResult",
    "get_delivery_provider",
    "reset_providers",
]
