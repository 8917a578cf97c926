"""
Provider Factory - picks the transport for a job.

Live jobs go through the HTTP gateway, test-mode jobs through the sandbox.
Instances are process-wide singletons.
"""
from __future__ import annotations

import threading

from jtd_pipeline.core.logging import get_logger
from jtd_pipeline.domain.services.providers.base_provider import BaseDeliveryProvider

logger = get_logger(__name__)

_live_provider: BaseDeliveryProvider | None = None
_sandbox_provider: BaseDeliveryProvider | None = None
_lock = threading.Lock()


def get_delivery_provider(is_live: bool) -> BaseDeliveryProvider:
    global _live_provider, _sandbox_provider
    if is_live:
        if _live_provider is None:
            with _lock:
                if _live_provider is None:
                    from jtd_pipeline.domain.services.providers.gateway_provider import GatewayProvider

                    _live_provider = GatewayProvider()
                    logger.info("Delivery provider initialised", extra_data={"provider": "gateway"})
        return _live_provider

    if _sandbox_provider is None:
        with _lock:
            if _sandbox_provider is None:
                from jtd_pipeline.domain.services.providers.sandbox_provider import SandboxProvider

                _sandbox_provider = SandboxProvider()
                logger.info("Delivery provider initialised", extra_data={"provider": "sandbox"})
    return _sandbox_provider


def reset_providers() -> None:
    """Drop cached providers (tests only)"""
    global _live_provider, _sandbox_provider
    with _lock:
        _live_provider = None
        _sandbox_provider = None
