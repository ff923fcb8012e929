"""
Gateway Factory - instantiates the configured messaging gateway.

    gateway:
      type: "zapi"          # zapi | mock
      rate_per_minute: 10   # per-session token bucket
      max_per_hour: 100     # per-session rolling cap

Every gateway returned is wrapped in RateLimitedGateway.
"""
from __future__ import annotations

import structlog

from channels.base import MessagingGateway, RateLimitedGateway
from config.settings import GatewayConfig, get_settings

logger = structlog.get_logger()


def create_gateway(config: GatewayConfig = None) -> MessagingGateway:
    config = config or get_settings().gateway
    gateway_type = (config.type or "mock").lower()

    if gateway_type == "zapi":
        from channels.zapi_client import ZapiGateway
        inner: MessagingGateway = ZapiGateway(config)
    elif gateway_type == "mock":
        from channels.mock_gateway import MockGateway
        inner = MockGateway()
    else:
        raise ValueError(f"Unknown gateway type: {config.type}. Supported: zapi, mock")

    logger.info("gateway_created", type=gateway_type,
                rate_per_minute=config.rate_per_minute, max_per_hour=config.max_per_hour)
    return RateLimitedGateway(inner, config.rate_per_minute, config.max_per_hour)
