"""Outbound WhatsApp gateways."""
from channels.base import (
    BreakerState,
    CircuitBreaker,
    GatewayError,
    GatewayMetrics,
    HourlyWindow,
    MessagingGateway,
    MinuteBucket,
    NoActiveSessionError,
    RateLimitedGateway,
)
from channels.factory import create_gateway
from channels.mock_gateway import MockGateway
from channels.zapi_client import ZapiGateway

__all__ = [
    "MessagingGateway", "RateLimitedGateway",
    "GatewayError", "NoActiveSessionError",
    "MinuteBucket", "HourlyWindow", "BreakerState", "CircuitBreaker", "GatewayMetrics",
    "create_gateway", "MockGateway", "ZapiGateway",
]
