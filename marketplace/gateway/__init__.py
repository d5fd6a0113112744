from marketplace.gateway.base import (
    DirectPaymentResult,
    GatewayTransaction,
    HostedPaymentResult,
    PaymentGateway,
    map_gateway_status,
)
from marketplace.gateway.circuit_breaker import CircuitBreaker, CircuitState
from marketplace.gateway.fapshi import FapshiGateway

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "DirectPaymentResult",
    "FapshiGateway",
    "GatewayTransaction",
    "HostedPaymentResult",
    "PaymentGateway",
    "map_gateway_status",
]
