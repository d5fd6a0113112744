from prometheus_client import Counter, Gauge, Histogram

ORDERS_CREATED = Counter(
    "marketplace_orders_created_total",
    "Orders persisted by the order service",
    ["outcome"],  # created | replayed
)

ORDER_TRANSITIONS = Counter(
    "marketplace_order_transitions_total",
    "Order status transitions applied",
    ["from_status", "to_status"],
)

PAYMENT_OUTCOMES = Counter(
    "marketplace_payment_outcomes_total",
    "Payment initiation and reconciliation outcomes",
    ["outcome"],  # initiated | rejected | timeout | unavailable | circuit_open | success | failed
)

GATEWAY_LATENCY = Histogram(
    "marketplace_gateway_request_duration_seconds",
    "Latency of calls to the payment gateway",
    ["operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0],
)

CIRCUIT_STATE = Gauge(
    "marketplace_gateway_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
)
