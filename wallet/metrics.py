from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

__all__ = [
    "NOTIFICATION_FAILURES",
    "NOTIFICATION_QUEUE_OVERFLOWS",
    "OPERATIONS_TOTAL",
    "OPERATION_LATENCY",
    "PASSCODE_OUTCOMES",
    "PROMO_INTENTS",
    "metrics_handler",
]


OPERATIONS_TOTAL = Counter(
    "wallet_operations_total",
    "Engine operations by name and result.",
    labelnames=("operation", "result"),
)

OPERATION_LATENCY = Histogram(
    "wallet_operation_latency_seconds",
    "Time spent in engine operations.",
    labelnames=("operation",),
)

PASSCODE_OUTCOMES = Counter(
    "wallet_passcode_outcomes_total",
    "Passcode validation outcomes.",
    labelnames=("outcome",),
)

NOTIFICATION_FAILURES = Counter(
    "wallet_notification_failures_total",
    "Notifications that could not be delivered.",
)

NOTIFICATION_QUEUE_OVERFLOWS = Counter(
    "wallet_notification_queue_overflows_total",
    "Notifications sent inline because the delivery queue was full.",
)

PROMO_INTENTS = Counter(
    "wallet_promo_intents_total",
    "Promo intent status transitions.",
    labelnames=("status",),
)


async def metrics_handler(_: web.Request) -> web.Response:
    payload = generate_latest()
    # aiohttp forbids charset inside content_type, so set the header directly
    return web.Response(body=payload, headers={"Content-Type": CONTENT_TYPE_LATEST})
