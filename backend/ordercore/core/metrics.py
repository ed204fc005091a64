from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

COUNTERS = (
    "orders_created",
    "inventory_shortfalls",
    "payment_failures",
    "webhooks_rejected",
    "webhooks_duplicate",
    "webhooks_applied",
    "refunds_processed",
)

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_order_created() -> None:
    _inc("orders_created")


def record_inventory_shortfall() -> None:
    _inc("inventory_shortfalls")


def record_payment_failure() -> None:
    _inc("payment_failures")


def record_webhook_rejected() -> None:
    _inc("webhooks_rejected")


def record_webhook_duplicate() -> None:
    _inc("webhooks_duplicate")


def record_webhook_applied() -> None:
    _inc("webhooks_applied")


def record_refund_processed() -> None:
    _inc("refunds_processed")


def snapshot() -> Dict[str, int]:
    with _lock:
        return {key: _metrics[key] for key in COUNTERS}


def reset() -> None:
    with _lock:
        _metrics.clear()
