# pyright: reportMissingTypeStubs=false
# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false
# pyright: reportUnknownArgumentType=false

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, Counter, Histogram, generate_latest


_VENDOR_CALLS = Counter(
    "portraitist_vendor_calls_total",
    "Outbound vendor calls by provider, operation and outcome.",
    labelnames=("provider", "operation", "outcome"),
)
_VENDOR_LATENCY = Histogram(
    "portraitist_vendor_call_latency_seconds",
    "Latency of outbound vendor calls in seconds.",
    labelnames=("provider", "operation"),
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0),
)
_GENERATION_TRANSITIONS = Counter(
    "portraitist_generation_transitions_total",
    "Generation status transitions that were applied.",
    labelnames=("status",),
)
_CREDITS = Counter(
    "portraitist_credit_movements_total",
    "Credits moved through the ledger by kind.",
    labelnames=("kind",),
)


def record_vendor_call(*, provider: str, operation: str, outcome: str, latency_ms: int) -> None:
    _VENDOR_CALLS.labels(provider, operation, outcome).inc()
    if latency_ms >= 0:
        _VENDOR_LATENCY.labels(provider, operation).observe(float(latency_ms) / 1000.0)


def record_generation_transition(status: str) -> None:
    _GENERATION_TRANSITIONS.labels(status).inc()


def record_credit_movement(*, kind: str, amount: int) -> None:
    if amount > 0:
        _CREDITS.labels(kind).inc(amount)


def metrics_payload() -> tuple[bytes, str]:
    payload = generate_latest(REGISTRY)
    content_type = str(CONTENT_TYPE_LATEST)
    return payload, content_type
