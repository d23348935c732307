from __future__ import annotations

import logging
from typing import Any

import httpx
import structlog
from structlog.testing import LogCapture

from lgtm_chain.config import Settings
from lgtm_chain.observability.metrics import ServiceMetrics


def make_settings(service: str, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "SERVICE_NAME": service,
        "OTLP_ENDPOINT": "",
        "ORDER_SERVICE_URL": "http://order-service",
        "PAYMENT_SERVICE_URL": "http://payment-service",
        "PAYMENT_DECLINE_RATE": 0.0,
        "SIMULATED_DELAY_SCALE": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


def capturing_logger(capture: LogCapture) -> Any:
    return structlog.wrap_logger(
        structlog.ReturnLogger(),
        processors=[structlog.contextvars.merge_contextvars, capture],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        context_class=dict,
    )


def total_observations(metrics: ServiceMetrics, name: str = "http_request_duration_seconds") -> float:
    total = 0.0
    for family in metrics.registry.collect():
        if family.name == name:
            total += sum(s.value for s in family.samples if s.name == f"{name}_count")
    return total


def entries_for(capture: LogCapture, service: str) -> list[dict[str, Any]]:
    return [e for e in capture.entries if e.get("service") == service]


def events(entries: list[dict[str, Any]], event: str) -> list[dict[str, Any]]:
    return [e for e in entries if e.get("event") == event]


def failing_transport(exc: Exception) -> httpx.MockTransport:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise exc

    return httpx.MockTransport(_handler)
