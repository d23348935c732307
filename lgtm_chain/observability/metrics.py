from __future__ import annotations

import platform
from time import perf_counter
from types import TracebackType
from typing import Sequence

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

# 10ms .. 10s, expressed in seconds.
HTTP_DURATION_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

UNMATCHED_ENDPOINT = "unmatched"


def status_class(status_code: int) -> str:
    return f"{status_code // 100}xx"


class BusinessMetrics:
    """Outcome counter + duration histogram + in-progress gauge for one domain operation."""

    def __init__(
        self,
        registry: CollectorRegistry,
        *,
        counter_name: str,
        counter_help: str,
        histogram_name: str,
        histogram_help: str,
        gauge_name: str,
        gauge_help: str,
        buckets: Sequence[float],
    ) -> None:
        self.total = Counter(counter_name, counter_help, ["status"], registry=registry)
        self.duration = Histogram(histogram_name, histogram_help, buckets=tuple(buckets), registry=registry)
        self.in_progress = Gauge(gauge_name, gauge_help, registry=registry)

    def track(self) -> "OutcomeTracker":
        return OutcomeTracker(self)


class OutcomeTracker:
    """Context manager recording exactly one outcome for a business operation.

    The handler sets ``outcome``; leaving the block by exception records ``failed``.
    """

    def __init__(self, metrics: BusinessMetrics) -> None:
        self._metrics = metrics
        self._start = 0.0
        self._recorded = False
        self.outcome: str | None = None

    def __enter__(self) -> "OutcomeTracker":
        self._start = perf_counter()
        self._metrics.in_progress.inc()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._recorded:
            return
        self._recorded = True
        outcome = self.outcome if exc_type is None and self.outcome else "failed"
        self._metrics.in_progress.dec()
        self._metrics.total.labels(status=outcome).inc()
        self._metrics.duration.observe(perf_counter() - self._start)


class ServiceMetrics:
    """Process-local Prometheus metrics for one service (resets on restart)."""

    def __init__(
        self,
        service: str,
        *,
        version: str = "1.0.0",
        environment: str = "development",
        registry: CollectorRegistry | None = None,
        include_process_metrics: bool = True,
    ) -> None:
        self.service = service
        self.registry = registry or CollectorRegistry()

        if include_process_metrics:
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)

        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["service", "method", "endpoint", "status"],
            registry=self.registry,
        )
        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["service", "method", "endpoint"],
            buckets=HTTP_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.active_requests = Gauge(
            "active_requests",
            "Number of requests currently being processed",
            ["service"],
            registry=self.registry,
        )
        self.app_info = Gauge(
            "app_info",
            "Application information",
            ["version", "environment", "python_version"],
            registry=self.registry,
        )
        self.app_info.labels(version, environment, platform.python_version()).set(1)

        self.business: BusinessMetrics | None = None

    def add_business_metrics(self, prefix: str, buckets: Sequence[float]) -> BusinessMetrics:
        """Register the ``<prefix>s_total`` / ``<prefix>_duration_seconds`` / ``active_<prefix>s`` trio."""

        self.business = BusinessMetrics(
            self.registry,
            counter_name=f"{prefix}s_total",
            counter_help=f"Total {prefix}s processed",
            histogram_name=f"{prefix}_duration_seconds",
            histogram_help=f"{prefix.capitalize()} processing duration in seconds",
            gauge_name=f"active_{prefix}s",
            gauge_help=f"Number of {prefix}s currently being processed",
            buckets=buckets,
        )
        return self.business

    def request_started(self) -> None:
        self.active_requests.labels(service=self.service).inc()

    def request_finished(self) -> None:
        self.active_requests.labels(service=self.service).dec()

    def observe_request(self, *, method: str, endpoint: str, status_code: int, elapsed_s: float) -> None:
        self.http_requests_total.labels(
            service=self.service,
            method=method,
            endpoint=endpoint,
            status=status_class(status_code),
        ).inc()
        self.http_request_duration.labels(service=self.service, method=method, endpoint=endpoint).observe(elapsed_s)

    def active(self) -> float:
        return self.registry.get_sample_value("active_requests", {"service": self.service}) or 0.0

    def render(self) -> tuple[bytes, str]:
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
