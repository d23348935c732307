from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from opentelemetry.propagators.textmap import TextMapPropagator
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SpanExporter
from opentelemetry.trace import Tracer

from lgtm_chain.config import Settings
from lgtm_chain.observability.logging import service_logger
from lgtm_chain.observability.metrics import ServiceMetrics
from lgtm_chain.observability.tracing import ColonTraceContextPropagator, create_tracer_provider


@dataclass
class Telemetry:
    """Everything one service instance uses to log, count and trace.

    Built once per application by ``create_telemetry`` and handed to the
    middleware and handlers explicitly; ``shutdown`` flushes buffered spans.
    """

    service: str
    environment: str
    version: str
    logger: Any
    metrics: ServiceMetrics
    tracer_provider: TracerProvider
    propagator: TextMapPropagator
    _closed: bool = False

    @property
    def tracer(self) -> Tracer:
        return self.tracer_provider.get_tracer("lgtm_chain", self.version)

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.tracer_provider.shutdown()
        except Exception:  # noqa: BLE001
            self.logger.exception("telemetry_flush_failed")


def create_telemetry(
    settings: Settings,
    *,
    logger: Any | None = None,
    span_exporter: SpanExporter | None = None,
    metrics: ServiceMetrics | None = None,
) -> Telemetry:
    service = settings.service_name
    if logger is None:
        logger = service_logger(service, settings.environment)
    else:
        logger = logger.bind(service=service, env=settings.environment)

    provider = create_tracer_provider(
        service=service,
        version=settings.service_version,
        environment=settings.environment,
        otlp_endpoint=None if span_exporter is not None else settings.otlp_endpoint,
        exporter=span_exporter,
    )

    return Telemetry(
        service=service,
        environment=settings.environment,
        version=settings.service_version,
        logger=logger,
        metrics=metrics
        or ServiceMetrics(service, version=settings.service_version, environment=settings.environment),
        tracer_provider=provider,
        propagator=ColonTraceContextPropagator(),
    )
