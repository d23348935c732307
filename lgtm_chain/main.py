from __future__ import annotations

import random
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry.sdk.trace.export import SpanExporter

from lgtm_chain.api.gateway import router as gateway_router
from lgtm_chain.api.health import router as health_router
from lgtm_chain.api.metrics import router as metrics_router
from lgtm_chain.api.orders import ORDER_DURATION_BUCKETS
from lgtm_chain.api.orders import router as orders_router
from lgtm_chain.api.payments import PAYMENT_DURATION_BUCKETS
from lgtm_chain.api.payments import router as payments_router
from lgtm_chain.config import GATEWAY, ORDER_SERVICE, PAYMENT_SERVICE, Settings, get_settings
from lgtm_chain.observability.logging import configure_logging
from lgtm_chain.observability.middleware import RequestLifecycleMiddleware
from lgtm_chain.observability.telemetry import Telemetry, create_telemetry
from lgtm_chain.services.downstream import DownstreamClient

_SERVICE_ROUTERS = {
    GATEWAY: gateway_router,
    ORDER_SERVICE: orders_router,
    PAYMENT_SERVICE: payments_router,
}


def _register_business_metrics(telemetry: Telemetry) -> None:
    if telemetry.service == ORDER_SERVICE:
        telemetry.metrics.add_business_metrics("order", ORDER_DURATION_BUCKETS)
    elif telemetry.service == PAYMENT_SERVICE:
        telemetry.metrics.add_business_metrics("payment", PAYMENT_DURATION_BUCKETS)


def create_app(
    settings: Settings | None = None,
    *,
    logger: Any | None = None,
    span_exporter: SpanExporter | None = None,
    downstream_transport: httpx.AsyncBaseTransport | None = None,
    rng: random.Random | None = None,
) -> FastAPI:
    """Build one service of the chain; which one is decided by ``settings.service_name``."""

    settings = settings or get_settings()
    configure_logging(settings.log_level_number)

    telemetry = create_telemetry(settings, logger=logger, span_exporter=span_exporter)
    _register_business_metrics(telemetry)

    downstream: DownstreamClient | None = None
    if settings.downstream_url:
        downstream = DownstreamClient(settings.downstream_url, telemetry, transport=downstream_transport)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        telemetry.logger.info(
            "Service started",
            port=settings.bind_port,
            downstream=settings.downstream_url,
            otlp_endpoint=settings.otlp_endpoint or None,
        )
        try:
            yield
        finally:
            telemetry.logger.info("Shutting down gracefully")
            if downstream is not None:
                await downstream.aclose()
            telemetry.shutdown()

    app = FastAPI(title=f"LGTM Chain: {settings.service_name}", version=settings.service_version, lifespan=lifespan)
    app.state.settings = settings
    app.state.telemetry = telemetry
    app.state.downstream = downstream
    app.state.rng = rng or random.Random()

    app.add_middleware(RequestLifecycleMiddleware, telemetry=telemetry)

    @app.exception_handler(Exception)
    async def _unhandled(_: Request, __: Exception) -> JSONResponse:
        # Already logged and counted by RequestLifecycleMiddleware.
        return JSONResponse(status_code=500, content={"status": "error", "error": "Internal Server Error"})

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(_SERVICE_ROUTERS[settings.service_name])
    return app
