from __future__ import annotations

import random
from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from lgtm_chain.api.dependencies import (
    get_app_settings,
    get_downstream,
    get_request_context,
    get_rng,
    get_telemetry,
)
from lgtm_chain.config import Settings
from lgtm_chain.observability.lifecycle import RequestContext
from lgtm_chain.observability.telemetry import Telemetry
from lgtm_chain.services.downstream import DownstreamClient
from lgtm_chain.services.simulation import new_error_id, pause, random_delay_ms, simulate_work

router = APIRouter(tags=["gateway"])

DEFAULT_ORDER = {"total": 99.99}
SLOW_WARNING_MS = 1500


@router.get("/")
async def index() -> dict[str, Any]:
    return {
        "message": "Welcome to the LGTM Sample App!",
        "endpoints": {
            "/": "This page",
            "/api/fast": "Fast endpoint (~10-50ms)",
            "/api/slow": "Slow endpoint (200ms-2s)",
            "/api/error": "Always returns 500",
            "/api/order": "POST - Creates order (calls order-service -> payment-service)",
            "/metrics": "Prometheus metrics",
        },
    }


@router.get("/api/fast")
async def fast(
    settings: Settings = Depends(get_app_settings),
    rng: random.Random = Depends(get_rng),
) -> dict[str, str]:
    await simulate_work(rng, 10, 50, settings.simulated_delay_scale)
    return {"status": "ok", "type": "fast"}


@router.get("/api/slow")
async def slow(
    settings: Settings = Depends(get_app_settings),
    rng: random.Random = Depends(get_rng),
    telemetry: Telemetry = Depends(get_telemetry),
) -> dict[str, Any]:
    delay_ms = random_delay_ms(rng, 200, 2000)
    if delay_ms > SLOW_WARNING_MS:
        telemetry.logger.warning("Slow operation taking longer than expected", delay_ms=round(delay_ms))

    await pause(delay_ms, settings.simulated_delay_scale)
    return {"status": "ok", "type": "slow", "delay_ms": round(delay_ms)}


@router.get("/api/error")
async def error(
    settings: Settings = Depends(get_app_settings),
    rng: random.Random = Depends(get_rng),
    request_ctx: RequestContext | None = Depends(get_request_context),
) -> JSONResponse:
    await simulate_work(rng, 10, 100, settings.simulated_delay_scale)

    error_id = new_error_id()
    if request_ctx is not None:
        # Picked up by the "request completed" log line.
        request_ctx.error_info.update(
            error_type="RandomFailure",
            error_message="Random failure occurred",
            error_id=error_id,
        )

    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Random failure!", "error_id": error_id},
    )


@router.post("/api/order")
async def create_order(
    payload: dict[str, Any] | None = Body(default=None),
    downstream: DownstreamClient = Depends(get_downstream),
    telemetry: Telemetry = Depends(get_telemetry),
) -> JSONResponse:
    telemetry.logger.info("Received order request, forwarding to order-service")

    result = await downstream.post_json("/orders", payload if payload is not None else dict(DEFAULT_ORDER))
    if result.transport_error:
        return JSONResponse(status_code=result.status_code, content={"error": result.error})

    if result.ok:
        telemetry.logger.info("Order completed", order_id=result.body.get("orderId"))
    return JSONResponse(status_code=result.status_code, content=result.body)
