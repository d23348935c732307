from __future__ import annotations

import random

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from lgtm_chain.api.dependencies import get_app_settings, get_downstream, get_rng, get_telemetry
from lgtm_chain.config import Settings
from lgtm_chain.models.schemas import OrderCreate
from lgtm_chain.observability.telemetry import Telemetry
from lgtm_chain.services.downstream import DownstreamClient
from lgtm_chain.services.simulation import new_order_id, simulate_work

router = APIRouter(tags=["orders"])

ORDER_DURATION_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.5, 5.0)


@router.post("/orders")
async def create_order(
    payload: OrderCreate | None = Body(default=None),
    settings: Settings = Depends(get_app_settings),
    rng: random.Random = Depends(get_rng),
    downstream: DownstreamClient = Depends(get_downstream),
    telemetry: Telemetry = Depends(get_telemetry),
) -> JSONResponse:
    log = telemetry.logger
    order_id = new_order_id()
    # Bound before any work so every branch below logs with the order id.
    log = log.bind(order_id=order_id)

    with telemetry.metrics.business.track() as op:
        log.info("Processing order")
        await simulate_work(rng, 50, 150, settings.simulated_delay_scale)

        total = payload.total if payload is not None and payload.total else round(rng.random() * 10000) / 100

        log.info("Calling payment service", amount=total)
        result = await downstream.post_json("/payments", {"orderId": order_id, "amount": total})

        if result.transport_error:
            op.outcome = "failed"
            log.error("Order processing error", error=result.error)
            return JSONResponse(status_code=500, content={"status": "error", "error": result.error})

        if not result.ok:
            op.outcome = "failed"
            log.error("Payment failed", error=result.error, status=result.status_code)
            return JSONResponse(
                status_code=result.status_code,
                content={"status": "failed", "error": result.error or "Payment failed"},
            )

        op.outcome = "completed"
        log.info("Order completed", total=total)
        return JSONResponse(
            content={
                "status": "completed",
                "orderId": order_id,
                "total": total,
                "payment": result.body,
            }
        )
