from __future__ import annotations

import random
from datetime import datetime, timezone

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from lgtm_chain.api.dependencies import get_app_settings, get_rng, get_telemetry
from lgtm_chain.config import Settings
from lgtm_chain.models.schemas import PaymentCreate, PaymentResult
from lgtm_chain.observability.telemetry import Telemetry
from lgtm_chain.services.simulation import new_payment_id, simulate_work

router = APIRouter(tags=["payments"])

PAYMENT_DURATION_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.5)


@router.post("/payments")
async def process_payment(
    payload: PaymentCreate | None = Body(default=None),
    settings: Settings = Depends(get_app_settings),
    rng: random.Random = Depends(get_rng),
    telemetry: Telemetry = Depends(get_telemetry),
) -> JSONResponse:
    payload = payload or PaymentCreate()
    payment_id = new_payment_id()
    log = telemetry.logger.bind(payment_id=payment_id, order_id=payload.order_id)

    with telemetry.metrics.business.track() as op:
        log.info("Processing payment", amount=payload.amount)

        # Stands in for the call to a real payment gateway.
        await simulate_work(rng, 100, 300, settings.simulated_delay_scale)

        if rng.random() < settings.payment_decline_rate:
            op.outcome = "declined"
            log.warning("Payment declined")
            declined = PaymentResult(
                status="declined",
                payment_id=payment_id,
                order_id=payload.order_id,
                error="Card declined",
            )
            return JSONResponse(status_code=400, content=declined.model_dump(by_alias=True, exclude_none=True))

        op.outcome = "approved"
        log.info("Payment approved")
        approved = PaymentResult(
            status="approved",
            payment_id=payment_id,
            order_id=payload.order_id,
            amount=payload.amount,
            processed_at=datetime.now(timezone.utc).isoformat(),
        )
        return JSONResponse(content=approved.model_dump(by_alias=True, exclude_none=True))
