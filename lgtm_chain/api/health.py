from __future__ import annotations

from fastapi import APIRouter, Request

from lgtm_chain.models.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    return HealthResponse(service=request.app.state.telemetry.service)
