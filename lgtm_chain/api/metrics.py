from __future__ import annotations

from fastapi import APIRouter, Request, Response

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def metrics(request: Request) -> Response:
    body, content_type = request.app.state.telemetry.metrics.render()
    return Response(content=body, media_type=content_type)
