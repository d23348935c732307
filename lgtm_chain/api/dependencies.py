from __future__ import annotations

import random

from fastapi import HTTPException, Request

from lgtm_chain.config import Settings
from lgtm_chain.observability.lifecycle import RequestContext
from lgtm_chain.observability.telemetry import Telemetry
from lgtm_chain.services.downstream import DownstreamClient


def get_telemetry(request: Request) -> Telemetry:
    return request.app.state.telemetry


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_rng(request: Request) -> random.Random:
    return request.app.state.rng


def get_downstream(request: Request) -> DownstreamClient:
    downstream = getattr(request.app.state, "downstream", None)
    if downstream is None:
        raise HTTPException(status_code=500, detail="No downstream service configured")
    return downstream


def get_request_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "request_context", None)
