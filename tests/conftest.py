from __future__ import annotations

import random
from collections.abc import AsyncIterator
from dataclasses import dataclass

import pytest
import structlog
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from structlog.testing import LogCapture

from lgtm_chain.config import GATEWAY, ORDER_SERVICE, PAYMENT_SERVICE, get_settings
from lgtm_chain.main import create_app
from lgtm_chain.observability.telemetry import Telemetry, create_telemetry
from tests.helpers import capturing_logger, make_settings


@dataclass
class Chain:
    gateway: FastAPI
    order: FastAPI
    payment: FastAPI


@pytest.fixture(autouse=True)
def clean_state() -> None:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def log_capture() -> LogCapture:
    return LogCapture()


@pytest.fixture
def telemetry(log_capture: LogCapture, span_exporter: InMemorySpanExporter) -> Telemetry:
    return create_telemetry(
        make_settings(GATEWAY),
        logger=capturing_logger(log_capture),
        span_exporter=span_exporter,
    )


@pytest.fixture
def build_chain(log_capture: LogCapture, span_exporter: InMemorySpanExporter):
    def _build(decline_rate: float = 0.0, seed: int = 7) -> Chain:
        logger = capturing_logger(log_capture)
        payment = create_app(
            make_settings(PAYMENT_SERVICE, PAYMENT_DECLINE_RATE=decline_rate),
            logger=logger,
            span_exporter=span_exporter,
            rng=random.Random(seed),
        )
        order = create_app(
            make_settings(ORDER_SERVICE),
            logger=logger,
            span_exporter=span_exporter,
            downstream_transport=ASGITransport(app=payment, raise_app_exceptions=False),
            rng=random.Random(seed),
        )
        gateway = create_app(
            make_settings(GATEWAY),
            logger=logger,
            span_exporter=span_exporter,
            downstream_transport=ASGITransport(app=order, raise_app_exceptions=False),
            rng=random.Random(seed),
        )
        return Chain(gateway=gateway, order=order, payment=payment)

    return _build


@pytest.fixture
def chain(build_chain) -> Chain:
    return build_chain()


@pytest.fixture
async def gateway_client(chain: Chain) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=chain.gateway)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
