from __future__ import annotations

import asyncio
import random
import time
import uuid


def random_delay_ms(rng: random.Random, min_ms: float, max_ms: float) -> float:
    return rng.uniform(min_ms, max_ms)


async def pause(delay_ms: float, scale: float = 1.0) -> None:
    await asyncio.sleep(max(delay_ms * scale, 0.0) / 1000.0)


async def simulate_work(rng: random.Random, min_ms: float, max_ms: float, scale: float = 1.0) -> float:
    """Sleep for a random duration in ``[min_ms, max_ms]`` (scaled) and return the nominal delay."""

    delay_ms = random_delay_ms(rng, min_ms, max_ms)
    await pause(delay_ms, scale)
    return delay_ms


def _mint_id(prefix: str) -> str:
    # Millisecond stamp keeps ids sortable; the suffix keeps concurrent ones apart.
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def new_order_id() -> str:
    return _mint_id("ORD")


def new_payment_id() -> str:
    return _mint_id("PAY")


def new_error_id() -> str:
    return uuid.uuid4().hex[:7]
