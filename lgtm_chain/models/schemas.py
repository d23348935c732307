from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class OrderCreate(BaseModel):
    model_config = ConfigDict(extra="allow")

    total: float | None = None


class PaymentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    order_id: str | None = Field(default=None, alias="orderId")
    amount: float | None = None


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    service: str


class PaymentResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Literal["approved", "declined"]
    payment_id: str = Field(alias="paymentId")
    order_id: str | None = Field(default=None, alias="orderId")
    amount: float | None = None
    processed_at: str | None = Field(default=None, alias="processedAt")
    error: str | None = None
