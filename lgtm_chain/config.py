from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

import structlog
from pydantic import Field, ValidationError, ValidationInfo, ValidatorFunctionWrapHandler, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

GATEWAY = "gateway"
ORDER_SERVICE = "order-service"
PAYMENT_SERVICE = "payment-service"

SERVICE_NAMES = (GATEWAY, ORDER_SERVICE, PAYMENT_SERVICE)

DEFAULT_PORTS = {
    GATEWAY: 8000,
    ORDER_SERVICE: 8001,
    PAYMENT_SERVICE: 8002,
}

_URL_FIELDS = {"order_service_url", "payment_service_url"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    service_name: str = Field(default=GATEWAY, alias="SERVICE_NAME")
    service_version: str = Field(default="1.0.0", alias="SERVICE_VERSION")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int | None = Field(default=None, alias="PORT")

    order_service_url: str = Field(default="http://order-service:8001", alias="ORDER_SERVICE_URL")
    payment_service_url: str = Field(default="http://payment-service:8002", alias="PAYMENT_SERVICE_URL")
    otlp_endpoint: str = Field(default="http://alloy:4318", alias="OTLP_ENDPOINT")

    payment_decline_rate: float = Field(default=0.1, ge=0.0, le=1.0, alias="PAYMENT_DECLINE_RATE")
    simulated_delay_scale: float = Field(default=1.0, ge=0.0, alias="SIMULATED_DELAY_SCALE")

    @field_validator("*", mode="wrap")
    @classmethod
    def _fall_back_to_default(
        cls, value: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo
    ) -> Any:
        """Replace a bad value with the field default instead of failing startup."""

        try:
            validated = handler(value)
            _check_semantics(info.field_name, validated)
            return validated
        except (ValidationError, ValueError):
            default = cls.model_fields[info.field_name].default
            structlog.get_logger("config").warning(
                "config_value_rejected",
                field=info.field_name,
                value=repr(value),
                fallback=default,
            )
            return default

    @property
    def downstream_url(self) -> str | None:
        if self.service_name == GATEWAY:
            return self.order_service_url
        if self.service_name == ORDER_SERVICE:
            return self.payment_service_url
        return None

    @property
    def bind_port(self) -> int:
        return self.port or DEFAULT_PORTS[self.service_name]

    @property
    def log_level_number(self) -> int:
        return logging.getLevelName(self.log_level.upper())


def _check_semantics(field_name: str | None, value: Any) -> None:
    if field_name == "service_name" and value not in SERVICE_NAMES:
        raise ValueError(f"unknown service {value!r}")
    if field_name == "log_level" and not isinstance(logging.getLevelName(str(value).upper()), int):
        raise ValueError(f"unknown log level {value!r}")
    if field_name in _URL_FIELDS and not str(value).startswith(("http://", "https://")):
        raise ValueError(f"not an http(s) url: {value!r}")
    if field_name == "otlp_endpoint" and value and not str(value).startswith(("http://", "https://")):
        raise ValueError(f"not an http(s) url: {value!r}")
    if field_name == "port" and value is not None and not 1 <= value <= 65535:
        raise ValueError(f"port out of range: {value!r}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
