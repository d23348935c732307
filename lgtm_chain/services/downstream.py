from __future__ import annotations

from dataclasses import dataclass, field
from time import perf_counter
from typing import Any

import httpx
from opentelemetry.trace import SpanKind, Status, StatusCode

from lgtm_chain.observability.telemetry import Telemetry


@dataclass(frozen=True)
class DownstreamResult:
    """Outcome of one downstream call: the peer's JSON payload, or a failure.

    ``status_code`` and ``body`` are what the local handler should answer with
    when propagating a failure unchanged.
    """

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)
    transport_error: bool = False

    @property
    def ok(self) -> bool:
        return not self.transport_error and self.status_code < 400

    @property
    def error(self) -> str | None:
        value = self.body.get("error")
        return str(value) if value is not None else None


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {"error": response.text or response.reason_phrase}
    if isinstance(payload, dict):
        return payload
    return {"data": payload}


class DownstreamClient:
    """Posts JSON to the next hop, carrying the current trace forward.

    No retries and no timeout beyond the transport default: failures go straight
    back to the caller.
    """

    def __init__(
        self,
        base_url: str,
        telemetry: Telemetry,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._telemetry = telemetry
        self._client = httpx.AsyncClient(base_url=self.base_url, transport=transport)

    async def post_json(self, path: str, payload: dict[str, Any]) -> DownstreamResult:
        telemetry = self._telemetry
        url = f"{self.base_url}{path}"

        with telemetry.tracer.start_as_current_span(
            f"POST {path}",
            kind=SpanKind.CLIENT,
            attributes={"http.request.method": "POST", "url.full": url},
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            headers: dict[str, str] = {}
            telemetry.propagator.inject(headers)

            start = perf_counter()
            try:
                response = await self._client.post(path, json=payload, headers=headers)
            except httpx.HTTPError as exc:
                elapsed_ms = (perf_counter() - start) * 1000.0
                message = str(exc) or type(exc).__name__
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, message))
                telemetry.logger.error(
                    "downstream call failed",
                    url=url,
                    error=message,
                    error_type=type(exc).__name__,
                    elapsed_ms=round(elapsed_ms, 2),
                )
                return DownstreamResult(status_code=500, body={"error": message}, transport_error=True)

            elapsed_ms = (perf_counter() - start) * 1000.0
            span.set_attribute("http.response.status_code", response.status_code)
            result = DownstreamResult(status_code=response.status_code, body=_json_body(response))

            if result.ok:
                telemetry.logger.info(
                    "downstream call",
                    url=url,
                    status=response.status_code,
                    elapsed_ms=round(elapsed_ms, 2),
                )
            else:
                if response.status_code >= 500:
                    span.set_status(Status(StatusCode.ERROR))
                telemetry.logger.warning(
                    "downstream call returned error",
                    url=url,
                    status=response.status_code,
                    error=result.error,
                    elapsed_ms=round(elapsed_ms, 2),
                )
            return result

    async def aclose(self) -> None:
        await self._client.aclose()
