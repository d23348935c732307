from __future__ import annotations

import asyncio
from typing import Any

import pytest
from httpx import AsyncClient
from structlog.testing import LogCapture

from lgtm_chain.observability.middleware import RequestLifecycleMiddleware
from lgtm_chain.observability.telemetry import Telemetry
from tests.helpers import events, total_observations


def _scope(path: str = "/api/slow", method: str = "GET", headers: list[tuple[bytes, bytes]] | None = None) -> dict[str, Any]:
    return {
        "type": "http",
        "method": method,
        "path": path,
        "headers": headers or [],
        "query_string": b"",
    }


def _receive_from(messages: list[dict[str, Any]]):
    queue = list(messages)

    async def receive() -> dict[str, Any]:
        if queue:
            return queue.pop(0)
        await asyncio.Event().wait()
        return {"type": "http.disconnect"}

    return receive


class _Sink:
    """Server side of ``send``; like uvicorn, it drops messages once the client is gone."""

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []
        self.finished = asyncio.Event()
        self.client_gone = asyncio.Event()

    async def __call__(self, message: dict[str, Any]) -> None:
        if self.client_gone.is_set():
            return
        self.messages.append(message)
        if message["type"] == "http.response.body" and not message.get("more_body", False):
            self.finished.set()

    def receive(self):
        """Request body first, then ``http.disconnect`` once the response is done or the client leaves."""

        delivered = False

        async def receive() -> dict[str, Any]:
            nonlocal delivered
            if not delivered:
                delivered = True
                return {"type": "http.request", "body": b""}
            done = asyncio.ensure_future(self.finished.wait())
            gone = asyncio.ensure_future(self.client_gone.wait())
            try:
                await asyncio.wait({done, gone}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                done.cancel()
                gone.cancel()
            return {"type": "http.disconnect"}

        return receive


async def _settled(telemetry: Telemetry, baseline: int = 0) -> None:
    for _ in range(100):
        if telemetry.metrics.active() == baseline:
            return
        await asyncio.sleep(0)


async def _respond(send, status: int = 200, body: bytes = b"{}") -> None:
    await send({"type": "http.response.start", "status": status, "headers": [(b"content-type", b"application/json")]})
    await send({"type": "http.response.body", "body": body})


async def test_completed_request_is_counted_once(telemetry: Telemetry, log_capture: LogCapture) -> None:
    async def app(scope, receive, send):
        await _respond(send)

    sink = _Sink()
    # The server reports the disconnect after the response as well; that must not count twice.
    await RequestLifecycleMiddleware(app, telemetry)(_scope(), sink.receive(), sink)

    assert telemetry.metrics.active() == 0
    assert total_observations(telemetry.metrics) == 1
    assert len(events(log_capture.entries, "request completed")) == 1
    assert events(log_capture.entries, "request aborted by client") == []

    start = sink.messages[0]
    assert (b"x-request-id", events(log_capture.entries, "request received")[0]["request_id"].encode()) in start["headers"]


async def test_disconnect_while_handler_is_busy_is_an_abort(telemetry: Telemetry, log_capture: LogCapture) -> None:
    baseline = telemetry.metrics.active()
    entered = asyncio.Event()
    release = asyncio.Event()

    async def app(scope, receive, send):
        # Like a JSON handler: never reads past the body, responds after its work.
        entered.set()
        await release.wait()
        await _respond(send, body=b"too late")

    sink = _Sink()
    task = asyncio.create_task(RequestLifecycleMiddleware(app, telemetry)(_scope(), sink.receive(), sink))
    await entered.wait()
    assert telemetry.metrics.active() == baseline + 1

    sink.client_gone.set()
    await _settled(telemetry, baseline)
    # Released while the handler is still running.
    assert telemetry.metrics.active() == baseline
    assert not task.done()

    release.set()
    await task

    assert telemetry.metrics.active() == baseline
    assert total_observations(telemetry.metrics) == 0
    assert sink.messages == []
    (aborted,) = events(log_capture.entries, "request aborted by client")
    assert aborted["log_level"] == "warning"
    assert aborted["request_id"]
    assert events(log_capture.entries, "request completed") == []


async def test_handler_reading_the_disconnect_itself_is_an_abort(telemetry: Telemetry, log_capture: LogCapture) -> None:
    async def app(scope, receive, send):
        await receive()
        await receive()  # client went away while we were working
        await _respond(send, body=b"too late")

    receive = _receive_from([{"type": "http.request", "body": b""}, {"type": "http.disconnect"}])
    await RequestLifecycleMiddleware(app, telemetry)(_scope(), receive, _Sink())

    assert telemetry.metrics.active() == 0
    assert total_observations(telemetry.metrics) == 0
    (aborted,) = events(log_capture.entries, "request aborted by client")
    assert aborted["log_level"] == "warning"
    assert aborted["request_id"]
    assert events(log_capture.entries, "request completed") == []


async def test_handler_returning_without_response_is_an_abort(telemetry: Telemetry, log_capture: LogCapture) -> None:
    async def app(scope, receive, send):
        return None

    await RequestLifecycleMiddleware(app, telemetry)(_scope(), _receive_from([]), _Sink())

    assert telemetry.metrics.active() == 0
    assert len(events(log_capture.entries, "request aborted by client")) == 1


async def test_cancelled_handler_still_releases_the_gauge(telemetry: Telemetry, log_capture: LogCapture) -> None:
    entered = asyncio.Event()

    async def app(scope, receive, send):
        entered.set()
        await asyncio.sleep(60)

    task = asyncio.create_task(RequestLifecycleMiddleware(app, telemetry)(_scope(), _receive_from([]), _Sink()))
    await entered.wait()
    assert telemetry.metrics.active() == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert telemetry.metrics.active() == 0
    assert total_observations(telemetry.metrics) == 0
    assert len(events(log_capture.entries, "request aborted by client")) == 1


async def test_unhandled_exception_is_counted_as_server_error(telemetry: Telemetry, log_capture: LogCapture) -> None:
    async def app(scope, receive, send):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await RequestLifecycleMiddleware(app, telemetry)(_scope(), _receive_from([]), _Sink())

    assert telemetry.metrics.active() == 0
    (completed,) = events(log_capture.entries, "request completed")
    assert completed["status"] == 500
    assert completed["log_level"] == "error"
    (logged,) = events(log_capture.entries, "unhandled exception")
    assert logged["request_id"] == completed["request_id"]


async def test_excluded_paths_are_not_tracked(telemetry: Telemetry, log_capture: LogCapture) -> None:
    async def app(scope, receive, send):
        await _respond(send)

    middleware = RequestLifecycleMiddleware(app, telemetry)
    for path in ("/health", "/metrics"):
        await middleware(_scope(path), _receive_from([]), _Sink())

    assert total_observations(telemetry.metrics) == 0
    assert log_capture.entries == []


async def test_non_http_scopes_pass_through(telemetry: Telemetry) -> None:
    seen: list[str] = []

    async def app(scope, receive, send):
        seen.append(scope["type"])

    await RequestLifecycleMiddleware(app, telemetry)({"type": "lifespan"}, _receive_from([]), _Sink())
    assert seen == ["lifespan"]
    assert telemetry.metrics.active() == 0


async def test_mixed_burst_returns_gauge_to_baseline(telemetry: Telemetry) -> None:
    baseline = telemetry.metrics.active()
    release = asyncio.Event()

    async def app(scope, receive, send):
        await release.wait()
        if scope["path"].endswith("abort"):
            return None
        await _respond(send)

    middleware = RequestLifecycleMiddleware(app, telemetry)
    paths = [f"/item/{i}/{'abort' if i % 3 == 0 else 'ok'}" for i in range(30)]
    tasks = [asyncio.create_task(middleware(_scope(p), _receive_from([]), _Sink())) for p in paths]

    await asyncio.sleep(0)
    assert telemetry.metrics.active() == baseline + len(paths)

    release.set()
    await asyncio.gather(*tasks)

    assert telemetry.metrics.active() == baseline
    assert total_observations(telemetry.metrics) == 20


async def test_status_classes_map_to_log_levels_over_http(gateway_client: AsyncClient, log_capture: LogCapture) -> None:
    assert (await gateway_client.get("/api/fast")).status_code == 200
    assert (await gateway_client.get("/does-not-exist")).status_code == 404
    assert (await gateway_client.get("/api/error")).status_code == 500

    levels = {e["path"]: e["log_level"] for e in events(log_capture.entries, "request completed")}
    assert levels == {"/api/fast": "info", "/does-not-exist": "warning", "/api/error": "error"}


async def test_concurrent_burst_over_http_returns_gauge_to_baseline(chain, gateway_client: AsyncClient) -> None:
    metrics = chain.gateway.state.telemetry.metrics
    baseline = metrics.active()

    responses = await asyncio.gather(*(gateway_client.get("/api/fast") for _ in range(25)))

    assert all(r.status_code == 200 for r in responses)
    assert metrics.active() == baseline
    assert (
        metrics.registry.get_sample_value(
            "http_requests_total",
            {"service": "gateway", "method": "GET", "endpoint": "/api/fast", "status": "2xx"},
        )
        == 25
    )


async def test_every_line_of_a_request_carries_its_correlation_id(
    gateway_client: AsyncClient, log_capture: LogCapture
) -> None:
    resp = await gateway_client.get("/api/slow")
    assert resp.status_code == 200

    request_id = resp.headers["x-request-id"]
    gateway_lines = [e for e in log_capture.entries if e.get("service") == "gateway"]
    assert gateway_lines
    assert {e.get("request_id") for e in gateway_lines} == {request_id}
