from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterable

import structlog
from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import Span, SpanKind, Status, StatusCode
from starlette.datastructures import MutableHeaders

from lgtm_chain.observability.lifecycle import Outcome, RequestContext, RequestLifecycle
from lgtm_chain.observability.metrics import UNMATCHED_ENDPOINT
from lgtm_chain.observability.telemetry import Telemetry
from lgtm_chain.observability.tracing import format_span_id, format_trace_id

DEFAULT_EXCLUDED_PATHS = ("/health", "/metrics")


def _header_carrier(scope: dict[str, Any]) -> dict[str, str]:
    return {
        key.decode("latin-1").lower(): value.decode("latin-1")
        for key, value in scope.get("headers") or []
    }


def _endpoint_label(scope: dict[str, Any]) -> str:
    # The router stores the matched route on the shared scope; raw paths would
    # give the counter one series per URL.
    route = scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ENDPOINT


def _finish_span(span: Span, lifecycle: RequestLifecycle) -> None:
    if lifecycle.outcome is Outcome.ABORTED:
        span.set_attribute("http.aborted", True)
        span.set_status(Status(StatusCode.ERROR, "request aborted by client"))
    elif lifecycle.status_code is not None:
        span.set_attribute("http.response.status_code", lifecycle.status_code)
        if lifecycle.status_code >= 500:
            span.set_status(Status(StatusCode.ERROR))
    span.end()


class RequestLifecycleMiddleware:
    """Adds request_id context, a server span, access logs and HTTP metrics.

    Each tracked request settles exactly once: as completed when the last body
    chunk has been handed to the server, or as aborted when the client went
    away first or the handler was cancelled.
    """

    def __init__(
        self,
        app: Callable[..., Any],
        telemetry: Telemetry,
        excluded_paths: Iterable[str] = DEFAULT_EXCLUDED_PATHS,
    ) -> None:
        self.app = app
        self.telemetry = telemetry
        # Avoid self-observing the liveness and scrape endpoints.
        self._excluded_paths = set(excluded_paths)

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http" or scope.get("path") in self._excluded_paths:
            await self.app(scope, receive, send)
            return

        telemetry = self.telemetry
        method = scope.get("method", "GET")
        path = scope.get("path", "")

        parent_ctx = telemetry.propagator.extract(_header_carrier(scope), context=Context())
        parent = trace.get_current_span(parent_ctx).get_span_context()
        span = telemetry.tracer.start_span(
            f"{method} {path}",
            context=parent_ctx,
            kind=SpanKind.SERVER,
            attributes={"http.request.method": method, "url.path": path},
        )
        span_context = span.get_span_context()

        request_ctx = RequestContext(
            method=method,
            path=path,
            trace_id=format_trace_id(span_context.trace_id),
            span_id=format_span_id(span_context.span_id),
            parent_span_id=format_span_id(parent.span_id) if parent.is_valid else None,
        )
        scope.setdefault("state", {})["request_context"] = request_ctx
        lifecycle = RequestLifecycle(request_ctx, telemetry.metrics, telemetry.logger)

        status_code: int = 500
        response_started = False
        disconnected = False
        inbox: asyncio.Queue[dict[str, Any] | Exception] = asyncio.Queue()

        async def watch_client() -> None:
            # Sole reader of the server's receive channel, so a disconnect is seen
            # even when the handler never reads past the request body.
            nonlocal disconnected

            while True:
                try:
                    message = await receive()
                except Exception as exc:  # noqa: BLE001
                    inbox.put_nowait(exc)
                    return
                inbox.put_nowait(message)
                if message.get("type") == "http.disconnect":
                    disconnected = True
                    lifecycle.abort()
                    return

        async def receive_wrapper() -> dict[str, Any]:
            if disconnected and inbox.empty():
                return {"type": "http.disconnect"}
            item = await inbox.get()
            if isinstance(item, Exception):
                inbox.put_nowait(item)
                raise item
            return item

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code, response_started

            if message.get("type") == "http.response.start":
                response_started = True
                status_code = int(message.get("status", 500))
                headers = MutableHeaders(scope=message)
                headers["X-Request-ID"] = request_ctx.correlation_id

            await send(message)

            if message.get("type") == "http.response.body" and not message.get("more_body", False):
                if disconnected:
                    lifecycle.abort()
                else:
                    lifecycle.complete(status_code, _endpoint_label(scope))

        token = otel_context.attach(trace.set_span_in_context(span))
        try:
            with structlog.contextvars.bound_contextvars(**request_ctx.log_fields()):
                lifecycle.start()
                watcher = asyncio.create_task(watch_client())
                try:
                    await self.app(scope, receive_wrapper, send_wrapper)
                except Exception as exc:
                    span.record_exception(exc)
                    if not response_started:
                        # The error response is produced further out; account for it here
                        # while the request's log context is still bound.
                        telemetry.logger.exception("unhandled exception")
                        lifecycle.complete(500, _endpoint_label(scope))
                    raise
                finally:
                    watcher.cancel()
                    await asyncio.gather(watcher, return_exceptions=True)
                    if not lifecycle.settled:
                        lifecycle.abort()
        finally:
            otel_context.detach(token)
            _finish_span(span, lifecycle)
