from __future__ import annotations

from urllib.parse import unquote

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.propagators.textmap import (
    CarrierT,
    Getter,
    Setter,
    TextMapPropagator,
    default_getter,
    default_setter,
)
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor, SpanExporter
from opentelemetry.trace import NonRecordingSpan, SpanContext, TraceFlags

TRACE_HEADER = "uber-trace-id"

_MAX_TRACE_ID_HEX = 32
_MAX_SPAN_ID_HEX = 16


def format_trace_header(trace_id: int, span_id: int, flags: int) -> str:
    return f"{trace_id:032x}:{span_id:016x}:0:{flags:x}"


def parse_trace_header(value: str) -> tuple[int, int, int] | None:
    """Parse ``trace:span[:parent]:flags`` into ids and the sampling flag.

    Returns None for anything malformed; the caller then starts a new root.
    """

    parts = unquote(value).strip().split(":")
    if len(parts) not in (3, 4):
        return None

    trace_hex, span_hex, flags_hex = parts[0], parts[1], parts[-1]
    if not trace_hex or len(trace_hex) > _MAX_TRACE_ID_HEX:
        return None
    if not span_hex or len(span_hex) > _MAX_SPAN_ID_HEX:
        return None

    try:
        trace_id = int(trace_hex, 16)
        span_id = int(span_hex, 16)
        flags = int(flags_hex, 16)
    except ValueError:
        return None

    if trace_id == 0 or span_id == 0:
        return None
    return trace_id, span_id, flags


class ColonTraceContextPropagator(TextMapPropagator):
    """Carries trace id, parent span id and sampling flag in one colon-delimited header."""

    def extract(
        self,
        carrier: CarrierT,
        context: Context | None = None,
        getter: Getter[CarrierT] = default_getter,
    ) -> Context:
        if context is None:
            context = Context()

        values = getter.get(carrier, TRACE_HEADER)
        if not values:
            return context

        parsed = parse_trace_header(values[0])
        if parsed is None:
            return context

        trace_id, span_id, flags = parsed
        span_context = SpanContext(
            trace_id=trace_id,
            span_id=span_id,
            is_remote=True,
            trace_flags=TraceFlags(flags & TraceFlags.SAMPLED),
        )
        return trace.set_span_in_context(NonRecordingSpan(span_context), context)

    def inject(
        self,
        carrier: CarrierT,
        context: Context | None = None,
        setter: Setter[CarrierT] = default_setter,
    ) -> None:
        span_context = trace.get_current_span(context).get_span_context()
        if not span_context.is_valid:
            return
        setter.set(
            carrier,
            TRACE_HEADER,
            format_trace_header(span_context.trace_id, span_context.span_id, int(span_context.trace_flags)),
        )

    @property
    def fields(self) -> set[str]:
        return {TRACE_HEADER}


def create_tracer_provider(
    *,
    service: str,
    version: str,
    environment: str,
    otlp_endpoint: str | None = None,
    exporter: SpanExporter | None = None,
) -> TracerProvider:
    """Build a tracer provider for one service.

    An injected exporter is flushed synchronously; otherwise spans are batched to
    ``<otlp_endpoint>/v1/traces``. With neither, spans are created but not exported.
    """

    resource = Resource.create(
        {
            "service.name": service,
            "service.version": version,
            "deployment.environment": environment,
        }
    )
    provider = TracerProvider(resource=resource)

    if exporter is not None:
        provider.add_span_processor(SimpleSpanProcessor(exporter))
    elif otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{otlp_endpoint.rstrip('/')}/v1/traces"))
        )

    return provider


def format_trace_id(trace_id: int) -> str:
    return trace.format_trace_id(trace_id)


def format_span_id(span_id: int) -> str:
    return trace.format_span_id(span_id)
