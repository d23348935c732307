"""Request-scoped observability for the gateway → order → payment chain.

Logs go through structlog (JSON on stdout, correlation ids via contextvars),
metrics through a per-service prometheus_client registry, and spans through
an OpenTelemetry tracer provider owned by each service's ``Telemetry``.
"""
