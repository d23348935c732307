from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass, field
from time import perf_counter, time
from typing import Any, Callable

from lgtm_chain.observability.logging import level_for_status
from lgtm_chain.observability.metrics import ServiceMetrics

_fallback_logger = logging.getLogger(__name__)


def new_correlation_id() -> str:
    """Short per-request id; only needs to be unique within one instance's logs."""

    return uuid.uuid4().hex[:8]


class Outcome(enum.Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class RequestContext:
    method: str
    path: str
    correlation_id: str = field(default_factory=new_correlation_id)
    trace_id: str | None = None
    span_id: str | None = None
    parent_span_id: str | None = None
    started_at: float = field(default_factory=time)
    error_info: dict[str, Any] = field(default_factory=dict)

    def log_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "request_id": self.correlation_id,
            "method": self.method,
            "path": self.path,
        }
        if self.trace_id:
            fields["trace_id"] = self.trace_id
            fields["span_id"] = self.span_id
        if self.parent_span_id:
            fields["parent_span_id"] = self.parent_span_id
        return fields


class RequestLifecycle:
    """Exactly-once entry/exit accounting for one tracked request.

    ``complete()`` and ``abort()`` may both be signalled, in any order and any
    number of times; only the first one settles the request. The check and the
    set of the latch happen with no await in between, so interleaved callbacks
    on the event loop cannot both pass it.
    """

    def __init__(self, context: RequestContext, metrics: ServiceMetrics, logger: Any) -> None:
        self.context = context
        self._metrics = metrics
        self._logger = logger
        self._start = 0.0
        self._started = False
        self._settled = False
        self.outcome: Outcome | None = None
        self.status_code: int | None = None

    @property
    def settled(self) -> bool:
        return self._settled

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._start = perf_counter()
        _best_effort("active gauge increment", self._metrics.request_started)
        _best_effort(
            "request received log",
            lambda: self._logger.info("request received", method=self.context.method, path=self.context.path),
        )

    def complete(self, status_code: int, endpoint: str) -> bool:
        elapsed_s = self._settle(Outcome.COMPLETED, status_code)
        if elapsed_s is None:
            return False

        _best_effort(
            "request metrics",
            lambda: self._metrics.observe_request(
                method=self.context.method,
                endpoint=endpoint,
                status_code=status_code,
                elapsed_s=elapsed_s,
            ),
        )
        _best_effort(
            "request completed log",
            lambda: getattr(self._logger, level_for_status(status_code))(
                "request completed",
                method=self.context.method,
                path=self.context.path,
                status=status_code,
                duration_ms=round(elapsed_s * 1000),
                **self.context.error_info,
            ),
        )
        return True

    def abort(self) -> bool:
        # No valid status exists, so only the gauge and the warning.
        if self._settle(Outcome.ABORTED) is None:
            return False

        _best_effort(
            "request aborted log",
            lambda: self._logger.warning(
                "request aborted by client",
                method=self.context.method,
                path=self.context.path,
            ),
        )
        return True

    def _settle(self, outcome: Outcome, status_code: int | None = None) -> float | None:
        """Trip the latch; returns the elapsed seconds, or None if already settled."""

        if not self._started or self._settled:
            return None
        self._settled = True
        self.outcome = outcome
        self.status_code = status_code

        elapsed_s = perf_counter() - self._start

        # The decrement goes first so a failing sink below cannot leak the gauge.
        _best_effort("active gauge decrement", self._metrics.request_finished)
        return elapsed_s


def _best_effort(what: str, fn: Callable[[], object]) -> None:
    try:
        fn()
    except Exception:  # noqa: BLE001
        # Instrumentation must never fail the request it observes.
        _fallback_logger.warning("instrumentation failure: %s", what, exc_info=True)
