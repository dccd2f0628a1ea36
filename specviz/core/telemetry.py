"""Structured timing spans and per-session generation counters.

``TelemetryLogger`` collects named spans (one per backend forward pass and
one per state-machine step) that can be summarized or exported as JSON.
``GenerationStats`` counts what the speculative algorithm did in a session.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# =============================================================================
# Spans
# =============================================================================


@dataclass
class TelemetrySpan:
    """A single timed operation (a forward pass or a state-machine step)."""

    span_id: str
    operation: str
    wall_time_ms: float
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp_iso: str = field(default_factory=lambda: time.strftime("%Y-%m-%dT%H:%M:%S%z"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "span_id": self.span_id,
            "operation": self.operation,
            "wall_time_ms": round(self.wall_time_ms, 4),
            "metadata": self.metadata,
            "timestamp": self.timestamp_iso,
        }


class TelemetryLogger:
    """Collects spans for one worker and exports them for offline analysis.

    Usage::

        tlog = TelemetryLogger(service_name="specviz-worker")

        with tlog.span("target_forward", session_id=3, seq_len=41):
            ...

        print(tlog.summary()["target_forward"]["mean_ms"])
        tlog.export("telemetry.json")
    """

    def __init__(self, service_name: str = "specviz") -> None:
        self.service_name = service_name
        self._spans: list[TelemetrySpan] = []

    def span(self, operation: str, **metadata: Any) -> _SpanContext:
        """Create a context manager that records a span named *operation* on exit."""
        return _SpanContext(telemetry=self, operation=operation, metadata=metadata)

    def record_span(self, span: TelemetrySpan) -> None:
        self._spans.append(span)
        logger.debug("Span [%s] %s: %.3f ms", span.span_id[:8], span.operation, span.wall_time_ms)

    def summary(self) -> dict[str, dict[str, float]]:
        """Aggregate recorded spans by operation.

        Returns:
            ``{operation: {"count", "total_ms", "mean_ms"}}``.
        """
        totals: dict[str, list[float]] = defaultdict(list)
        for s in self._spans:
            totals[s.operation].append(s.wall_time_ms)
        return {
            op: {
                "count": float(len(times)),
                "total_ms": sum(times),
                "mean_ms": sum(times) / len(times),
            }
            for op, times in totals.items()
        }

    def export(self, path: str | Path) -> None:
        """Write all spans and the per-operation summary to a JSON file."""
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)

        payload = {
            "service": self.service_name,
            "num_spans": len(self._spans),
            "summary": self.summary(),
            "spans": [s.to_dict() for s in self._spans],
        }
        out.write_text(json.dumps(payload, indent=2))
        logger.info("Exported %d spans to %s", len(self._spans), out)


class _SpanContext:
    def __init__(
        self,
        telemetry: TelemetryLogger,
        operation: str,
        metadata: dict[str, Any],
    ) -> None:
        self._telemetry = telemetry
        self._operation = operation
        self._metadata = metadata
        self._start_ns = 0
        self.span_id = uuid.uuid4().hex[:16]

    def __enter__(self) -> str:
        self._start_ns = time.perf_counter_ns()
        return self.span_id

    def __exit__(self, exc_type: Any, *_: Any) -> None:
        elapsed_ms = (time.perf_counter_ns() - self._start_ns) / 1_000_000
        metadata = dict(self._metadata)
        if exc_type is not None:
            metadata["error"] = exc_type.__name__
        self._telemetry.record_span(
            TelemetrySpan(
                span_id=self.span_id,
                operation=self._operation,
                wall_time_ms=elapsed_ms,
                metadata=metadata,
            )
        )


# =============================================================================
# Generation counters
# =============================================================================


@dataclass
class GenerationStats:
    """What the speculative algorithm did during one session.

    Attributes:
        drafted: Draft tokens proposed.
        accepted: Draft tokens accepted by the target.
        rejected: Draft positions that failed the acceptance test.
        discarded: Draft tokens thrown away (the rejected one and any after it).
        resampled: Tokens drawn from the residual distribution.
        bonus: Bonus tokens drawn after a fully accepted block.
        blocks: Draft blocks resolved.
        target_passes: Batched target forward passes issued.
    """

    drafted: int = 0
    accepted: int = 0
    rejected: int = 0
    discarded: int = 0
    resampled: int = 0
    bonus: int = 0
    blocks: int = 0
    target_passes: int = 0

    @property
    def committed(self) -> int:
        return self.accepted + self.resampled + self.bonus

    @property
    def acceptance_rate(self) -> float:
        """Fraction of verified draft positions that were accepted."""
        tested = self.accepted + self.rejected
        return self.accepted / tested if tested else 0.0

    @property
    def tokens_per_target_pass(self) -> float:
        return self.committed / self.target_passes if self.target_passes else 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["acceptance_rate"] = self.acceptance_rate
        data["tokens_per_target_pass"] = self.tokens_per_target_pass
        return data
