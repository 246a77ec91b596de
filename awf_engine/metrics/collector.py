"""
Turn metrics sink.

Counters, timers and gauges keyed by ``name{label=value,...}`` (labels
sorted), with a bounded window per timer for p95. Every sample is also
mirrored into a per-collector prometheus ``CollectorRegistry`` so an
embedding host can expose it; nothing is registered globally.

Recording is fire-and-forget: a failure inside the sink is logged and
swallowed, never raised into the turn.
"""

import json
import logging
import math
import re
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 100

Labels = Dict[str, Union[str, int, float, None]]
CollectorType = Union[Counter, Gauge, Histogram]

_INVALID_METRIC_CHARS = re.compile(r"[^a-zA-Z0-9_:]")


@dataclass
class ActCounts:
    rel_changes: int = 0
    objectives: int = 0
    flags: int = 0
    resources: int = 0
    memory_added: int = 0
    memory_pinned: int = 0
    memory_trimmed: int = 0


@dataclass
class ToolCallCounts:
    count: int = 0
    denied: int = 0
    errors: int = 0
    tokens_returned: int = 0
    cache_hits: int = 0


@dataclass
class TurnMetrics:
    """Everything recorded about one turn, success or failure."""

    bundle_bytes: int = 0
    bundle_tokens_est: int = 0
    model_latency_ms: float = 0.0
    model_output_tokens_est: int = 0
    turn_latency_ms: float = 0.0
    validator_retries: int = 0
    fallbacks_count: int = 0
    validation_passed: bool = False
    tool_calls: ToolCallCounts = field(default_factory=ToolCallCounts)
    act_summary: ActCounts = field(default_factory=ActCounts)


@dataclass
class P95Metric:
    name: str
    p95: float
    count: int


def _prometheus_name(name: str) -> str:
    return _INVALID_METRIC_CHARS.sub("_", name)


class MetricsCollector:
    """In-process metrics with p95 windows and a prometheus mirror.

    Construct one per process and pass it to the assembler and orchestrator.
    """

    def __init__(self, window_size: int = DEFAULT_WINDOW_SIZE, registry: Optional[CollectorRegistry] = None):
        self.window_size = window_size
        self.registry = registry or CollectorRegistry()
        self._counters: dict[str, float] = {}
        self._timers: dict[str, deque] = {}
        self._gauges: dict[str, float] = {}
        self._collectors: dict[str, tuple[CollectorType, tuple[str, ...]]] = {}

    # ── Keys ──────────────────────────────────────────────────────

    @staticmethod
    def build_key(name: str, labels: Optional[Labels] = None) -> str:
        if not labels:
            return name
        parts = sorted(f"{k}={v}" for k, v in labels.items() if v is not None)
        return f"{name}{{{','.join(parts)}}}" if parts else name

    # ── Recording ─────────────────────────────────────────────────

    def record_counter(self, name: str, value: float = 1, labels: Optional[Labels] = None) -> None:
        try:
            key = self.build_key(name, labels)
            self._counters[key] = self._counters.get(key, 0) + value
            child = self._mirror(Counter, name, labels) if value > 0 else None
            if child is not None:
                child.inc(value)
            logger.debug(f"[Metrics] Counter {key}: +{value} (total: {self._counters[key]})")
        except Exception as e:
            logger.warning(f"[Metrics] Failed to record counter {name}: {e}")

    def record_timer(self, name: str, ms: float, labels: Optional[Labels] = None) -> None:
        try:
            key = self.build_key(name, labels)
            window = self._timers.setdefault(key, deque(maxlen=self.window_size))
            window.append(ms)
            child = self._mirror(Histogram, name, labels)
            if child is not None:
                child.observe(ms)
            logger.debug(f"[Metrics] Timer {key}: {ms:.1f}ms")
        except Exception as e:
            logger.warning(f"[Metrics] Failed to record timer {name}: {e}")

    def record_gauge(self, name: str, value: float, labels: Optional[Labels] = None) -> None:
        try:
            key = self.build_key(name, labels)
            self._gauges[key] = value
            child = self._mirror(Gauge, name, labels)
            if child is not None:
                child.set(value)
            logger.debug(f"[Metrics] Gauge {key}: {value}")
        except Exception as e:
            logger.warning(f"[Metrics] Failed to record gauge {name}: {e}")

    def _mirror(self, kind: type, name: str, labels: Optional[Labels]):
        """Lazily create the prometheus family for ``name`` and return the labelled child.

        Label names are fixed by the first sample recorded under ``name``; a
        later sample with a different label set is kept locally only (None).
        """
        label_items = sorted((k, str(v)) for k, v in (labels or {}).items() if v is not None)
        label_names = tuple(k for k, _ in label_items)
        entry = self._collectors.get(name)
        if entry is None:
            collector = kind(
                _prometheus_name(name),
                f"AWF metric {name}",
                list(label_names),
                registry=self.registry,
            )
            entry = (collector, label_names)
            self._collectors[name] = entry
        collector, family_labels = entry
        if not isinstance(collector, kind) or family_labels != label_names:
            logger.debug(f"[Metrics] {name}: label set {label_names} differs from {family_labels}, not mirrored")
            return None
        if not label_items:
            return collector
        return collector.labels(**dict(label_items))

    # ── Turn-level helpers ────────────────────────────────────────

    def record_turn(self, metrics: TurnMetrics, labels: Optional[Labels] = None) -> None:
        self.record_gauge("awf.bundle.bytes", metrics.bundle_bytes, labels)
        self.record_gauge("awf.bundle.tokens_est", metrics.bundle_tokens_est, labels)
        self.record_timer("awf.model.latency_ms", metrics.model_latency_ms, labels)
        self.record_gauge("awf.model.output_tokens_est", metrics.model_output_tokens_est, labels)
        self.record_timer("awf.turn.latency_ms", metrics.turn_latency_ms, labels)
        self.record_counter("awf.validator.retries", metrics.validator_retries, labels)
        self.record_counter("awf.fallbacks.count", metrics.fallbacks_count, labels)

        tools = metrics.tool_calls
        self.record_counter("awf.tools.calls.count", tools.count, labels)
        self.record_counter("awf.tools.denied.count", tools.denied, labels)
        self.record_counter("awf.tools.errors.count", tools.errors, labels)
        self.record_counter("awf.tools.tokens_returned", tools.tokens_returned, labels)
        self.record_counter("awf.tools.cache_hits", tools.cache_hits, labels)

        for act_name, count in asdict(metrics.act_summary).items():
            self.record_counter(f"awf.acts.{act_name}", count, labels)

    def record_bundle_assembly(self, bundle_bytes: int, bundle_tokens: int, assembly_ms: float,
                               labels: Optional[Labels] = None) -> None:
        self.record_gauge("awf.bundle.bytes", bundle_bytes, labels)
        self.record_gauge("awf.bundle.tokens_est", bundle_tokens, labels)
        self.record_timer("awf.bundle.assembly_ms", assembly_ms, labels)

    def record_fallback(self, reason: str, labels: Optional[Labels] = None) -> None:
        """Per-reason breakdown; the total lives in awf.fallbacks.count via record_turn."""
        self.record_counter("awf.fallbacks.by_reason", 1, {**(labels or {}), "reason": reason})

    def record_structured_log(self, entry: dict[str, Any]) -> None:
        """One JSON line per turn for log-based analysis."""
        try:
            payload = {**entry}
            payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
            logger.info(f"[Turn] {json.dumps(payload, default=str, sort_keys=True)}")
        except (TypeError, ValueError) as e:
            logger.warning(f"[Metrics] Failed to write structured log: {e}")

    # ── Reading ───────────────────────────────────────────────────

    @staticmethod
    def _p95(values: list[float]) -> float:
        ordered = sorted(values)
        return ordered[max(0, math.ceil(len(ordered) * 0.95) - 1)]

    def get_p95(self, name: str, labels: Optional[Labels] = None) -> Optional[float]:
        window = self._timers.get(self.build_key(name, labels))
        if not window:
            return None
        return self._p95(list(window))

    def get_all_p95(self) -> list[P95Metric]:
        return [
            P95Metric(name=key, p95=self._p95(list(window)), count=len(window))
            for key, window in self._timers.items()
            if window
        ]

    def get_counter(self, name: str, labels: Optional[Labels] = None) -> float:
        return self._counters.get(self.build_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Optional[Labels] = None) -> Optional[float]:
        return self._gauges.get(self.build_key(name, labels))

    def get_counters(self) -> dict[str, float]:
        return dict(self._counters)

    def get_gauges(self) -> dict[str, float]:
        return dict(self._gauges)

    def summary(self) -> dict[str, Any]:
        return {
            "counters": self.get_counters(),
            "gauges": self.get_gauges(),
            "p95": [asdict(p) for p in self.get_all_p95()],
        }

    def export_prometheus(self) -> bytes:
        """Text exposition of this collector's registry."""
        return generate_latest(self.registry)

    def clear(self) -> None:
        """Reset local aggregates (the prometheus registry keeps its families)."""
        self._counters.clear()
        self._timers.clear()
        self._gauges.clear()
