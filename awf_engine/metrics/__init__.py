"""Metrics sink for the turn pipeline."""

from .collector import ActCounts, MetricsCollector, ToolCallCounts, TurnMetrics

__all__ = ["ActCounts", "MetricsCollector", "ToolCallCounts", "TurnMetrics"]
