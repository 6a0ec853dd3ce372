"""Monitoring utilities for agent-shield."""

from agent_shield.monitoring.metrics import ShieldMetrics, ShieldMetricsSnapshot

__all__ = ["ShieldMetrics", "ShieldMetricsSnapshot"]
