"""
In-memory metrics collector for agent-shield.

This module keeps lightweight guardrail counters without external dependencies.
"""

from dataclasses import asdict, dataclass
from threading import Lock
from typing import Any, Dict, List


@dataclass(frozen=True)
class ShieldMetricsSnapshot:
    """Immutable view of current guardrail metrics."""

    urls_checked: int = 0
    urls_blocked: int = 0
    rate_limited: int = 0
    content_sanitized: int = 0
    content_blocked: int = 0
    scans: int = 0
    redactions: int = 0
    sandboxes_started: int = 0
    sandboxes_completed: int = 0
    sandboxes_timed_out: int = 0
    sandboxes_killed: int = 0
    sandbox_create_failures: int = 0
    sandboxes_cleaned: int = 0
    sandboxes_orphaned: int = 0
    avg_execution_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Return the snapshot as a plain dictionary."""
        return asdict(self)


class ShieldMetrics:
    """
    Simple in-memory metrics collector.

    Tracks URL verdicts, content decisions, redactions and sandbox lifecycle.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Dict[str, int] = {}
        self._durations: List[int] = []

    def _inc(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def record_url_check(self, blocked: bool) -> None:
        """Record a gatekeeper verdict."""
        self._inc("urls_checked")
        if blocked:
            self._inc("urls_blocked")

    def record_rate_limited(self) -> None:
        self._inc("rate_limited")

    def record_content(self, blocked: bool) -> None:
        """Record a sanitizer decision."""
        self._inc("content_blocked" if blocked else "content_sanitized")

    def record_scan(self, matches: int) -> None:
        self._inc("scans")
        if matches:
            self._inc("redactions", matches)

    def record_sandbox_started(self) -> None:
        self._inc("sandboxes_started")

    def record_sandbox_finished(self, state: str, duration_ms: int) -> None:
        """Record the terminal state of a sandbox run."""
        key = {
            "completed": "sandboxes_completed",
            "timed_out": "sandboxes_timed_out",
            "killed": "sandboxes_killed",
        }.get(state)
        if key:
            self._inc(key)
        with self._lock:
            self._durations.append(int(duration_ms))

    def record_sandbox_create_failure(self) -> None:
        self._inc("sandbox_create_failures")

    def record_sandbox_cleaned(self, reclaimed: bool) -> None:
        self._inc("sandboxes_cleaned" if reclaimed else "sandboxes_orphaned")

    def snapshot(self) -> ShieldMetricsSnapshot:
        """Compute and return current metrics snapshot."""
        with self._lock:
            counters = dict(self._counters)
            durations = list(self._durations)

        avg = sum(durations) / len(durations) if durations else 0.0
        return ShieldMetricsSnapshot(avg_execution_time_ms=round(avg, 2), **counters)

    def reset(self) -> None:
        """Reset all collected metrics."""
        with self._lock:
            self._counters.clear()
            self._durations.clear()
