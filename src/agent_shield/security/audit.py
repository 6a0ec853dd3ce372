"""
agent-shield security audit log

Durable, append-only record of every block, redaction and violation. It is
a separate sink from the application log:

- JSON-lines file output, one file per day when rotation is enabled
- Structured console output on a dedicated non-propagating logger
- Extensible for remote sinks via AuditOutput

No entry ever carries a raw matched value. Scan results are recorded as
pattern name / category / severity / length, and string context values are
passed through the redactor before they are written.

Write failures never reach the caller: they are reported on a fallback
stderr logger at CRITICAL.
"""

import json
import os
import secrets
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

from pydantic import BaseModel, Field

from agent_shield.errors import AuditWriteError
from agent_shield.security.scanner import redact_spans
from agent_shield.types import SEVERITY_ORDER, ScanResult, Severity
from agent_shield.utils.logger import get_fallback_logger, get_logger

logger = get_logger(__name__)

__all__ = [
    "AuditEventType",
    "AuditEntry",
    "AuditOutput",
    "JSONFileOutput",
    "StructuredLogOutput",
    "SecurityAuditLog",
    "create_security_audit_log",
]


class AuditEventType(str, Enum):
    """Types of security events"""

    LEAK_ATTEMPT = "leak_attempt"
    LEAK_BLOCKED = "leak_blocked"
    PATTERN_MATCH = "pattern_match"
    SANDBOX_VIOLATION = "sandbox_violation"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    AUTH_FAILURE = "auth_failure"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    URL_BLOCKED = "url_blocked"
    CONTENT_BLOCKED = "content_blocked"
    SANDBOX_TIMEOUT = "sandbox_timeout"
    SANDBOX_FAILURE = "sandbox_failure"
    POLICY_FALLBACK = "policy_fallback"
    RETENTION_PRUNE = "retention_prune"


# Event types that mean "the action was stopped"
BLOCKING_EVENTS = frozenset({
    AuditEventType.LEAK_BLOCKED,
    AuditEventType.URL_BLOCKED,
    AuditEventType.CONTENT_BLOCKED,
    AuditEventType.RATE_LIMIT_EXCEEDED,
    AuditEventType.SANDBOX_VIOLATION,
    AuditEventType.SANDBOX_TIMEOUT,
})


def _event_id() -> str:
    return f"sec-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class AuditEntry(BaseModel):
    """Security audit log entry"""

    id: str = Field(..., description="Unique entry ID (sec-<ms>-<random>)")

    timestamp: str = Field(..., description="ISO 8601 timestamp in UTC")

    type: AuditEventType = Field(..., description="Type of security event")

    severity: Severity = Field(..., description="Event severity")

    description: str = Field(..., description="Human-readable summary")

    context: Dict[str, Any] = Field(
        default_factory=dict,
        description="Event details: metadata only, never raw matched values"
    )

    session_id: Optional[str] = Field(None, description="Originating session")

    blocked: bool = Field(default=False, description="Whether the action was stopped")

    @classmethod
    def create(
        cls,
        event_type: AuditEventType,
        severity: str,
        description: str,
        context: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        blocked: Optional[bool] = None,
    ) -> "AuditEntry":
        event_type = AuditEventType(event_type)
        return cls(
            id=_event_id(),
            timestamp=datetime.now(timezone.utc).isoformat(),
            type=event_type,
            severity=severity,
            description=description,
            context=context or {},
            session_id=session_id,
            blocked=event_type in BLOCKING_EVENTS if blocked is None else blocked,
        )

    @property
    def recorded_at(self) -> datetime:
        return datetime.fromisoformat(self.timestamp)


class AuditOutput(ABC):
    """Abstract base class for audit outputs"""

    @abstractmethod
    def write(self, entry: AuditEntry) -> None:
        """Persist one entry. Raises AuditWriteError on failure."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the output and release resources"""
        pass

    def prune(self, cutoff: datetime) -> int:
        """Remove entries older than `cutoff`; returns how many were removed."""
        return 0


class JSONFileOutput(AuditOutput):
    """
    JSON-lines file output.

    Each entry is a single `os.write` on an O_APPEND descriptor, so lines
    from concurrent writers never interleave.
    """

    def __init__(
        self,
        directory: str,
        file_prefix: str = "security-audit",
        rotate_daily: bool = True,
    ):
        """
        Initialize JSON file output.

        Args:
            directory: Operator-controlled directory for audit files
            file_prefix: File name prefix
            rotate_daily: One file per UTC day (`<prefix>-YYYY-MM-DD.jsonl`)
        """
        self.directory = Path(directory)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # Retried on each write, where it surfaces as AuditWriteError
            get_fallback_logger().critical(f"Audit directory {self.directory} unavailable: {e}")
        self.file_prefix = file_prefix
        self.rotate_daily = rotate_daily
        self._lock = threading.Lock()

    def path_for(self, when: datetime) -> Path:
        if self.rotate_daily:
            return self.directory / f"{self.file_prefix}-{when.strftime('%Y-%m-%d')}.jsonl"
        return self.directory / f"{self.file_prefix}.jsonl"

    def files(self) -> List[Path]:
        return sorted(self.directory.glob(f"{self.file_prefix}*.jsonl"))

    def write(self, entry: AuditEntry) -> None:
        path = self.path_for(entry.recorded_at)
        line = (entry.model_dump_json() + "\n").encode("utf-8")

        with self._lock:
            try:
                if not self.directory.is_dir():
                    self.directory.mkdir(parents=True, exist_ok=True)
                fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
                try:
                    os.write(fd, line)
                finally:
                    os.close(fd)
            except OSError as e:
                raise AuditWriteError(str(path), e.strerror or str(e)) from e

    def read_entries(self) -> Iterator[AuditEntry]:
        """Iterate persisted entries, oldest file first. Corrupt lines are skipped."""
        for path in self.files():
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        yield AuditEntry(**json.loads(line))
                    except (ValueError, TypeError):
                        logger.warning(f"Skipping unreadable audit line in {path.name}")

    def prune(self, cutoff: datetime) -> int:
        removed = 0
        with self._lock:
            for path in self.files():
                day = self._file_day(path)
                if day is not None and day < cutoff.date():
                    with open(path, "r", encoding="utf-8") as f:
                        removed += sum(1 for line in f if line.strip())
                    path.unlink()
                    continue
                removed += self._rewrite_newer_than(path, cutoff)
        return removed

    def _file_day(self, path: Path):
        if not self.rotate_daily:
            return None
        stamp = path.stem[len(self.file_prefix) + 1:]
        try:
            return datetime.strptime(stamp, "%Y-%m-%d").date()
        except ValueError:
            return None

    @staticmethod
    def _rewrite_newer_than(path: Path, cutoff: datetime) -> int:
        kept: List[str] = []
        dropped = 0
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    timestamp = datetime.fromisoformat(json.loads(line)["timestamp"])
                except (ValueError, KeyError, TypeError):
                    kept.append(line)
                    continue
                if timestamp < cutoff:
                    dropped += 1
                else:
                    kept.append(line)

        if dropped:
            tmp = path.with_suffix(".jsonl.tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                f.writelines(kept)
            os.replace(tmp, path)
        return dropped

    def close(self) -> None:
        """No handle is held between writes"""
        pass


class StructuredLogOutput(AuditOutput):
    """Console output on a dedicated logger that does not propagate"""

    LEVELS = {"low": 20, "medium": 30, "high": 40, "critical": 50}

    def __init__(self, logger_name: str = "agent_shield.security"):
        self.logger = get_logger(logger_name)
        self.logger.propagate = False

    def write(self, entry: AuditEntry) -> None:
        self.logger.log(
            self.LEVELS[entry.severity],
            f"[{entry.type.value}] {entry.description} "
            f"(id={entry.id}, blocked={entry.blocked}, session={entry.session_id or '-'})",
        )

    def close(self) -> None:
        """No-op for structured log output"""
        pass


class SecurityAuditLog:
    """
    Append-only security audit log.

    Constructed explicitly and passed to whoever needs it; there is no
    module-level instance.

    Args:
        outputs: Sinks every entry is written to
        redactor: Optional SensitiveDataScanner applied to string context values
        on_critical: Called with each critical entry
        max_recent: Size of the in-memory buffer served by `recent()`
    """

    def __init__(
        self,
        outputs: Optional[List[AuditOutput]] = None,
        redactor=None,
        on_critical: Optional[Callable[[AuditEntry], None]] = None,
        max_recent: int = 1000,
    ):
        self.outputs = outputs if outputs is not None else [StructuredLogOutput()]
        self.redactor = redactor
        self.on_critical = on_critical
        self._recent: Deque[AuditEntry] = deque(maxlen=max_recent)
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {}
        self._write_failures = 0
        self._fallback = get_fallback_logger()

    def record(
        self,
        event_type: AuditEventType,
        severity: str,
        description: str,
        context: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        blocked: Optional[bool] = None,
    ) -> AuditEntry:
        """
        Record a security event.

        Never raises for sink failures; those are escalated on the fallback
        stderr logger instead.
        """
        entry = AuditEntry.create(
            event_type=event_type,
            severity=severity,
            description=self._scrub(description),
            context=self._scrub(context or {}),
            session_id=session_id,
            blocked=blocked,
        )

        with self._lock:
            self._recent.append(entry)
            self._counts[entry.type.value] = self._counts.get(entry.type.value, 0) + 1

        for output in self.outputs:
            try:
                output.write(entry)
            except Exception as e:
                with self._lock:
                    self._write_failures += 1
                self._fallback.critical(
                    f"AUDIT WRITE FAILURE via {type(output).__name__}: {e} "
                    f"(entry {entry.id}, type={entry.type.value}, severity={entry.severity})"
                )

        if entry.severity == "critical" and self.on_critical is not None:
            try:
                self.on_critical(entry)
            except Exception as e:
                logger.error(f"on_critical handler failed for {entry.id}: {e}")

        return entry

    def record_scan_result(
        self,
        result: ScanResult,
        session_id: Optional[str] = None,
        source: str = "output",
    ) -> Optional[AuditEntry]:
        """Record a redaction: pattern metadata only, never the matched text."""
        if not result.had_match:
            return None

        severity = max((m.severity for m in result.matches), key=SEVERITY_ORDER.__getitem__)
        return self.record(
            AuditEventType.LEAK_BLOCKED,
            severity,
            f"Redacted {len(result.matches)} sensitive match(es) from {source}",
            context={
                "source": source,
                "match_count": len(result.matches),
                "original_length": result.original_length,
                "matches": [
                    {
                        "pattern": m.pattern,
                        "category": m.category,
                        "severity": m.severity,
                        "length": m.length,
                    }
                    for m in result.matches
                ],
            },
            session_id=session_id,
            blocked=True,
        )

    def recent(self, n: int = 50) -> List[AuditEntry]:
        """Most recent `n` entries, newest last"""
        with self._lock:
            entries = list(self._recent)
        return entries[-n:] if n > 0 else []

    def prune(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """
        Delete entries older than the retention window.

        This is the only deletion path, and it records a `retention_prune`
        entry describing what it removed.
        """
        if retention_days < 1:
            raise ValueError("retention_days must be at least 1")

        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=retention_days)

        removed = 0
        for output in self.outputs:
            try:
                removed += output.prune(cutoff)
            except OSError as e:
                self._fallback.critical(f"AUDIT PRUNE FAILURE via {type(output).__name__}: {e}")

        with self._lock:
            kept = [e for e in self._recent if e.recorded_at >= cutoff]
            self._recent.clear()
            self._recent.extend(kept)

        self.record(
            AuditEventType.RETENTION_PRUNE,
            "medium",
            f"Pruned {removed} audit entries older than {retention_days} days",
            context={"retention_days": retention_days, "cutoff": cutoff.isoformat(), "removed": removed},
            blocked=False,
        )
        logger.info(f"Audit retention prune removed {removed} entries")
        return removed

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total": sum(self._counts.values()),
                "by_type": dict(self._counts),
                "write_failures": self._write_failures,
                "buffered": len(self._recent),
            }

    def close(self) -> None:
        """Close all outputs"""
        for output in self.outputs:
            try:
                output.close()
            except Exception as e:
                logger.error(f"Error closing audit output: {e}")

    def _scrub(self, value: Any) -> Any:
        if self.redactor is None:
            return value
        if isinstance(value, str):
            spans = [(m.start, m.end) for m in self.redactor.find_matches(value)]
            return redact_spans(value, spans, self.redactor.replacement_text) if spans else value
        if isinstance(value, dict):
            return {k: self._scrub(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._scrub(v) for v in value]
        return value


def create_security_audit_log(
    log_dir: Optional[str] = None,
    file_prefix: str = "security-audit",
    rotate_daily: bool = True,
    console_output: bool = True,
    redactor=None,
    on_critical: Optional[Callable[[AuditEntry], None]] = None,
) -> SecurityAuditLog:
    """
    Factory function to create a security audit log with standard outputs.

    Args:
        log_dir: Directory for JSON-lines files (no file output if None)
        file_prefix: File name prefix
        rotate_daily: One file per day
        console_output: Also emit entries on the `agent_shield.security` logger
        redactor: Scanner used to scrub string context values
        on_critical: Callback for critical entries

    Returns:
        Configured SecurityAuditLog instance
    """
    outputs: List[AuditOutput] = []

    if log_dir:
        outputs.append(JSONFileOutput(log_dir, file_prefix=file_prefix, rotate_daily=rotate_daily))

    if console_output:
        outputs.append(StructuredLogOutput())

    return SecurityAuditLog(outputs=outputs, redactor=redactor, on_critical=on_critical)
