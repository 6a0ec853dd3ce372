"""
agent-shield type definitions

Result models shared across the guardrail pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field

__all__ = [
    "Severity",
    "PatternCategory",
    "ALERT_SEVERITIES",
    "SEVERITY_ORDER",
    "UrlVerdict",
    "SensitiveMatch",
    "ScanResult",
    "SanitizeResult",
    "SandboxState",
    "ExecutionResult",
    "ActionResult",
]


Severity = Literal["low", "medium", "high", "critical"]

PatternCategory = Literal["api_key", "credential", "secret", "pii", "fiscal", "custom"]

# Severities that require an operator alert
ALERT_SEVERITIES = frozenset({"high", "critical"})

SEVERITY_ORDER: Dict[str, int] = {"low": 0, "medium": 1, "high": 2, "critical": 3}


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class UrlVerdict(BaseModel):
    """Outcome of a single URL check. Never persisted."""

    allowed: bool = Field(..., description="Whether the URL may be visited")

    reason: Optional[str] = Field(
        None,
        description="Human-readable, non-leaking reason (set when blocked)"
    )

    matched_rule: Optional[str] = Field(
        None,
        description="Rule that produced the verdict (for operators, not end users)"
    )

    is_allowlisted: bool = Field(
        default=False,
        description="Informational: host matches the allowlist"
    )


class SensitiveMatch(BaseModel):
    """
    One sensitive-data hit.

    Carries only metadata about the hit; the matched value itself is never
    stored on the model.
    """

    pattern: str = Field(..., description="Catalog pattern name")

    category: PatternCategory = Field(..., description="Pattern category")

    severity: Severity = Field(..., description="Exposure severity")

    start: int = Field(..., ge=0, description="Start offset in the scanned text")

    end: int = Field(..., ge=0, description="End offset (exclusive)")

    @property
    def length(self) -> int:
        return self.end - self.start


class ScanResult(BaseModel):
    """Result of a SensitiveDataScanner pass over one piece of text"""

    matches: List[SensitiveMatch] = Field(
        default_factory=list,
        description="All matches ordered by position"
    )

    redacted_text: str = Field(..., description="Text safe to transmit")

    original_length: int = Field(default=0, ge=0, description="Length of scanned text")

    timestamp: str = Field(default_factory=_utcnow, description="Scan time (ISO 8601)")

    @computed_field
    @property
    def had_match(self) -> bool:
        return len(self.matches) > 0

    @computed_field
    @property
    def should_alert(self) -> bool:
        return any(m.severity in ALERT_SEVERITIES for m in self.matches)


class SanitizeResult(BaseModel):
    """Result of ContentSanitizer.sanitize"""

    allowed: bool = Field(..., description="Content may be forwarded to the agent")

    text: str = Field(default="", description="Sanitized content (empty when rejected)")

    warnings: List[str] = Field(default_factory=list, description="Non-fatal findings")

    reason: Optional[str] = Field(None, description="Rejection reason")

    source_url: Optional[str] = Field(None, description="Where the content came from")

    original_length: int = Field(default=0, ge=0, description="Raw size in bytes")

    sanitized_length: int = Field(default=0, ge=0, description="Length of returned text")

    sensitive_patterns: List[str] = Field(
        default_factory=list,
        description="Labels of sensitive rules that fired (never the matched text)"
    )

    truncated: bool = Field(default=False, description="Text was cut to max length")


class SandboxState(str, Enum):
    """Sandbox lifecycle states"""

    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    KILLED = "killed"
    CLEANED_UP = "cleaned_up"


class ExecutionResult(BaseModel):
    """Outcome of one sandboxed execution"""

    handle_id: str = Field(..., description="Unique sandbox handle ID")

    state: SandboxState = Field(..., description="Terminal state before cleanup")

    exit_code: Optional[int] = Field(None, description="Exit code (COMPLETED only)")

    signal: Optional[int] = Field(None, description="Signal number (KILLED only)")

    stdout: str = Field(default="", description="Standard output")

    stderr: str = Field(default="", description="Standard error output")

    duration_ms: int = Field(default=0, ge=0, description="Wall-clock duration")

    timed_out: bool = Field(default=False, description="Hard timeout fired")

    cleaned_up: bool = Field(
        default=False,
        description="Backend confirmed that all sandbox resources were reclaimed"
    )

    network_mode: str = Field(default="none", description="Container network mode used")

    metadata: Dict[str, Any] = Field(default_factory=dict, description="Extra details")

    @property
    def success(self) -> bool:
        return self.state == SandboxState.COMPLETED and self.exit_code == 0


class ActionResult(BaseModel):
    """What the action requester receives. Never carries unsanitized content."""

    action: Literal["navigate", "search", "command"] = Field(..., description="Action kind")

    target: str = Field(..., description="URL or command summary")

    blocked: bool = Field(..., description="Action was refused or its output rejected")

    reason: Optional[str] = Field(None, description="Block reason")

    content: str = Field(default="", description="Sanitized / redacted content")

    warnings: List[str] = Field(default_factory=list, description="Non-fatal findings")

    is_allowlisted: bool = Field(default=False, description="Target domain is allowlisted")

    original_length: int = Field(default=0, ge=0, description="Raw payload size")

    timed_out: bool = Field(default=False, description="Sandbox hit its hard timeout")

    audit_ids: List[str] = Field(
        default_factory=list,
        description="IDs of audit entries recorded for this action"
    )

    execution: Optional[ExecutionResult] = Field(
        None,
        description="Sandbox execution details (output fields are scrubbed)"
    )

    fetched_at: str = Field(default_factory=_utcnow, description="Completion time")
