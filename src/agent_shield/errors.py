"""
agent-shield error definitions

Standard exceptions used across the guardrail pipeline.

Blocked URLs, rejected content and sandbox timeouts are NOT errors: they
are normal negative results (UrlVerdict / SanitizeResult / ExecutionResult).
"""

from typing import Optional, Dict, Any


class ShieldError(Exception):
    """Base exception for all guardrail errors"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "UNKNOWN"
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


class PolicyError(ShieldError):
    """Policy document is missing, unreadable or malformed"""

    def __init__(self, reason: str, source: Optional[str] = None):
        location = f" ({source})" if source else ""
        super().__init__(
            message=f"Invalid policy{location}: {reason}",
            error_code="POLICY_INVALID",
            details={"source": source} if source else None,
        )
        self.reason = reason
        self.source = source


class InvalidPatternError(ShieldError):
    """Sensitive-data pattern was rejected at validation time"""

    def __init__(self, name: str, reason: str):
        super().__init__(
            message=f"Pattern '{name}' rejected: {reason}",
            error_code="PATTERN_INVALID"
        )
        self.name = name
        self.reason = reason


class BackendUnavailableError(ShieldError):
    """Sandbox runtime is not reachable"""

    def __init__(self, backend: str, reason: Optional[str] = None):
        suffix = f": {reason}" if reason else ""
        super().__init__(
            message=f"Backend '{backend}' is not available{suffix}",
            error_code="BACKEND_UNAVAILABLE"
        )
        self.backend = backend


class SandboxCreationError(ShieldError):
    """Sandbox could not be created; fatal for the current execution"""

    def __init__(self, handle_id: str, reason: str):
        super().__init__(
            message=f"Sandbox '{handle_id}' could not be created: {reason}",
            error_code="SANDBOX_CREATE_FAILED"
        )
        self.handle_id = handle_id
        self.reason = reason


class SandboxStateError(ShieldError):
    """Illegal sandbox lifecycle transition"""

    def __init__(self, handle_id: str, current: str, requested: str):
        super().__init__(
            message=f"Sandbox '{handle_id}' cannot move from {current} to {requested}",
            error_code="SANDBOX_STATE"
        )
        self.handle_id = handle_id
        self.current = current
        self.requested = requested


class AuditWriteError(ShieldError):
    """Audit entry could not be persisted"""

    def __init__(self, sink: str, reason: str):
        super().__init__(
            message=f"Audit sink '{sink}' failed: {reason}",
            error_code="AUDIT_WRITE_FAILED"
        )
        self.sink = sink
        self.reason = reason


# Error codes
ERROR_CODES = {
    # Policy errors
    "POLICY_INVALID": "Policy document is invalid; built-in minimal policy in effect",
    "PATTERN_INVALID": "Sensitive-data pattern rejected",

    # Sandbox errors
    "BACKEND_UNAVAILABLE": "Sandbox backend not available",
    "SANDBOX_CREATE_FAILED": "Sandbox creation failed",
    "SANDBOX_STATE": "Illegal sandbox state transition",

    # Audit errors
    "AUDIT_WRITE_FAILED": "Security audit write failed",
}
