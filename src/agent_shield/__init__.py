"""
agent-shield: Security guardrails for AI agent actions

Keeps an agent away from internal networks, strips credentials and PII
from anything it says, and runs every action in a disposable,
resource-bounded sandbox.
"""

__version__ = "1.0.0"

from agent_shield.config import ShieldConfig
from agent_shield.errors import (
    ShieldError,
    PolicyError,
    InvalidPatternError,
    BackendUnavailableError,
    SandboxCreationError,
    SandboxStateError,
    AuditWriteError,
)
from agent_shield.types import (
    UrlVerdict,
    SensitiveMatch,
    ScanResult,
    SanitizeResult,
    SandboxState,
    ExecutionResult,
    ActionResult,
)
from agent_shield.security import (
    Policy,
    PolicyStore,
    PatternCatalog,
    UrlGatekeeper,
    NetworkIsolationPlanner,
    ContentSanitizer,
    SensitiveDataScanner,
    Censor,
    SecurityAuditLog,
    RateLimiter,
)
from agent_shield.sandbox import SandboxRuntime
from agent_shield.executor import ActionExecutor, censor_middleware

__all__ = [
    "__version__",
    "ShieldConfig",
    # Errors
    "ShieldError",
    "PolicyError",
    "InvalidPatternError",
    "BackendUnavailableError",
    "SandboxCreationError",
    "SandboxStateError",
    "AuditWriteError",
    # Types
    "UrlVerdict",
    "SensitiveMatch",
    "ScanResult",
    "SanitizeResult",
    "SandboxState",
    "ExecutionResult",
    "ActionResult",
    # Components
    "Policy",
    "PolicyStore",
    "PatternCatalog",
    "UrlGatekeeper",
    "NetworkIsolationPlanner",
    "ContentSanitizer",
    "SensitiveDataScanner",
    "Censor",
    "SecurityAuditLog",
    "RateLimiter",
    "SandboxRuntime",
    "ActionExecutor",
    "censor_middleware",
]
