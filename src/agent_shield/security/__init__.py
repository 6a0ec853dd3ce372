"""
agent-shield security module

Guardrail components:
- policies: Policy snapshot and PolicyStore
- patterns: Sensitive data pattern catalog
- gatekeeper: URL allow/block classification
- isolation: Network isolation plans for sandboxes
- sanitizer: Fetched-content sanitization
- scanner: Outbound sensitive-data redaction (Censor)
- audit: Security audit log
- ratelimit: Shared request rate limiting
"""

from .policies import (
    Policy,
    PolicyStore,
    ResourceLimits,
    RateLimits,
    NetworkRules,
    SandboxPreset,
    DomainMatcher,
)

from .patterns import (
    SensitivePattern,
    PatternCatalog,
    SENSITIVE_PATTERNS,
    create_pattern,
    validate_pattern,
)

from .gatekeeper import UrlGatekeeper
from .isolation import FirewallRule, IsolationPlan, NetworkIsolationPlanner, render_iptables_script
from .sanitizer import ContentSanitizer
from .scanner import SensitiveDataScanner, Censor
from .ratelimit import RateLimiter, RateDecision

from .audit import (
    SecurityAuditLog,
    AuditEntry,
    AuditEventType,
    AuditOutput,
    JSONFileOutput,
    StructuredLogOutput,
    create_security_audit_log,
)

__all__ = [
    # Policies
    "Policy",
    "PolicyStore",
    "ResourceLimits",
    "RateLimits",
    "NetworkRules",
    "SandboxPreset",
    "DomainMatcher",
    # Patterns
    "SensitivePattern",
    "PatternCatalog",
    "SENSITIVE_PATTERNS",
    "create_pattern",
    "validate_pattern",
    # Checks
    "UrlGatekeeper",
    "FirewallRule",
    "IsolationPlan",
    "NetworkIsolationPlanner",
    "render_iptables_script",
    "ContentSanitizer",
    "SensitiveDataScanner",
    "Censor",
    "RateLimiter",
    "RateDecision",
    # Audit
    "SecurityAuditLog",
    "AuditEntry",
    "AuditEventType",
    "AuditOutput",
    "JSONFileOutput",
    "StructuredLogOutput",
    "create_security_audit_log",
]
