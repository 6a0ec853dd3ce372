"""
Sensitive data pattern catalog for the output censor.

The catalog is versioned data: a list of SensitivePattern entries, each
validated (regex must compile) before it is accepted. Custom additions and
reloads build a fresh pattern tuple and swap it in atomically, so a
malformed pattern can never silently disable scanning.
"""

import re
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field, PrivateAttr, ValidationError, field_validator

from agent_shield.errors import InvalidPatternError
from agent_shield.types import PatternCategory, Severity
from agent_shield.utils.logger import get_logger

logger = get_logger(__name__)

__all__ = [
    "SensitivePattern",
    "PatternCatalog",
    "SENSITIVE_PATTERNS",
    "CATALOG_VERSION",
    "create_pattern",
    "validate_pattern",
]

CATALOG_VERSION = "1.0.0"

# Case-insensitive, like every built-in entry
PATTERN_FLAGS = re.IGNORECASE


class SensitivePattern(BaseModel):
    """A named regex describing one kind of sensitive data"""

    name: str = Field(..., min_length=1, max_length=64, description="Unique pattern name")

    category: PatternCategory = Field(..., description="Classification")

    pattern: str = Field(..., min_length=1, description="Regular expression source")

    severity: Severity = Field(..., description="Severity of exposure")

    description: str = Field(default="", description="What the pattern matches")

    enabled: bool = Field(default=True, description="Pattern participates in scans")

    _compiled: Optional[re.Pattern] = PrivateAttr(default=None)

    @field_validator("pattern")
    @classmethod
    def _pattern_compiles(cls, value: str) -> str:
        try:
            re.compile(value, PATTERN_FLAGS)
        except re.error as e:
            raise ValueError(f"regex does not compile: {e}")
        return value

    @property
    def regex(self) -> re.Pattern:
        if self._compiled is None:
            self._compiled = re.compile(self.pattern, PATTERN_FLAGS)
        return self._compiled


def _p(name: str, category: str, pattern: str, severity: str, description: str) -> SensitivePattern:
    return SensitivePattern(
        name=name,
        category=category,
        pattern=pattern,
        severity=severity,
        description=description,
    )


# Built-in sensitive patterns
SENSITIVE_PATTERNS: Tuple[SensitivePattern, ...] = (
    # API keys & tokens
    _p("openai_api_key", "api_key", r"sk-[a-zA-Z0-9]{20,}", "critical", "OpenAI API key"),
    _p("anthropic_api_key", "api_key", r"sk-ant-[a-zA-Z0-9-]{20,}", "critical", "Anthropic API key"),
    _p("google_api_key", "api_key", r"AIza[a-zA-Z0-9_-]{35}", "critical", "Google API key"),
    _p("aws_access_key", "api_key", r"AKIA[A-Z0-9]{16}", "critical", "AWS access key ID"),
    _p("aws_secret_key", "secret", r"(?<![a-zA-Z0-9/+])[a-zA-Z0-9/+]{40}(?![a-zA-Z0-9/+])", "critical",
       "Potential AWS secret access key"),
    _p("github_token", "api_key", r"gh[pousr]_[a-zA-Z0-9]{36,}", "critical", "GitHub token"),
    _p("stripe_key", "api_key", r"(?:sk_live_|pk_live_|sk_test_|pk_test_)[a-zA-Z0-9]{24,}", "critical",
       "Stripe API key"),
    _p("telegram_bot_token", "api_key", r"[0-9]{8,10}:[a-zA-Z0-9_-]{35}", "critical", "Telegram bot token"),
    _p("discord_token", "api_key",
       r"(?<![a-zA-Z0-9])[MN][a-zA-Z0-9]{23,}\.[a-zA-Z0-9_-]{6}\.[a-zA-Z0-9_-]{27}", "critical",
       "Discord bot token"),
    _p("jwt_token", "credential", r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*", "high", "JWT"),

    # Credentials
    _p("generic_password", "credential", r"(?:password|senha|pwd)\s*[=:]\s*[\"']?[^\"'\s]{6,}[\"']?", "high",
       "Password assignment in text"),
    _p("basic_auth", "credential", r"Basic\s+[a-zA-Z0-9+/=]{20,}", "high", "Basic auth header"),
    _p("bearer_token", "credential", r"Bearer\s+[a-zA-Z0-9._-]{20,}", "high", "Bearer token"),

    # Brazilian PII
    _p("cpf", "pii", r"\b\d{3}\.?\d{3}\.?\d{3}-?\d{2}\b", "high", "Brazilian CPF"),
    _p("cnpj", "pii", r"\b\d{2}\.?\d{3}\.?\d{3}/?\d{4}-?\d{2}\b", "high", "Brazilian CNPJ"),
    _p("rg", "pii", r"\b\d{1,2}\.\d{3}\.\d{3}-[0-9Xx]\b", "medium", "Brazilian RG"),

    # International PII
    _p("ssn", "pii", r"\b\d{3}-\d{2}-\d{4}\b", "high", "US social security number"),
    _p("credit_card", "pii", r"\b(?:\d{4}[- ]?){3}\d{4}\b", "critical", "Credit card number"),
    _p("email_sensitive", "pii", r"(?<![a-zA-Z0-9._%+-])[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}", "low",
       "E-mail address"),
    _p("phone_br", "pii", r"\(\d{2}\)\s?9?\d{4}-?\d{4}\b", "medium", "Brazilian phone number"),

    # Fiscal data
    _p("nota_fiscal", "fiscal", r"\bNF[ae]?\s*\d{6,9}\b", "medium", "Nota fiscal number"),
    _p("inscricao_estadual", "fiscal", r"\bI\.?E\.?\s*\d{9,14}\b", "medium", "Inscricao estadual"),

    # Private keys
    _p("private_key_pem", "secret", r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----", "critical",
       "PEM private key header"),
    _p("private_key_content", "secret", r"MII[a-zA-Z0-9+/=]{100,}", "critical", "Base64 private key body"),

    # Connection strings
    _p("database_url", "credential", r"(?:postgres|postgresql|mysql|mongodb|redis)://[^\s\"']+", "critical",
       "Database connection URL"),
)


def validate_pattern(pattern: str) -> bool:
    """Return True if the regex compiles."""
    try:
        re.compile(pattern, PATTERN_FLAGS)
        return True
    except re.error:
        return False


def create_pattern(
    name: str,
    pattern: str,
    category: str = "custom",
    severity: str = "high",
    description: Optional[str] = None,
) -> SensitivePattern:
    """
    Build a validated custom pattern.

    Raises:
        InvalidPatternError: If the regex does not compile or a field is invalid
    """
    try:
        return SensitivePattern(
            name=name,
            category=category,
            pattern=pattern,
            severity=severity,
            description=description or f"Custom pattern: {name}",
        )
    except ValidationError as e:
        errors = "; ".join(err["msg"] for err in e.errors())
        raise InvalidPatternError(name, errors) from e


class PatternCatalog:
    """
    Versioned, hot-reloadable set of sensitive patterns.

    Readers call `patterns` and get an immutable tuple snapshot; writers
    (`add_custom`, `reload`) validate everything first and only then swap
    the snapshot under a lock.
    """

    def __init__(
        self,
        patterns: Optional[Iterable[SensitivePattern]] = None,
        version: str = CATALOG_VERSION,
    ):
        entries = tuple(patterns) if patterns is not None else SENSITIVE_PATTERNS
        self._check_unique(entries)
        self._lock = threading.Lock()
        self._patterns: Tuple[SensitivePattern, ...] = entries
        self._version = version
        self._custom_count = 0

    @property
    def version(self) -> str:
        return self._version

    @property
    def patterns(self) -> Tuple[SensitivePattern, ...]:
        return self._patterns

    def __len__(self) -> int:
        return len(self._patterns)

    def get(self, name: str) -> Optional[SensitivePattern]:
        for p in self._patterns:
            if p.name == name:
                return p
        return None

    def by_category(self, category: str) -> List[SensitivePattern]:
        return [p for p in self._patterns if p.category == category]

    def by_severity(self, severity: str) -> List[SensitivePattern]:
        return [p for p in self._patterns if p.severity == severity]

    def add_custom(
        self,
        name: str,
        pattern: str,
        category: str = "custom",
        severity: str = "high",
        description: Optional[str] = None,
    ) -> SensitivePattern:
        """
        Admin action: validate and append a custom pattern.

        Raises:
            InvalidPatternError: On a non-compiling regex or duplicate name
        """
        entry = create_pattern(name, pattern, category, severity, description)

        with self._lock:
            if any(p.name == name for p in self._patterns):
                raise InvalidPatternError(name, "a pattern with this name already exists")
            self._patterns = self._patterns + (entry,)
            self._custom_count += 1
            self._version = f"{self._version.split('+')[0]}+custom.{self._custom_count}"

        logger.info(f"Custom pattern '{name}' added (catalog version {self._version})")
        return entry

    def reload(self, data: List[Dict[str, Any]], version: str) -> None:
        """
        Replace the whole catalog from plain data.

        Every entry is validated before anything is swapped in; on error the
        current catalog stays in effect.

        Raises:
            InvalidPatternError: If any entry is invalid
        """
        entries = []
        for item in data:
            name = str(item.get("name", "<unnamed>"))
            try:
                entries.append(SensitivePattern(**item))
            except ValidationError as e:
                errors = "; ".join(err["msg"] for err in e.errors())
                raise InvalidPatternError(name, errors) from e

        entries_tuple = tuple(entries)
        self._check_unique(entries_tuple)

        with self._lock:
            self._patterns = entries_tuple
            self._version = version
            self._custom_count = 0

        logger.info(f"Pattern catalog reloaded: {len(entries_tuple)} patterns, version {version}")

    @staticmethod
    def _check_unique(entries: Tuple[SensitivePattern, ...]) -> None:
        seen = set()
        for p in entries:
            if p.name in seen:
                raise InvalidPatternError(p.name, "duplicate pattern name")
            seen.add(p.name)
