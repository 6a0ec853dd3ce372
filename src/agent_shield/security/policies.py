"""
Security policy model and store for agent-shield.

A Policy is an immutable snapshot of everything the guardrails enforce:
- URL block/allow lists and reasons
- Content rules for fetched material
- Sensitive-data rules used in block mode
- Rate limits
- Network isolation rules (CIDRs, resolvers, ports)
- Sandbox resource limits and presets

PolicyStore owns the current snapshot. Reloading replaces the snapshot
(and its derived isolation plans) as a whole; nothing is mutated in place.
"""

import ipaddress
import json
import re
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, field_serializer, field_validator

from agent_shield.errors import PolicyError
from agent_shield.utils.logger import get_logger

logger = get_logger(__name__)

__all__ = [
    "ResourceLimits",
    "SandboxPreset",
    "Blocklist",
    "Allowlist",
    "ContentRules",
    "SensitiveDataRules",
    "RateLimits",
    "NetworkRules",
    "Policy",
    "PolicyStore",
    "DomainMatcher",
    "DEFAULT_POLICY_PATH",
    "PRIVATE_NETWORKS",
    "METADATA_IPS",
    "SECURE_DNS_SERVERS",
]

DEFAULT_POLICY_PATH = Path(__file__).resolve().parent.parent / "data" / "default_policy.yaml"

# Private network ranges (RFC 1918, loopback, link-local, CGNAT + IPv6 equivalents)
PRIVATE_NETWORKS: Tuple[str, ...] = (
    "0.0.0.0/8",
    "10.0.0.0/8",
    "100.64.0.0/10",
    "127.0.0.0/8",
    "169.254.0.0/16",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "::1/128",
    "::/128",
    "fc00::/7",
    "fe80::/10",
)

# Cloud metadata endpoints
METADATA_IPS: Tuple[str, ...] = (
    "169.254.169.254",
    "169.254.170.2",
    "100.100.100.200",
    "fd00:ec2::254",
)

# Public, non-logging resolvers
SECURE_DNS_SERVERS: Tuple[str, ...] = ("1.1.1.1", "1.0.0.1", "9.9.9.9")

_FROZEN = ConfigDict(frozen=True, extra="forbid")


class DomainMatcher:
    """
    Domain list matching.

    Supports:
    - Exact domain matching (example.com)
    - Subdomain matching (www.example.com matches example.com)
    - Wildcard entries (*.example.com matches any subdomain, not the apex)
    """

    @classmethod
    def match(cls, host: str, domains) -> Optional[str]:
        """Return the first entry of `domains` that covers `host`, if any."""
        host = host.lower().rstrip(".")
        for entry in domains:
            if cls._matches_entry(host, entry):
                return entry
        return None

    @staticmethod
    def _matches_entry(host: str, entry: str) -> bool:
        if entry.startswith("*."):
            return host.endswith(entry[1:])
        return host == entry or host.endswith("." + entry)

    @staticmethod
    def normalize(entries) -> Tuple[str, ...]:
        """Lower-case, strip scheme / trailing slash, drop empties."""
        normalized = []
        for entry in entries:
            entry = str(entry).strip().lower()
            if entry.startswith(("http://", "https://")):
                entry = entry.split("://", 1)[1]
            entry = entry.rstrip("/").rstrip(".")
            if entry:
                normalized.append(entry)
        return tuple(normalized)


def glob_to_regex(pattern: str) -> re.Pattern:
    """Compile a glob-style URL pattern (`*` and `?`) to a case-insensitive regex."""
    escaped = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(escaped, re.IGNORECASE)


class ResourceLimits(BaseModel):
    """
    Resource limits applied to a sandbox at creation time.

    All memory values are in MB.

    Attributes:
        memory_mb: Maximum memory usage (swap is disabled)
        cpu_cores: CPU cores to allocate (can be fractional)
        cpu_shares: CPU shares (1024 = normal priority)
        pids_limit: Maximum number of processes
        read_only_rootfs: Make root filesystem read-only
        tmpfs_mb: Size of the writable /tmp tmpfs
        capabilities_add: Linux capabilities granted (none by default)
        user: User the command runs as
    """

    model_config = _FROZEN

    memory_mb: int = Field(default=256, ge=16, le=65536, description="Memory limit in MB")

    cpu_cores: float = Field(default=0.5, gt=0, le=64.0, description="Number of CPU cores")

    cpu_shares: int = Field(default=512, ge=2, le=10240, description="CPU shares (1024 = normal)")

    pids_limit: int = Field(default=128, ge=1, le=100000, description="Maximum processes")

    read_only_rootfs: bool = Field(default=True, description="Make root filesystem read-only")

    tmpfs_mb: int = Field(default=64, ge=0, le=4096, description="Writable /tmp size in MB (0 = none)")

    capabilities_add: Tuple[str, ...] = Field(
        default=(),
        description="Linux capabilities to grant (all others are dropped)"
    )

    user: str = Field(default="65534:65534", description="uid:gid the command runs as")

    def get_docker_config(self) -> Dict[str, Any]:
        """Generate docker SDK container-create arguments for these limits"""
        config: Dict[str, Any] = {
            "mem_limit": f"{self.memory_mb}m",
            "memswap_limit": f"{self.memory_mb}m",
            "nano_cpus": int(self.cpu_cores * 1e9),
            "cpu_shares": self.cpu_shares,
            "pids_limit": self.pids_limit,
            "read_only": self.read_only_rootfs,
            "cap_drop": ["ALL"],
            "security_opt": ["no-new-privileges"],
            "user": self.user,
        }
        if self.capabilities_add:
            config["cap_add"] = list(self.capabilities_add)
        if self.tmpfs_mb:
            config["tmpfs"] = {"/tmp": f"rw,noexec,nosuid,size={self.tmpfs_mb}m"}
        return config


class SandboxPreset(BaseModel):
    """Named sandbox profile (image + limits + whether outbound web is needed)"""

    model_config = _FROZEN

    image: str = Field(..., min_length=1, description="Container image")

    timeout_sec: float = Field(default=30, gt=0, le=3600, description="Hard wall-clock timeout")

    memory_mb: int = Field(default=256, ge=16, le=65536, description="Memory limit in MB")

    cpu_cores: float = Field(default=0.5, gt=0, le=64.0, description="CPU cores")

    outbound_web: bool = Field(default=False, description="Sandbox needs outbound web access")

    def limits(self, base: ResourceLimits) -> ResourceLimits:
        return base.model_copy(update={"memory_mb": self.memory_mb, "cpu_cores": self.cpu_cores})


class Blocklist(BaseModel):
    model_config = _FROZEN

    domains: Tuple[str, ...] = Field(default=(), description="Blocked domains (suffix match)")

    domain_categories: Mapping[str, str] = Field(
        default_factory=dict,
        validate_default=True,
        description="Blocked domain -> reason key"
    )

    patterns: Tuple[str, ...] = Field(default=(), description="Glob patterns matched against the full URL")

    file_extensions: Tuple[str, ...] = Field(default=(), description="Blocked path extensions")

    reasons: Mapping[str, str] = Field(
        default_factory=dict,
        validate_default=True,
        description="Reason key -> message"
    )

    @field_validator("domain_categories", "reasons")
    @classmethod
    def _read_only(cls, value):
        return MappingProxyType(dict(value))

    @field_serializer("domain_categories", "reasons")
    def _plain_dict(self, value):
        return dict(value)

    @field_validator("domains")
    @classmethod
    def _normalize_domains(cls, value):
        return DomainMatcher.normalize(value)

    @field_validator("file_extensions")
    @classmethod
    def _normalize_extensions(cls, value):
        return tuple(ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in value if ext)


class Allowlist(BaseModel):
    model_config = _FROZEN

    domains: Tuple[str, ...] = Field(default=(), description="Allowlisted domains")

    categories: Tuple[str, ...] = Field(default=(), description="Informational categories")

    @field_validator("domains")
    @classmethod
    def _normalize_domains(cls, value):
        return DomainMatcher.normalize(value)


class ContentTimeouts(BaseModel):
    model_config = _FROZEN

    navigation_ms: int = Field(default=30000, ge=100, le=600000)

    content_extraction_ms: int = Field(default=10000, ge=100, le=600000)


class ContentRules(BaseModel):
    model_config = _FROZEN

    max_page_size_bytes: int = Field(default=5 * 1024 * 1024, ge=1, description="Reject raw content above this")

    max_text_length: int = Field(default=50000, ge=1, description="Truncate sanitized text above this")

    strip_scripts: bool = True

    strip_styles: bool = True

    strip_comments: bool = True

    extract_text_only: bool = False

    preserve_links: bool = True

    timeout: ContentTimeouts = Field(default_factory=ContentTimeouts)

    user_agent: str = Field(default="AgentShield/1.0")


class SearchEngines(BaseModel):
    model_config = _FROZEN

    primary: str = Field(default="https://duckduckgo.com/html/?q=")

    fallback: Tuple[str, ...] = ()

    prefer_privacy: bool = True


class SensitiveDataRules(BaseModel):
    """Regexes applied to fetched content before it reaches the agent"""

    model_config = _FROZEN

    block_if_detected: Tuple[str, ...] = Field(default=(), description="Regexes that reject content")

    warn_if_detected: Tuple[str, ...] = Field(default=(), description="Regexes that only warn")

    block_catalog_patterns: Tuple[str, ...] = Field(
        default=(),
        description="Names of catalog patterns that also reject content"
    )

    @field_validator("block_if_detected", "warn_if_detected")
    @classmethod
    def _regexes_compile(cls, value):
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"sensitive-data regex does not compile: {e}")
        return value


class RateLimits(BaseModel):
    model_config = _FROZEN

    max_requests_per_minute: int = Field(default=30, ge=1, le=100000)

    max_requests_per_hour: int = Field(default=200, ge=1, le=1000000)

    cooldown_after_block_ms: int = Field(default=60000, ge=0, le=86400000)


class NetworkRules(BaseModel):
    """Inputs to the network isolation planner"""

    model_config = _FROZEN

    blocked_cidrs: Tuple[str, ...] = Field(default=PRIVATE_NETWORKS)

    metadata_ips: Tuple[str, ...] = Field(default=METADATA_IPS)

    dns_servers: Tuple[str, ...] = Field(default=SECURE_DNS_SERVERS[:2])

    allowed_ports: Tuple[int, ...] = Field(default=(80, 443))

    default_deny: bool = False

    allow_icmp: bool = False

    block_metadata: bool = True

    log_blocked: bool = True

    allowed_schemes: Tuple[str, ...] = Field(default=("http", "https"))

    suspicious_hostnames: Tuple[str, ...] = Field(
        default=("router", "gateway", "admin", "modem", "fritz.box")
    )

    internal_suffixes: Tuple[str, ...] = Field(
        default=(".local", ".lan", ".internal", ".intranet", ".home.arpa", ".localdomain", ".corp")
    )

    @field_validator("blocked_cidrs")
    @classmethod
    def _cidrs_parse(cls, value):
        for cidr in value:
            try:
                ipaddress.ip_network(cidr, strict=False)
            except ValueError as e:
                raise ValueError(f"invalid CIDR {cidr!r}: {e}")
        return value

    @field_validator("metadata_ips")
    @classmethod
    def _ips_parse(cls, value):
        for ip in value:
            try:
                ipaddress.ip_address(ip)
            except ValueError as e:
                raise ValueError(f"invalid metadata IP {ip!r}: {e}")
        return value

    @field_validator("dns_servers")
    @classmethod
    def _dns_public(cls, value):
        if not value:
            raise ValueError("at least one DNS resolver is required")
        for server in value:
            try:
                address = ipaddress.ip_address(server)
            except ValueError as e:
                raise ValueError(f"invalid DNS resolver {server!r}: {e}")
            if not address.is_global:
                raise ValueError(f"DNS resolver {server} is not a public address")
        return value

    @field_validator("allowed_ports")
    @classmethod
    def _ports_valid(cls, value):
        for port in value:
            if not 0 < port < 65536:
                raise ValueError(f"invalid port {port}")
        return value

    @field_validator("allowed_schemes", "suspicious_hostnames", "internal_suffixes")
    @classmethod
    def _lowercase(cls, value):
        return tuple(v.lower() for v in value)

    def blocked_networks(self):
        return [ipaddress.ip_network(c, strict=False) for c in self.blocked_cidrs]


class Policy(BaseModel):
    """
    Immutable policy snapshot.

    Loaded once per process; a reload builds a new Policy and replaces the
    old one. Glob URL patterns are compiled once, here.
    """

    model_config = _FROZEN

    version: str = Field(default="1.0.0")

    blocklist: Blocklist = Field(default_factory=Blocklist)

    allowlist: Allowlist = Field(default_factory=Allowlist)

    content_rules: ContentRules = Field(default_factory=ContentRules)

    search_engines: SearchEngines = Field(default_factory=SearchEngines)

    sensitive_data_patterns: SensitiveDataRules = Field(default_factory=SensitiveDataRules)

    rate_limit: RateLimits = Field(default_factory=RateLimits)

    network: NetworkRules = Field(default_factory=NetworkRules)

    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)

    sandbox_presets: Dict[str, SandboxPreset] = Field(default_factory=dict)

    _url_patterns: Tuple[Tuple[str, re.Pattern], ...] = PrivateAttr(default=())

    def model_post_init(self, __context: Any) -> None:
        self._url_patterns = tuple((p, glob_to_regex(p)) for p in self.blocklist.patterns)

    @property
    def url_patterns(self) -> Tuple[Tuple[str, re.Pattern], ...]:
        return self._url_patterns

    @property
    def is_fallback(self) -> bool:
        return self.version.endswith("-fallback")

    def preset(self, name: str) -> SandboxPreset:
        try:
            return self.sandbox_presets[name]
        except KeyError:
            raise KeyError(f"Unknown sandbox preset: {name}")

    def summary(self) -> str:
        return "\n".join([
            f"Policy v{self.version}:",
            f"  Blocked domains: {len(self.blocklist.domains)}",
            f"  Blocked patterns: {len(self.blocklist.patterns)}",
            f"  Allowed domains: {len(self.allowlist.domains)}",
            f"  Max content size: {self.content_rules.max_page_size_bytes} bytes",
            f"  Strip scripts: {self.content_rules.strip_scripts}",
            f"  Rate limit: {self.rate_limit.max_requests_per_minute}/min, "
            f"{self.rate_limit.max_requests_per_hour}/hour",
        ])

    @classmethod
    def minimal(cls) -> "Policy":
        """
        Conservative built-in policy used when the policy document is
        missing or malformed: small blocklist, short timeouts, tight sandboxes.
        """
        return cls(
            version="1.0.0-fallback",
            blocklist=Blocklist(
                domains=("facebook.com", "twitter.com"),
                patterns=("*login*", "*auth*"),
                file_extensions=(".exe", ".sh"),
            ),
            allowlist=Allowlist(domains=("github.com", "stackoverflow.com"), categories=("documentation",)),
            content_rules=ContentRules(
                timeout=ContentTimeouts(navigation_ms=10000, content_extraction_ms=5000),
            ),
            sensitive_data_patterns=SensitiveDataRules(
                block_if_detected=(r"api[_-]?key", "password"),
                warn_if_detected=("email",),
                block_catalog_patterns=("openai_api_key", "anthropic_api_key", "private_key_pem"),
            ),
            rate_limit=RateLimits(),
            network=NetworkRules(default_deny=True),
            resource_limits=ResourceLimits(memory_mb=128, cpu_cores=0.5, pids_limit=64),
            sandbox_presets={
                "browser": SandboxPreset(
                    image="curlimages/curl:latest", timeout_sec=10, memory_mb=128, outbound_web=True
                ),
                "python": SandboxPreset(image="python:3.11-slim", timeout_sec=10, memory_mb=128),
                "shell": SandboxPreset(image="alpine:latest", timeout_sec=10, memory_mb=128),
            },
        )

    @classmethod
    def from_document(cls, data: Any, source: Optional[str] = None) -> "Policy":
        """
        Validate a parsed policy document.

        Raises:
            PolicyError: If the document does not validate
        """
        if not isinstance(data, dict):
            raise PolicyError("policy document must be a mapping", source)
        try:
            return cls(**data)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            raise PolicyError(f"{location}: {first['msg']} ({e.error_count()} error(s))", source) from e
        except TypeError as e:
            raise PolicyError(str(e), source) from e

    @classmethod
    def from_file(cls, path) -> "Policy":
        """
        Load a policy from a YAML or JSON file.

        Raises:
            PolicyError: If the file is missing, unreadable or invalid
        """
        path = Path(path)
        source = str(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                if path.suffix in (".yaml", ".yml"):
                    data = yaml.safe_load(f)
                elif path.suffix == ".json":
                    data = json.load(f)
                else:
                    raise PolicyError(f"unsupported policy format '{path.suffix}'", source)
        except OSError as e:
            raise PolicyError(f"cannot read policy: {e.strerror or e}", source) from e
        except UnicodeDecodeError as e:
            raise PolicyError(f"policy is not valid UTF-8: {e.reason} at byte {e.start}", source) from e
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise PolicyError(f"cannot parse policy: {e}", source) from e

        return cls.from_document(data, source)


class PolicyStore:
    """
    Holds the current Policy and the isolation plans compiled from it.

    The pair is swapped together under a lock, so a reader never sees a
    policy with a stale plan.
    """

    def __init__(
        self,
        policy: Optional[Policy] = None,
        planner=None,
        on_replace: Optional[Callable[[Policy], None]] = None,
    ):
        if planner is None:
            from agent_shield.security.isolation import NetworkIsolationPlanner
            planner = NetworkIsolationPlanner()

        self._planner = planner
        self._lock = threading.Lock()
        self._on_replace = on_replace
        self.fallback_reason: Optional[str] = None
        self._policy: Policy
        self._plans: Dict[bool, Any]
        self._install(policy or Policy())

    @classmethod
    def load(cls, path=None, planner=None) -> "PolicyStore":
        """
        Load the policy document at startup.

        A missing or malformed document never fails startup: the built-in
        minimal policy is installed instead and the error is logged once.
        """
        path = Path(path) if path is not None else DEFAULT_POLICY_PATH
        try:
            policy = Policy.from_file(path)
            store = cls(policy, planner=planner)
            logger.info(f"Policy v{policy.version} loaded from {path}")
        except PolicyError as e:
            logger.warning(f"{e}; falling back to built-in minimal policy")
            store = cls(Policy.minimal(), planner=planner)
            store.fallback_reason = e.reason
        return store

    @property
    def policy(self) -> Policy:
        return self._policy

    @property
    def planner(self):
        return self._planner

    def isolation_plan(self, outbound_web: bool):
        """Plan matching the current policy for a sandbox with/without web access"""
        return self._plans[bool(outbound_web)]

    def snapshot(self, outbound_web: bool):
        """Return a consistent (policy, plan) pair"""
        with self._lock:
            return self._policy, self._plans[bool(outbound_web)]

    def replace(self, policy: Policy) -> None:
        """Swap in a new policy and regenerate its isolation plans"""
        self._install(policy)
        logger.info(f"Policy replaced: now v{policy.version}")
        if self._on_replace is not None:
            self._on_replace(policy)

    def reload(self, path) -> Policy:
        """
        Replace the policy from a document.

        Unlike startup, a bad document on reload keeps the current policy.

        Raises:
            PolicyError: If the new document is invalid
        """
        policy = Policy.from_file(path)
        self.replace(policy)
        self.fallback_reason = None
        return policy

    def _install(self, policy: Policy) -> None:
        plans = {
            True: self._planner.compile(policy, outbound_web=True),
            False: self._planner.compile(policy, outbound_web=False),
        }
        with self._lock:
            self._policy = policy
            self._plans = plans
