"""
agent-shield URL gatekeeper

Classifies a candidate URL as allowed or blocked. Checks run in a fixed
order and the first match wins:

1. Scheme
2. Loopback / private / metadata address literal (IPv4 and IPv6)
3. File extension
4. Blocked domain (exact or suffix)
5. Blocked glob pattern
6. Administrative / internal hostname heuristics

The check is a pure function of the current Policy and the input string.
A URL that cannot be parsed is blocked, never raised.
"""

import ipaddress
import posixpath
import socket
from typing import Optional, Tuple, Union
from urllib.parse import unquote, urlsplit

from agent_shield.security.policies import DomainMatcher, NetworkRules, Policy, PolicyStore
from agent_shield.types import UrlVerdict
from agent_shield.utils.logger import get_logger

logger = get_logger(__name__)

__all__ = ["UrlGatekeeper", "classify_address", "parse_ip_literal"]

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

REASON_INVALID = "invalid URL"
REASON_LOCALHOST = "Access to localhost is blocked"
REASON_METADATA = "Access to cloud metadata endpoint is blocked (private network address)"
REASON_PRIVATE = "Access to private network address is blocked"
REASON_PATTERN = "URL matches a blocked pattern"
REASON_HOSTNAME = "Administrative or internal hostname is blocked"


def parse_ip_literal(host: str) -> Optional[IPAddress]:
    """
    Parse `host` as an IP address literal.

    Accepts the legacy IPv4 spellings resolvers still honour (`127.1`,
    `2130706433`, `0x7f000001`, `0177.0.0.1`). Returns None for hostnames.
    """
    host = host.strip("[]").rstrip(".")
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass

    if host and all(c in "0123456789abcdefx." for c in host.lower()) and any(c.isdigit() for c in host):
        try:
            return ipaddress.IPv4Address(socket.inet_aton(host))
        except OSError:
            return None
    return None


def _unwrap(address: IPAddress) -> IPAddress:
    """Return the embedded IPv4 address of mapped / 6to4 / NAT64 IPv6 forms."""
    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is not None:
            return address.ipv4_mapped
        if address.sixtofour is not None:
            return address.sixtofour
        if address in ipaddress.ip_network("64:ff9b::/96"):
            return ipaddress.IPv4Address(int(address) & 0xFFFFFFFF)
    return address


def classify_address(address: IPAddress, rules: NetworkRules) -> Optional[Tuple[str, str]]:
    """
    Decide whether an address is off-limits.

    Returns:
        (reason, matched_rule) if blocked, None if the address is public
    """
    candidates = [address]
    inner = _unwrap(address)
    if inner != address:
        candidates.append(inner)

    metadata = {ipaddress.ip_address(ip) for ip in rules.metadata_ips}
    networks = rules.blocked_networks()

    for candidate in candidates:
        if candidate in metadata:
            return REASON_METADATA, f"metadata:{candidate}"

        for network in networks:
            if candidate.version == network.version and candidate in network:
                if candidate.is_link_local:
                    return REASON_METADATA, f"cidr:{network}"
                return REASON_PRIVATE, f"cidr:{network}"

        if candidate.is_link_local:
            return REASON_METADATA, "link_local"
        if (
            candidate.is_loopback
            or candidate.is_private
            or candidate.is_reserved
            or candidate.is_unspecified
            or candidate.is_multicast
            or not candidate.is_global
        ):
            return REASON_PRIVATE, "non_global_address"

    return None


class UrlGatekeeper:
    """
    URL allow/block classifier.

    Accepts either a PolicyStore (follows policy reloads) or a fixed Policy.
    """

    def __init__(self, policy: Union[Policy, PolicyStore]):
        self._source = policy

    @property
    def policy(self) -> Policy:
        if isinstance(self._source, PolicyStore):
            return self._source.policy
        return self._source

    def check(self, url: str) -> UrlVerdict:
        """Classify a URL. Never raises."""
        policy = self.policy
        rules = policy.network

        try:
            parts = urlsplit(str(url).strip())
            host = parts.hostname
            # Accessing .port validates it
            parts.port
        except ValueError:
            return self._blocked(REASON_INVALID, "parse")

        # 1. Scheme
        scheme = parts.scheme.lower()
        if not scheme:
            return self._blocked(REASON_INVALID, "parse")
        if scheme not in rules.allowed_schemes:
            return self._blocked(f"Scheme '{scheme}' is not allowed", f"scheme:{scheme}")
        if not host:
            return self._blocked(REASON_INVALID, "parse")

        host = unquote(host).lower().rstrip(".")

        # 2. Loopback / private / metadata
        if host == "localhost" or host.endswith(".localhost"):
            return self._blocked(REASON_LOCALHOST, "localhost")

        address = parse_ip_literal(host.split("%", 1)[0])
        if address is not None:
            blocked = classify_address(address, rules)
            if blocked is not None:
                return self._blocked(*blocked)

        # 3. File extension
        extension = posixpath.splitext(unquote(parts.path).lower())[1]
        if extension and extension in policy.blocklist.file_extensions:
            return self._blocked(f"File type '{extension}' is blocked", f"extension:{extension}")

        # 4. Blocked domain
        entry = DomainMatcher.match(host, policy.blocklist.domains)
        if entry is not None:
            category = policy.blocklist.domain_categories.get(entry)
            reason = policy.blocklist.reasons.get(category) if category else None
            return self._blocked(reason or f"Domain '{entry}' is blocked by policy", f"domain:{entry}")

        # 5. Glob patterns (the pattern itself goes to matched_rule only)
        lowered = str(url).strip().lower()
        for source, regex in policy.url_patterns:
            if regex.search(lowered):
                return self._blocked(REASON_PATTERN, f"pattern:{source}")

        # 6. Hostname heuristics
        rule = self._suspicious_hostname(host, rules)
        if rule is not None:
            return self._blocked(REASON_HOSTNAME, f"hostname:{rule}")

        # 7. Allowed
        return UrlVerdict(
            allowed=True,
            is_allowlisted=DomainMatcher.match(host, policy.allowlist.domains) is not None,
        )

    def is_allowed(self, url: str) -> bool:
        return self.check(url).allowed

    @staticmethod
    def _suspicious_hostname(host: str, rules: NetworkRules) -> Optional[str]:
        if address_like(host):
            return None

        labels = host.split(".")
        if len(labels) == 1:
            return "single_label"

        for name in rules.suspicious_hostnames:
            if "." in name:
                if host == name or host.endswith("." + name):
                    return name
            elif labels[0] == name:
                return name

        for suffix in rules.internal_suffixes:
            if host.endswith(suffix):
                return suffix

        return None

    @staticmethod
    def _blocked(reason: str, rule: str) -> UrlVerdict:
        logger.debug(f"URL blocked by rule {rule}")
        return UrlVerdict(allowed=False, reason=reason, matched_rule=rule)


def address_like(host: str) -> bool:
    return parse_ip_literal(host) is not None
