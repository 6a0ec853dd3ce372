"""
agent-shield network isolation planner

Compiles a Policy into a concrete enforcement plan: an ordered firewall
rule list, the DNS resolvers the sandbox may use and the container network
mode. Enforcement engines apply rules first-match-wins, so the order of
`IsolationPlan.rules` is part of the contract:

1. LOG (optional) + DROP per blocked CIDR
2. DROP per cloud metadata address
3. DROP ICMP unless allowed
4. With default-deny: ACCEPT DNS to the plan resolvers, ACCEPT per allowed
   port, then a catch-all DROP
"""

import ipaddress
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from agent_shield.security.policies import Policy
from agent_shield.utils.logger import get_logger

logger = get_logger(__name__)

__all__ = [
    "FirewallRule",
    "IsolationPlan",
    "NetworkIsolationPlanner",
    "render_iptables_script",
    "LOG_PREFIX",
]

LOG_PREFIX = "shield-blocked: "

ANY = "any"


@dataclass(frozen=True)
class FirewallRule:
    """One egress rule. `target` is a CIDR or `any`."""

    target: str
    action: str  # ACCEPT / DROP / LOG
    protocol: str = "all"
    port: Optional[int] = None
    family: str = "ipv4"  # ipv4 / ipv6 / any
    comment: str = ""

    def describe(self) -> str:
        parts = [self.action, self.target]
        if self.protocol != "all":
            parts.append(self.protocol)
        if self.port is not None:
            parts.append(f"port {self.port}")
        return " ".join(parts)


@dataclass(frozen=True)
class IsolationPlan:
    """Immutable network plan for one (policy, outbound_web) pair."""

    rules: Tuple[FirewallRule, ...]
    dns_servers: Tuple[str, ...]
    network_mode: str
    outbound_web: bool
    policy_version: str
    default_deny: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def needs_firewall(self) -> bool:
        return self.network_mode != "none"

    def container_kwargs(self) -> Dict[str, Any]:
        """docker SDK network arguments for the sandbox container."""
        if self.network_mode == "none":
            return {"network_mode": "none"}
        return {
            "network_mode": self.network_mode,
            "dns": list(self.dns_servers),
            "dns_opt": ["ndots:0"],
        }

    def summary(self) -> str:
        lines = [
            f"Isolation plan (policy v{self.policy_version}):",
            f"  Network mode: {self.network_mode}",
            f"  DNS servers: {', '.join(self.dns_servers)}",
            f"  Default deny: {self.default_deny}",
            f"  Rules: {len(self.rules)}",
        ]
        for index, rule in enumerate(self.rules, start=1):
            lines.append(f"    {index:>3}. {rule.describe()}")
        return "\n".join(lines)


def _family(cidr: str) -> str:
    return "ipv6" if ipaddress.ip_network(cidr, strict=False).version == 6 else "ipv4"


class NetworkIsolationPlanner:
    """
    Deterministic Policy -> IsolationPlan compiler.

    Args:
        strict: Force default-deny regardless of the policy setting
    """

    def __init__(self, strict: bool = False):
        self.strict = strict

    def compile(self, policy: Policy, outbound_web: bool = True) -> IsolationPlan:
        net = policy.network
        default_deny = net.default_deny or self.strict
        rules: List[FirewallRule] = []

        # (a) blocked CIDRs
        for cidr in net.blocked_cidrs:
            target = str(ipaddress.ip_network(cidr, strict=False))
            family = _family(target)
            if net.log_blocked:
                rules.append(FirewallRule(target, "LOG", family=family, comment="blocked range"))
            rules.append(FirewallRule(target, "DROP", family=family, comment="blocked range"))

        # (b) cloud metadata
        if net.block_metadata:
            for ip in net.metadata_ips:
                address = ipaddress.ip_address(ip)
                target = f"{address}/{address.max_prefixlen}"
                rules.append(FirewallRule(target, "DROP", family=_family(target), comment="metadata"))

        # (c) ICMP
        if not net.allow_icmp:
            rules.append(FirewallRule(ANY, "DROP", protocol="icmp", family="ipv4", comment="icmp"))

        # (d) default deny
        if default_deny:
            for server in net.dns_servers:
                target = f"{server}/{ipaddress.ip_address(server).max_prefixlen}"
                for protocol in ("udp", "tcp"):
                    rules.append(FirewallRule(
                        target, "ACCEPT", protocol=protocol, port=53, family=_family(target), comment="dns"
                    ))
            for port in net.allowed_ports:
                rules.append(FirewallRule(ANY, "ACCEPT", protocol="tcp", port=port, family=ANY, comment="port"))
            rules.append(FirewallRule(ANY, "DROP", family=ANY, comment="default deny"))

        plan = IsolationPlan(
            rules=tuple(rules),
            dns_servers=tuple(net.dns_servers),
            network_mode="bridge" if outbound_web else "none",
            outbound_web=outbound_web,
            policy_version=policy.version,
            default_deny=default_deny,
        )
        logger.debug(
            f"Compiled isolation plan for policy v{policy.version}: "
            f"{len(plan.rules)} rules, mode={plan.network_mode}"
        )
        return plan


def _commands_for(rule: FirewallRule) -> List[str]:
    binaries = {"ipv4": ["iptables"], "ipv6": ["ip6tables"], ANY: ["iptables", "ip6tables"]}[rule.family]

    args = ["-A", "OUTPUT"]
    if rule.target != ANY:
        args += ["-d", rule.target]
    if rule.protocol != "all":
        args += ["-p", rule.protocol]
    if rule.port is not None:
        args += ["--dport", str(rule.port)]
    args += ["-j", rule.action]
    if rule.action == "LOG":
        args += ["--log-prefix", LOG_PREFIX]

    return [" ".join([binary] + [shlex.quote(a) for a in args]) for binary in binaries]


def render_iptables_script(plan: IsolationPlan) -> str:
    """
    Render the plan as a POSIX shell script for the sandbox's network
    namespace. Any failing command aborts the script (set -e).
    """
    lines = [
        "#!/bin/sh",
        "set -e",
        "iptables -F OUTPUT",
        "ip6tables -F OUTPUT",
    ]
    for rule in plan.rules:
        lines.extend(_commands_for(rule))
    return "\n".join(lines) + "\n"
