"""
Unit tests for the network isolation planner.
"""

from agent_shield.security.isolation import (
    LOG_PREFIX,
    FirewallRule,
    NetworkIsolationPlanner,
    render_iptables_script,
)
from agent_shield.security.policies import NetworkRules, Policy


def _policy(**network) -> Policy:
    return Policy(version="2.0.0", network=NetworkRules(**network))


class TestRuleOrder:
    """The rule list order is part of the plan contract."""

    def test_default_policy_layout(self, policy):
        """CIDR pairs, metadata, ICMP, then the default-deny tail."""
        plan = NetworkIsolationPlanner().compile(policy)
        rules = plan.rules
        cidrs = len(policy.network.blocked_cidrs)

        for index in range(cidrs):
            log, drop = rules[2 * index], rules[2 * index + 1]
            assert log.action == "LOG"
            assert drop.action == "DROP"
            assert log.target == drop.target

        metadata = [r for r in rules if r.comment == "metadata"]
        assert [r.target for r in metadata] == [
            "169.254.169.254/32", "169.254.170.2/32", "100.100.100.200/32", "fd00:ec2::254/128",
        ]
        assert metadata[-1].family == "ipv6"

        assert rules[2 * cidrs + len(metadata)].protocol == "icmp"
        assert rules[-1] == FirewallRule("any", "DROP", family="any", comment="default deny")

    def test_each_range_logged_before_drop(self, policy):
        """Every blocked range has a LOG immediately before its DROP."""
        rules = NetworkIsolationPlanner().compile(policy).rules

        for index, rule in enumerate(rules):
            if rule.action == "LOG":
                assert rules[index + 1].action == "DROP"
                assert rules[index + 1].target == rule.target

    def test_blocks_precede_accepts(self, policy):
        """No ACCEPT rule comes before any range DROP."""
        rules = NetworkIsolationPlanner().compile(policy).rules
        first_accept = min(i for i, r in enumerate(rules) if r.action == "ACCEPT")
        last_range_drop = max(i for i, r in enumerate(rules) if r.comment in ("blocked range", "metadata"))

        assert last_range_drop < first_accept

    def test_dns_then_ports(self, policy):
        """Resolvers are reachable on port 53 (udp and tcp) before the port rules."""
        rules = NetworkIsolationPlanner().compile(policy).rules
        accepts = [r for r in rules if r.action == "ACCEPT"]

        assert [(r.target, r.protocol, r.port) for r in accepts] == [
            ("1.1.1.1/32", "udp", 53),
            ("1.1.1.1/32", "tcp", 53),
            ("1.0.0.1/32", "udp", 53),
            ("1.0.0.1/32", "tcp", 53),
            ("any", "tcp", 80),
            ("any", "tcp", 443),
        ]


class TestPolicyOptions:
    """Policy switches change the compiled plan."""

    def test_no_default_deny(self):
        """Without default-deny there are no ACCEPT rules and no catch-all."""
        plan = NetworkIsolationPlanner().compile(_policy(default_deny=False))

        assert plan.default_deny is False
        assert all(r.action != "ACCEPT" for r in plan.rules)
        assert plan.rules[-1].comment == "icmp"

    def test_strict_forces_default_deny(self):
        """A strict planner adds the deny tail regardless of policy."""
        plan = NetworkIsolationPlanner(strict=True).compile(_policy(default_deny=False))

        assert plan.default_deny is True
        assert plan.rules[-1].comment == "default deny"

    def test_log_and_icmp_switches(self):
        """log_blocked=False drops LOG rules; allow_icmp=True drops the ICMP rule."""
        plan = NetworkIsolationPlanner().compile(_policy(log_blocked=False, allow_icmp=True))

        assert all(r.action != "LOG" for r in plan.rules)
        assert all(r.protocol != "icmp" for r in plan.rules)

    def test_metadata_switch(self):
        """block_metadata=False omits the metadata rules."""
        plan = NetworkIsolationPlanner().compile(_policy(block_metadata=False))

        assert not [r for r in plan.rules if r.comment == "metadata"]

    def test_plan_is_deterministic(self, policy):
        """The same policy always compiles to the same plan."""
        planner = NetworkIsolationPlanner()
        assert planner.compile(policy) == planner.compile(policy)


class TestNetworkMode:
    """Container network arguments."""

    def test_outbound_web_uses_bridge(self, policy):
        """Sandboxes with web access get a bridge network and the plan resolvers."""
        plan = NetworkIsolationPlanner().compile(policy, outbound_web=True)

        assert plan.network_mode == "bridge"
        assert plan.needs_firewall is True
        assert plan.container_kwargs() == {
            "network_mode": "bridge",
            "dns": ["1.1.1.1", "1.0.0.1"],
            "dns_opt": ["ndots:0"],
        }

    def test_no_web_means_no_network(self, policy):
        """Sandboxes without web access have no network at all."""
        plan = NetworkIsolationPlanner().compile(policy, outbound_web=False)

        assert plan.network_mode == "none"
        assert plan.needs_firewall is False
        assert plan.container_kwargs() == {"network_mode": "none"}

    def test_plan_carries_policy_version(self):
        plan = NetworkIsolationPlanner().compile(_policy())
        assert plan.policy_version == "2.0.0"
        assert "policy v2.0.0" in plan.summary()


class TestIptablesScript:
    """Rendering the plan for iptables."""

    def test_script_structure(self, policy):
        """The script aborts on error and flushes before appending rules."""
        script = render_iptables_script(NetworkIsolationPlanner().compile(policy))
        lines = script.strip().splitlines()

        assert lines[:4] == ["#!/bin/sh", "set -e", "iptables -F OUTPUT", "ip6tables -F OUTPUT"]
        assert "iptables -A OUTPUT -d 169.254.169.254/32 -j DROP" in lines
        assert "ip6tables -A OUTPUT -d fc00::/7 -j DROP" in lines
        assert "iptables -A OUTPUT -p icmp -j DROP" in lines
        assert "iptables -A OUTPUT -d 1.1.1.1/32 -p udp --dport 53 -j ACCEPT" in lines
        assert lines[-2:] == ["iptables -A OUTPUT -j DROP", "ip6tables -A OUTPUT -j DROP"]

    def test_log_prefix_is_quoted(self, policy):
        """The LOG prefix contains a space and is shell-quoted."""
        script = render_iptables_script(NetworkIsolationPlanner().compile(policy))

        assert f"iptables -A OUTPUT -d 10.0.0.0/8 -j LOG --log-prefix '{LOG_PREFIX}'" in script
