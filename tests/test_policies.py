"""
Unit tests for the policy model and PolicyStore.
"""

import json

import pytest
from pydantic import ValidationError

from agent_shield.errors import PolicyError
from agent_shield.security.policies import (
    DEFAULT_POLICY_PATH,
    DomainMatcher,
    NetworkRules,
    Policy,
    PolicyStore,
    ResourceLimits,
)


class TestPolicyLoading:
    """Loading documents from disk."""

    def test_default_policy_file(self, policy):
        """The packaged policy validates and has the expected shape."""
        assert policy.version == "1.0.0"
        assert policy.is_fallback is False
        assert "facebook.com" in policy.blocklist.domains
        assert policy.network.default_deny is True
        assert set(policy.sandbox_presets) == {"browser", "python", "shell"}
        assert policy.sandbox_presets["browser"].outbound_web is True

    def test_json_policy(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"version": "3.1.0", "blocklist": {"domains": ["Example.COM"]}}))

        policy = Policy.from_file(path)

        assert policy.version == "3.1.0"
        assert policy.blocklist.domains == ("example.com",)

    def test_missing_file(self, tmp_path):
        with pytest.raises(PolicyError) as exc_info:
            Policy.from_file(tmp_path / "absent.yaml")

        assert exc_info.value.error_code == "POLICY_INVALID"
        assert exc_info.value.source.endswith("absent.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("blocklist: [unclosed\n")

        with pytest.raises(PolicyError):
            Policy.from_file(path)

    def test_schema_violation(self, tmp_path):
        """Unknown keys and bad values are rejected with their location."""
        path = tmp_path / "policy.yaml"
        path.write_text("rate_limit:\n  max_requests_per_minute: -5\n")

        with pytest.raises(PolicyError) as exc_info:
            Policy.from_file(path)

        assert "rate_limit.max_requests_per_minute" in exc_info.value.reason

    def test_unknown_key(self):
        with pytest.raises(PolicyError):
            Policy.from_document({"blocklists": {}})

    def test_non_mapping_document(self):
        with pytest.raises(PolicyError):
            Policy.from_document(["not", "a", "mapping"])

    def test_policy_is_immutable(self, policy):
        with pytest.raises(ValidationError):
            policy.version = "9.9.9"

    def test_blocklist_mappings_are_read_only(self, policy):
        """Reason tables cannot be edited in place either."""
        with pytest.raises(TypeError):
            policy.blocklist.reasons["social_media"] = "allowed after all"
        with pytest.raises(TypeError):
            policy.blocklist.domain_categories["example.com"] = "social_media"
        with pytest.raises(TypeError):
            Policy().blocklist.reasons["x"] = "y"

        dumped = policy.model_dump()
        assert isinstance(dumped["blocklist"]["reasons"], dict)
        assert dumped["blocklist"]["reasons"] == dict(policy.blocklist.reasons)

    def test_invalid_utf8(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_bytes(b"\xff\xfeversion: 1\n")

        with pytest.raises(PolicyError) as exc_info:
            Policy.from_file(path)

        assert "UTF-8" in exc_info.value.reason


class TestPolicyValidation:
    """Field-level validation."""

    @pytest.mark.parametrize("server", ["10.0.0.1", "192.168.1.1", "127.0.0.53", "not-an-ip"])
    def test_dns_servers_must_be_public(self, server):
        with pytest.raises(ValidationError):
            NetworkRules(dns_servers=[server])

    def test_dns_servers_required(self):
        with pytest.raises(ValidationError):
            NetworkRules(dns_servers=[])

    def test_invalid_cidr(self):
        with pytest.raises(ValidationError):
            NetworkRules(blocked_cidrs=["10.0.0.0/33"])

    def test_invalid_port(self):
        with pytest.raises(ValidationError):
            NetworkRules(allowed_ports=[0])

    def test_block_regex_must_compile(self):
        with pytest.raises(ValidationError):
            Policy(sensitive_data_patterns={"block_if_detected": ["(unclosed"]})

    def test_extensions_normalized(self):
        policy = Policy(blocklist={"file_extensions": ["EXE", ".Sh"]})
        assert policy.blocklist.file_extensions == (".exe", ".sh")

    def test_unknown_preset(self, policy):
        with pytest.raises(KeyError):
            policy.preset("gpu")

    def test_glob_patterns_compiled(self):
        policy = Policy(blocklist={"patterns": ["*admin?panel*"]})
        [(source, regex)] = policy.url_patterns

        assert source == "*admin?panel*"
        assert regex.search("https://example.com/ADMIN-panel/")
        assert not regex.search("https://example.com/adminpanel/")


class TestResourceLimits:
    def test_docker_config(self):
        """Limits become hardened docker create arguments."""
        config = ResourceLimits(memory_mb=512, cpu_cores=1.5, pids_limit=64).get_docker_config()

        assert config["mem_limit"] == "512m"
        assert config["memswap_limit"] == "512m"
        assert config["nano_cpus"] == 1_500_000_000
        assert config["pids_limit"] == 64
        assert config["read_only"] is True
        assert config["cap_drop"] == ["ALL"]
        assert config["security_opt"] == ["no-new-privileges"]
        assert "cap_add" not in config
        assert config["tmpfs"] == {"/tmp": "rw,noexec,nosuid,size=64m"}

    def test_preset_limits(self, policy):
        limits = policy.preset("python").limits(policy.resource_limits)

        assert limits.memory_mb == 512
        assert limits.cpu_cores == 1.0
        assert limits.pids_limit == policy.resource_limits.pids_limit


class TestDomainMatcher:
    def test_exact_and_subdomain(self):
        assert DomainMatcher.match("example.com", ["example.com"]) == "example.com"
        assert DomainMatcher.match("a.b.example.com", ["example.com"]) == "example.com"
        assert DomainMatcher.match("badexample.com", ["example.com"]) is None

    def test_normalize(self):
        assert DomainMatcher.normalize(["https://Example.com/", " ", "WWW.test.org"]) == (
            "example.com", "www.test.org",
        )


class TestMinimalPolicy:
    def test_minimal_policy(self):
        """The built-in fallback is conservative and marked as such."""
        policy = Policy.minimal()

        assert policy.version == "1.0.0-fallback"
        assert policy.is_fallback is True
        assert policy.blocklist.domains == ("facebook.com", "twitter.com")
        assert policy.network.default_deny is True
        assert policy.resource_limits.memory_mb == 128
        assert policy.content_rules.timeout.navigation_ms == 10000
        assert all(p.timeout_sec == 10 for p in policy.sandbox_presets.values())


class TestPolicyStore:
    """Startup loading, fallback and reload."""

    def test_load_default(self):
        store = PolicyStore.load()

        assert store.policy.version == "1.0.0"
        assert store.fallback_reason is None

    def test_load_missing_falls_back(self, tmp_path):
        """A missing document never fails startup."""
        store = PolicyStore.load(tmp_path / "absent.yaml")

        assert store.policy.version == "1.0.0-fallback"
        assert store.fallback_reason.startswith("cannot read policy")

    def test_load_malformed_falls_back(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("network:\n  dns_servers: ['10.0.0.1']\n")

        store = PolicyStore.load(path)

        assert store.policy.is_fallback
        assert "dns_servers" in store.fallback_reason

    def test_load_invalid_encoding_falls_back(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_bytes(b"\xff\xfe")

        store = PolicyStore.load(path)

        assert store.policy.is_fallback
        assert "UTF-8" in store.fallback_reason

    def test_plans_follow_policy(self, policy):
        """Both isolation plans are compiled from the installed policy."""
        store = PolicyStore(policy)

        assert store.isolation_plan(True).network_mode == "bridge"
        assert store.isolation_plan(False).network_mode == "none"
        assert store.isolation_plan(True).policy_version == policy.version

    def test_replace_swaps_policy_and_plans(self, policy):
        seen = []
        store = PolicyStore(policy, on_replace=seen.append)
        replacement = Policy(version="2.0.0")

        store.replace(replacement)

        current, plan = store.snapshot(outbound_web=True)
        assert current is replacement
        assert plan.policy_version == "2.0.0"
        assert store.isolation_plan(False).policy_version == "2.0.0"
        assert seen == [replacement]

    def test_reload_failure_keeps_current(self, policy, tmp_path):
        """A bad document on reload raises and leaves the policy in effect."""
        store = PolicyStore(policy)
        path = tmp_path / "broken.yaml"
        path.write_text("version: [")

        with pytest.raises(PolicyError):
            store.reload(path)

        assert store.policy is policy
        assert store.isolation_plan(True).policy_version == policy.version

    def test_reload_clears_fallback(self, tmp_path):
        store = PolicyStore.load(tmp_path / "absent.yaml")

        store.reload(DEFAULT_POLICY_PATH)

        assert store.fallback_reason is None
        assert store.policy.version == "1.0.0"
