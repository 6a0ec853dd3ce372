from pydantic import BaseModel, Field
from typing import List, Optional


class ShieldConfig(BaseModel):
    """
    Runtime configuration for agent-shield.

    This configuration is loaded from:
    1. Environment variables (SHIELD_*)
    2. Configuration file (if provided)
    3. Default values (hardcoded)

    Priority: Environment variables > Config file > Defaults

    The security policy itself (blocklists, patterns, limits) lives in a
    separate policy document; see agent_shield.security.policies.
    """

    # Policy
    policy_path: Optional[str] = Field(
        default=None,
        description="Policy document (YAML/JSON). If empty, use the packaged default policy."
    )

    # Security audit log
    audit_log_dir: str = Field(
        default="/var/log/agent-shield/audit",
        description="Directory for security audit files (separate from application logs)"
    )

    audit_file_prefix: str = Field(
        default="security-audit",
        min_length=1,
        description="Audit file name prefix"
    )

    audit_rotate_daily: bool = Field(
        default=True,
        description="Write one audit file per day"
    )

    audit_console_output: bool = Field(
        default=True,
        description="Also emit audit entries on the agent_shield.security logger"
    )

    audit_retention_days: int = Field(
        default=90,
        ge=1,
        le=3650,
        description="Days audit entries are kept by retention pruning"
    )

    # Sandbox
    docker_enabled: bool = Field(
        default=True,
        description="Use the docker backend for sandboxes"
    )

    sandbox_image: str = Field(
        default="curlimages/curl:latest",
        description="Image used for web fetches"
    )

    jail_image: str = Field(
        default="nicolaka/netshoot:latest",
        description="Image with iptables used for the network jail sidecar"
    )

    default_timeout_sec: float = Field(
        default=30,
        gt=0,
        le=3600,
        description="Default sandbox timeout (seconds)"
    )

    max_output_bytes: int = Field(
        default=1024 * 1024,
        ge=1024,
        le=64 * 1024 * 1024,
        description="Cap on captured stdout/stderr per execution"
    )

    # Censor
    censor_enabled: bool = Field(
        default=True,
        description="Redact sensitive data from outbound text"
    )

    censor_replacement: str = Field(
        default="[REDACTED]",
        min_length=1,
        description="Placeholder written over redacted spans"
    )

    censor_categories: Optional[List[str]] = Field(
        default=None,
        description="Restrict redaction to these pattern categories (all if empty)"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Application log level"
    )

    log_file: Optional[str] = Field(
        default=None,
        description="Optional application log file"
    )

    @classmethod
    def from_env(cls) -> "ShieldConfig":
        """
        Load configuration from environment variables.

        Environment variables (SHIELD_*) override defaults:

        - SHIELD_POLICY_PATH: Policy document path
        - SHIELD_AUDIT_DIR: Audit log directory
        - SHIELD_AUDIT_RETENTION_DAYS: Audit retention window
        - SHIELD_AUDIT_CONSOLE: Console audit output (true/false)
        - SHIELD_DOCKER_ENABLED: Use docker (true/false)
        - SHIELD_SANDBOX_IMAGE: Fetch image
        - SHIELD_JAIL_IMAGE: Network jail image
        - SHIELD_TIMEOUT: Default timeout in seconds
        - SHIELD_MAX_OUTPUT_BYTES: Output cap
        - SHIELD_CENSOR_ENABLED: Redact outbound text (true/false)
        - SHIELD_CENSOR_CATEGORIES: Comma-separated pattern categories
        - SHIELD_LOG_LEVEL: Application log level
        """
        import os

        kwargs = {}

        # Policy
        if "SHIELD_POLICY_PATH" in os.environ:
            kwargs["policy_path"] = os.environ["SHIELD_POLICY_PATH"]

        # Audit
        if "SHIELD_AUDIT_DIR" in os.environ:
            kwargs["audit_log_dir"] = os.environ["SHIELD_AUDIT_DIR"]
        if "SHIELD_AUDIT_RETENTION_DAYS" in os.environ:
            kwargs["audit_retention_days"] = int(os.environ["SHIELD_AUDIT_RETENTION_DAYS"])
        if "SHIELD_AUDIT_CONSOLE" in os.environ:
            kwargs["audit_console_output"] = os.environ["SHIELD_AUDIT_CONSOLE"].lower() == "true"

        # Sandbox
        if "SHIELD_DOCKER_ENABLED" in os.environ:
            kwargs["docker_enabled"] = os.environ["SHIELD_DOCKER_ENABLED"].lower() == "true"
        if "SHIELD_SANDBOX_IMAGE" in os.environ:
            kwargs["sandbox_image"] = os.environ["SHIELD_SANDBOX_IMAGE"]
        if "SHIELD_JAIL_IMAGE" in os.environ:
            kwargs["jail_image"] = os.environ["SHIELD_JAIL_IMAGE"]
        if "SHIELD_TIMEOUT" in os.environ:
            kwargs["default_timeout_sec"] = float(os.environ["SHIELD_TIMEOUT"])
        if "SHIELD_MAX_OUTPUT_BYTES" in os.environ:
            kwargs["max_output_bytes"] = int(os.environ["SHIELD_MAX_OUTPUT_BYTES"])

        # Censor
        if "SHIELD_CENSOR_ENABLED" in os.environ:
            kwargs["censor_enabled"] = os.environ["SHIELD_CENSOR_ENABLED"].lower() == "true"
        if "SHIELD_CENSOR_CATEGORIES" in os.environ:
            categories = os.environ["SHIELD_CENSOR_CATEGORIES"]
            kwargs["censor_categories"] = [item.strip() for item in categories.split(",") if item.strip()]

        # Logging
        if "SHIELD_LOG_LEVEL" in os.environ:
            kwargs["log_level"] = os.environ["SHIELD_LOG_LEVEL"].upper()

        return cls(**kwargs)

    @classmethod
    def from_file(cls, config_path: str) -> "ShieldConfig":
        """
        Load configuration from a YAML or JSON file, then apply SHIELD_*
        environment overrides.

        Supported formats: .yaml, .yml, .json
        """
        import yaml

        with open(config_path, "r") as f:
            if config_path.endswith((".yaml", ".yml")):
                data = yaml.safe_load(f) or {}
            elif config_path.endswith(".json"):
                import json
                data = json.load(f)
            else:
                raise ValueError(f"Unsupported config format: {config_path}")

        overrides = cls.from_env().model_dump(exclude_unset=True)
        return cls(**{**data, **overrides})
