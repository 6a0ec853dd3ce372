"""
agent-shield action executor

Composes the guardrails around a single "perform this action" request.

Network action:
    UrlGatekeeper.check -> RateLimiter -> SandboxRuntime.execute (network
    shaped by the isolation plan) -> ContentSanitizer.sanitize -> result

Outbound text:
    SensitiveDataScanner.scan -> audit (metadata only) -> redacted text

Every block is recorded in the security audit log, and the action requester
never receives raw unsanitized content.
"""

from typing import Callable, List, Optional, Sequence, Union
from urllib.parse import quote_plus, urlsplit

from agent_shield.config import ShieldConfig
from agent_shield.errors import SandboxCreationError
from agent_shield.monitoring.metrics import ShieldMetrics
from agent_shield.sandbox.runtime import SandboxRuntime
from agent_shield.security.audit import AuditEventType, SecurityAuditLog, create_security_audit_log
from agent_shield.security.gatekeeper import UrlGatekeeper
from agent_shield.security.patterns import PatternCatalog
from agent_shield.security.policies import PolicyStore
from agent_shield.security.ratelimit import RateLimiter
from agent_shield.security.sanitizer import ContentSanitizer
from agent_shield.security.scanner import SensitiveDataScanner
from agent_shield.types import ActionResult, ExecutionResult, UrlVerdict
from agent_shield.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)

__all__ = ["ActionExecutor", "censor_middleware"]

# Rules that mean the URL pointed at the host's own network
_LEAK_RULE_PREFIXES = ("localhost", "metadata", "cidr", "link_local", "non_global_address")

# curl: "Maximum file size exceeded"
CURL_EXIT_FILESIZE = 63


def censor_middleware(
    scanner: SensitiveDataScanner,
    audit: SecurityAuditLog,
    session_id: Optional[str] = None,
    metrics: Optional[ShieldMetrics] = None,
) -> Callable[[str], str]:
    """
    Build the mandatory output step: `str -> str`.

    Whatever it returns is the only form of the text that may leave the
    system. Matches are audited as metadata only.
    """

    def _censor(text: str) -> str:
        result = scanner.scan(text)
        if metrics is not None:
            metrics.record_scan(len(result.matches))
        if result.had_match:
            audit.record_scan_result(result, session_id=session_id, source="output")
        return result.redacted_text

    return _censor


class ActionExecutor:
    """
    Orchestrates URL checks, sandboxed fetches, sanitization and redaction.

    Example:
        >>> executor = ActionExecutor.from_config(ShieldConfig.from_env())
        >>> result = await executor.navigate("https://github.com/any/repo")
        >>> safe = executor.deliver("my key is sk-...")
    """

    def __init__(
        self,
        policies: PolicyStore,
        runtime: SandboxRuntime,
        audit: SecurityAuditLog,
        scanner: Optional[SensitiveDataScanner] = None,
        catalog: Optional[PatternCatalog] = None,
        rate_limiter: Optional[RateLimiter] = None,
        metrics: Optional[ShieldMetrics] = None,
        fetch_image: str = "curlimages/curl:latest",
        session_id: Optional[str] = None,
    ):
        self.policies = policies
        self.runtime = runtime
        self.audit = audit
        self.catalog = catalog or (scanner.catalog if scanner is not None else PatternCatalog())
        self.scanner = scanner or SensitiveDataScanner(self.catalog)
        self.metrics = metrics or runtime.metrics
        self.fetch_image = fetch_image
        self.session_id = session_id

        self.gatekeeper = UrlGatekeeper(policies)
        self.sanitizer = ContentSanitizer(policies, self.catalog)
        self.rate_limiter = rate_limiter or RateLimiter(policies)

        if policies.fallback_reason is not None:
            self.audit.record(
                AuditEventType.POLICY_FALLBACK,
                "high",
                "Policy document rejected; built-in minimal policy in effect",
                context={"reason": policies.fallback_reason, "version": policies.policy.version},
                session_id=session_id,
                blocked=False,
            )

    @classmethod
    def from_config(cls, config: ShieldConfig, backend=None, session_id: Optional[str] = None) -> "ActionExecutor":
        """
        Wire every component from a ShieldConfig.

        Args:
            config: Runtime configuration
            backend: Sandbox backend (DockerSandbox when None and docker is enabled)
            session_id: Default session for audit entries
        """
        configure_logging(level=config.log_level, file_path=config.log_file)

        if backend is None:
            if not config.docker_enabled:
                raise ValueError("docker is disabled and no sandbox backend was given")
            from agent_shield.backends.docker import DockerSandbox
            backend = DockerSandbox({"image": config.sandbox_image, "jail_image": config.jail_image})

        catalog = PatternCatalog()
        scanner = SensitiveDataScanner(
            catalog,
            enabled=config.censor_enabled,
            replacement_text=config.censor_replacement,
            categories=config.censor_categories,
        )
        audit = create_security_audit_log(
            log_dir=config.audit_log_dir,
            file_prefix=config.audit_file_prefix,
            rotate_daily=config.audit_rotate_daily,
            console_output=config.audit_console_output,
            redactor=SensitiveDataScanner(catalog),
        )
        policies = PolicyStore.load(config.policy_path)
        metrics = ShieldMetrics()
        runtime = SandboxRuntime(
            backend,
            policies,
            metrics=metrics,
            default_timeout_sec=config.default_timeout_sec,
            max_output_bytes=config.max_output_bytes,
        )
        return cls(
            policies,
            runtime,
            audit,
            scanner=scanner,
            catalog=catalog,
            metrics=metrics,
            fetch_image=config.sandbox_image,
            session_id=session_id,
        )

    # Network actions

    async def navigate(self, url: str, session_id: Optional[str] = None) -> ActionResult:
        """
        Fetch a URL through every guardrail.

        Raises:
            SandboxCreationError: The fetch sandbox could not be created
        """
        session_id = session_id or self.session_id

        verdict = self.gatekeeper.check(url)
        self.metrics.record_url_check(not verdict.allowed)
        if not verdict.allowed:
            return self._url_blocked(url, verdict, session_id)

        decision = self.rate_limiter.acquire()
        if not decision.allowed:
            self.metrics.record_rate_limited()
            entry = self.audit.record(
                AuditEventType.RATE_LIMIT_EXCEEDED,
                "medium",
                decision.reason,
                context={"host": _host(url), "retry_after_sec": round(decision.retry_after_sec, 1)},
                session_id=session_id,
            )
            return self._blocked("navigate", url, decision.reason, [entry.id], verdict.is_allowlisted)

        policy = self.policies.policy
        rules = policy.content_rules
        timeout = rules.timeout.navigation_ms / 1000.0
        preset = "browser" if "browser" in policy.sandbox_presets else None

        try:
            execution = await self.runtime.execute(
                self._fetch_command(url, timeout, rules.max_page_size_bytes, rules.user_agent),
                timeout=timeout + 5,
                preset=preset,
                image=None if preset else self.fetch_image,
                outbound_web=True,
                # One byte past the page limit is enough to know the page is too large
                max_output_bytes=rules.max_page_size_bytes + 1,
            )
        except SandboxCreationError as e:
            self.audit.record(
                AuditEventType.SANDBOX_FAILURE,
                "high",
                "Fetch sandbox could not be created",
                context={"host": _host(url), "handle_id": e.handle_id, "error": e.reason},
                session_id=session_id,
                blocked=True,
            )
            raise

        if execution.timed_out:
            entry = self.audit.record(
                AuditEventType.SANDBOX_TIMEOUT,
                "medium",
                "Navigation sandbox timed out and was reclaimed",
                context={"host": _host(url), "handle_id": execution.handle_id, "duration_ms": execution.duration_ms},
                session_id=session_id,
            )
            return self._blocked(
                "navigate", url, "Navigation timed out", [entry.id], verdict.is_allowlisted,
                timed_out=True, execution=execution,
            )

        if execution.metadata.get("stdout_truncated") or execution.exit_code == CURL_EXIT_FILESIZE:
            return self._oversized(url, rules.max_page_size_bytes, verdict.is_allowlisted, execution, session_id)

        if not execution.success:
            entry = self.audit.record(
                AuditEventType.SANDBOX_FAILURE,
                "low",
                "Fetch did not complete",
                context={
                    "host": _host(url),
                    "handle_id": execution.handle_id,
                    "state": execution.state.value,
                    "exit_code": execution.exit_code,
                },
                session_id=session_id,
                blocked=False,
            )
            reason = f"Fetch failed (exit code {execution.exit_code})" if execution.exit_code is not None \
                else "Fetch sandbox was killed"
            return self._blocked("navigate", url, reason, [entry.id], verdict.is_allowlisted, execution=execution)

        sanitized = self.sanitizer.sanitize(execution.stdout, source_url=url)
        self.metrics.record_content(not sanitized.allowed)
        if not sanitized.allowed:
            entry = self.audit.record(
                AuditEventType.CONTENT_BLOCKED,
                "high" if sanitized.sensitive_patterns else "medium",
                sanitized.reason,
                context={
                    "host": _host(url),
                    "original_length": sanitized.original_length,
                    "rules": list(sanitized.sensitive_patterns),
                },
                session_id=session_id,
            )
            return self._blocked(
                "navigate", url, sanitized.reason, [entry.id], verdict.is_allowlisted,
                original_length=sanitized.original_length, execution=execution,
            )

        return ActionResult(
            action="navigate",
            target=url,
            blocked=False,
            content=sanitized.text,
            warnings=sanitized.warnings,
            is_allowlisted=verdict.is_allowlisted,
            original_length=sanitized.original_length,
            execution=_scrubbed(execution),
        )

    async def search(self, query: str, session_id: Optional[str] = None) -> ActionResult:
        """Search with the policy's primary engine; the result URL goes through navigate."""
        engine = self.policies.policy.search_engines.primary
        result = await self.navigate(engine + quote_plus(query), session_id=session_id)
        return result.model_copy(update={"action": "search"})

    async def run_command(
        self,
        command: Union[str, Sequence[str]],
        preset: str = "shell",
        session_id: Optional[str] = None,
    ) -> ActionResult:
        """
        Run a command in a network-less sandbox. Output is redacted before it
        is returned.

        Raises:
            SandboxCreationError: The sandbox could not be created
        """
        session_id = session_id or self.session_id
        summary = command if isinstance(command, str) else " ".join(command)
        target = self.scanner.redact(summary[:200])

        try:
            execution = await self.runtime.execute(command, preset=preset, outbound_web=False)
        except SandboxCreationError as e:
            self.audit.record(
                AuditEventType.SANDBOX_FAILURE,
                "high",
                "Command sandbox could not be created",
                context={"handle_id": e.handle_id, "error": e.reason, "preset": preset},
                session_id=session_id,
                blocked=True,
            )
            raise

        output = execution.stdout
        if execution.stderr:
            output = f"{output}\n[stderr]\n{execution.stderr}" if output else f"[stderr]\n{execution.stderr}"

        scan = self.scanner.scan(output)
        self.metrics.record_scan(len(scan.matches))
        audit_ids: List[str] = []
        warnings: List[str] = []
        if scan.had_match:
            entry = self.audit.record_scan_result(scan, session_id=session_id, source="command_output")
            audit_ids.append(entry.id)
            warnings.append(f"{len(scan.matches)} sensitive value(s) redacted from output")

        if execution.timed_out:
            entry = self.audit.record(
                AuditEventType.SANDBOX_TIMEOUT,
                "medium",
                "Command sandbox timed out and was reclaimed",
                context={"handle_id": execution.handle_id, "preset": preset, "duration_ms": execution.duration_ms},
                session_id=session_id,
            )
            audit_ids.append(entry.id)
        elif execution.exit_code not in (None, 0):
            warnings.append(f"Command exited with code {execution.exit_code}")

        return ActionResult(
            action="command",
            target=target,
            blocked=execution.timed_out,
            reason="Command timed out" if execution.timed_out else None,
            content=scan.redacted_text,
            warnings=warnings,
            original_length=len(output),
            timed_out=execution.timed_out,
            audit_ids=audit_ids,
            execution=_scrubbed(execution),
        )

    # Outbound text

    def deliver(self, text: str, session_id: Optional[str] = None) -> str:
        """Mandatory censor step for any text leaving the system."""
        return self.middleware(session_id)(text)

    def middleware(self, session_id: Optional[str] = None) -> Callable[[str], str]:
        return censor_middleware(self.scanner, self.audit, session_id or self.session_id, self.metrics)

    # Operations

    def summary(self) -> str:
        metrics = self.metrics.snapshot()
        lines = [
            self.policies.policy.summary(),
            "Activity:",
            f"  URLs checked / blocked: {metrics.urls_checked} / {metrics.urls_blocked}",
            f"  Content sanitized / blocked: {metrics.content_sanitized} / {metrics.content_blocked}",
            f"  Redactions: {metrics.redactions}",
            f"  Sandboxes started / timed out: {metrics.sandboxes_started} / {metrics.sandboxes_timed_out}",
            f"  Sandboxes orphaned: {metrics.sandboxes_orphaned}",
        ]
        return "\n".join(lines)

    async def shutdown(self) -> int:
        """Emergency stop: kill and reap every sandbox, then close sinks."""
        reaped = await self.runtime.shutdown()
        self.runtime.backend.close()
        self.audit.close()
        return reaped

    # Helpers

    def _url_blocked(self, url: str, verdict: UrlVerdict, session_id: Optional[str]) -> ActionResult:
        rule = verdict.matched_rule or ""
        leak = rule.startswith(_LEAK_RULE_PREFIXES)
        entry = self.audit.record(
            AuditEventType.LEAK_ATTEMPT if leak else AuditEventType.URL_BLOCKED,
            "high" if leak else "medium",
            verdict.reason,
            context={"host": _host(url), "rule": rule},
            session_id=session_id,
            blocked=True,
        )
        logger.info(f"Blocked navigation ({rule}): {verdict.reason}")
        return self._blocked("navigate", url, verdict.reason, [entry.id])

    def _oversized(
        self,
        url: str,
        limit: int,
        is_allowlisted: bool,
        execution: ExecutionResult,
        session_id: Optional[str],
    ) -> ActionResult:
        reason = f"Content too large: more than {limit} bytes (max: {limit})"
        self.metrics.record_content(True)
        entry = self.audit.record(
            AuditEventType.CONTENT_BLOCKED,
            "medium",
            reason,
            context={"host": _host(url), "handle_id": execution.handle_id, "max_page_size_bytes": limit},
            session_id=session_id,
        )
        return self._blocked(
            "navigate", url, reason, [entry.id], is_allowlisted, original_length=limit + 1, execution=execution,
        )

    @staticmethod
    def _blocked(
        action: str,
        target: str,
        reason: Optional[str],
        audit_ids: List[str],
        is_allowlisted: bool = False,
        timed_out: bool = False,
        original_length: int = 0,
        execution: Optional[ExecutionResult] = None,
    ) -> ActionResult:
        return ActionResult(
            action=action,
            target=target,
            blocked=True,
            reason=reason,
            is_allowlisted=is_allowlisted,
            timed_out=timed_out,
            original_length=original_length,
            audit_ids=audit_ids,
            execution=_scrubbed(execution) if execution is not None else None,
        )

    @staticmethod
    def _fetch_command(url: str, timeout: float, max_bytes: int, user_agent: str) -> List[str]:
        # Redirects are not followed; a redirect target must come back through navigate
        return [
            "curl", "-sS",
            "--max-time", str(int(timeout)),
            "--max-filesize", str(max_bytes),
            "--proto", "=http,https",
            "-A", user_agent,
            url,
        ]


def _host(url: str) -> Optional[str]:
    try:
        return urlsplit(url).hostname
    except ValueError:
        return None


def _scrubbed(execution: ExecutionResult) -> ExecutionResult:
    return execution.model_copy(update={"stdout": "", "stderr": ""})
