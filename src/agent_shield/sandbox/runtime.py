"""
agent-shield sandbox runtime

Creates, runs and tears down one disposable sandbox per execution.

Handle lifecycle:

    CREATED -> RUNNING -> COMPLETED | TIMED_OUT | KILLED -> CLEANED_UP
    CREATED -> CLEANED_UP                  (creation failed)

CLEANED_UP is reached exactly once per handle on every exit path:
success, non-zero exit, timeout, backend error, creation failure and
caller cancellation.
"""

import asyncio
import secrets
import threading
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Sequence, Set, Union

from agent_shield.backends import SandboxBackend, SandboxSpec
from agent_shield.errors import SandboxCreationError, SandboxStateError
from agent_shield.monitoring.metrics import ShieldMetrics
from agent_shield.security.policies import PolicyStore, ResourceLimits
from agent_shield.types import ExecutionResult, SandboxState
from agent_shield.utils.logger import get_logger

logger = get_logger(__name__)

__all__ = ["SandboxHandle", "SandboxRuntime", "HANDLE_PREFIX"]

HANDLE_PREFIX = "shield-sandbox-"

TRUNCATED_MARKER = "\n[... output truncated ...]"

_TRANSITIONS = {
    SandboxState.CREATED: {SandboxState.RUNNING, SandboxState.CLEANED_UP},
    SandboxState.RUNNING: {SandboxState.COMPLETED, SandboxState.TIMED_OUT, SandboxState.KILLED},
    SandboxState.COMPLETED: {SandboxState.CLEANED_UP},
    SandboxState.TIMED_OUT: {SandboxState.CLEANED_UP},
    SandboxState.KILLED: {SandboxState.CLEANED_UP},
    SandboxState.CLEANED_UP: set(),
}


class SandboxHandle:
    """
    One execution's sandbox. Owned exclusively by SandboxRuntime.

    Attributes:
        id: Unique random identifier, never reused
        state: Current lifecycle state
        limits: Resource limits applied at creation
        started_at: Wall-clock start (epoch seconds) once RUNNING
        history: Every state the handle has been in, in order
    """

    def __init__(self, handle_id: str, limits: ResourceLimits, image: str, network_mode: str):
        self.id = handle_id
        self.limits = limits
        self.image = image
        self.network_mode = network_mode
        self.state = SandboxState.CREATED
        self.created_at = time.time()
        self.started_at: Optional[float] = None
        self.exit_code: Optional[int] = None
        self.signal: Optional[int] = None
        self.reclaimed = False
        self.history: List[SandboxState] = [SandboxState.CREATED]

    def transition(self, new_state: SandboxState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise SandboxStateError(self.id, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)
        if new_state == SandboxState.RUNNING:
            self.started_at = time.time()

    @property
    def is_terminal(self) -> bool:
        return self.state in (SandboxState.COMPLETED, SandboxState.TIMED_OUT, SandboxState.KILLED)

    def __repr__(self) -> str:
        return f"SandboxHandle(id={self.id!r}, state={self.state.value})"


def _cap_output(data: bytes, limit: int) -> Optional[str]:
    if len(data) <= limit:
        return None
    return data[:limit].decode("utf-8", errors="ignore") + TRUNCATED_MARKER


class SandboxRuntime:
    """
    Single-flight sandbox executor.

    Only handle bookkeeping is lock-protected; no lock is held while a
    sandbox runs.

    Args:
        backend: Sandbox backend (docker in production)
        policies: PolicyStore providing resource limits, presets and isolation plans
        metrics: Optional metrics collector
        default_image: Image used when neither a preset nor the caller names one
        default_timeout_sec: Timeout used when none is given
        max_output_bytes: Cap on captured stdout / stderr (each)
    """

    def __init__(
        self,
        backend: SandboxBackend,
        policies: PolicyStore,
        metrics: Optional[ShieldMetrics] = None,
        default_image: str = "alpine:latest",
        default_timeout_sec: float = 30,
        max_output_bytes: int = 1024 * 1024,
    ):
        self.backend = backend
        self.policies = policies
        self.metrics = metrics or ShieldMetrics()
        self.default_image = default_image
        self.default_timeout_sec = default_timeout_sec
        self.max_output_bytes = max_output_bytes

        self._lock = threading.Lock()
        self._active: Dict[str, SandboxHandle] = {}
        self._issued: Set[str] = set()
        self._orphans: Set[str] = set()
        self._finished: Deque[SandboxHandle] = deque(maxlen=256)

    # Handle registry

    def _new_handle(self, limits: ResourceLimits, image: str, network_mode: str) -> SandboxHandle:
        with self._lock:
            handle_id = f"{HANDLE_PREFIX}{secrets.token_hex(6)}"
            while handle_id in self._issued:
                handle_id = f"{HANDLE_PREFIX}{secrets.token_hex(6)}"
            self._issued.add(handle_id)
            handle = SandboxHandle(handle_id, limits, image, network_mode)
            self._active[handle_id] = handle
        return handle

    def _retire(self, handle: SandboxHandle) -> None:
        with self._lock:
            self._active.pop(handle.id, None)
            self._finished.append(handle)
            if not handle.reclaimed:
                self._orphans.add(handle.id)

    def active_handles(self) -> List[SandboxHandle]:
        with self._lock:
            return list(self._active.values())

    def recent_handles(self) -> List[SandboxHandle]:
        with self._lock:
            return list(self._finished)

    @property
    def orphans(self) -> Set[str]:
        with self._lock:
            return set(self._orphans)

    # Execution

    async def execute(
        self,
        command: Union[str, Sequence[str]],
        limits: Optional[ResourceLimits] = None,
        timeout: Optional[float] = None,
        *,
        preset: Optional[str] = None,
        image: Optional[str] = None,
        outbound_web: Optional[bool] = None,
        environment: Optional[Dict[str, str]] = None,
        max_output_bytes: Optional[int] = None,
    ) -> ExecutionResult:
        """
        Run one command in a fresh sandbox.

        Args:
            command: Shell string (run with `sh -c`) or argv list
            limits: Resource limits (policy default if None)
            timeout: Hard wall-clock timeout in seconds
            preset: Named policy preset supplying image / timeout / limits / network
            image: Container image override
            outbound_web: Whether the sandbox needs outbound web access
            environment: Extra environment variables
            max_output_bytes: Per-call cap on captured stdout / stderr

        Returns:
            ExecutionResult. A timeout is a result (timed_out=True), not an error.

        Raises:
            SandboxCreationError: Sandbox could not be created (never retried)
            asyncio.CancelledError: Caller cancelled; the sandbox is still reclaimed
        """
        policy = self.policies.policy
        if preset is not None:
            profile = policy.preset(preset)
            limits = limits or profile.limits(policy.resource_limits)
            timeout = timeout if timeout is not None else profile.timeout_sec
            image = image or profile.image
            if outbound_web is None:
                outbound_web = profile.outbound_web

        limits = limits or policy.resource_limits
        timeout = timeout if timeout is not None else self.default_timeout_sec
        image = image or self.default_image
        outbound_web = bool(outbound_web)

        # Plan and policy are read together so the sandbox never runs with a stale plan
        policy, plan = self.policies.snapshot(outbound_web)

        argv = ("sh", "-c", command) if isinstance(command, str) else tuple(command)
        handle = self._new_handle(limits, image, plan.network_mode)
        spec = SandboxSpec(
            handle_id=handle.id,
            image=image,
            command=argv,
            limits=limits,
            plan=plan,
            environment=dict(environment or {}),
            labels={"agent-shield.policy": policy.version},
        )

        start = time.monotonic()
        stdout = stderr = b""
        error: Optional[str] = None
        timed_out = False

        try:
            try:
                await self.backend.create(spec)
            except SandboxCreationError:
                raise
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise SandboxCreationError(handle.id, str(e)) from e

            await self.backend.start(handle.id)
            handle.transition(SandboxState.RUNNING)
            self.metrics.record_sandbox_started()
            logger.info(f"Sandbox {handle.id} running (image={image}, network={plan.network_mode})")

            try:
                outcome = await asyncio.wait_for(self.backend.wait(handle.id), timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
                handle.transition(SandboxState.TIMED_OUT)
                await self._force_kill(handle)
                logger.warning(f"Sandbox {handle.id} timed out after {timeout}s and was killed")
            else:
                if outcome.oom_killed or outcome.exit_code == 137:
                    self._mark_killed(handle)
                else:
                    handle.exit_code = outcome.exit_code
                    handle.transition(SandboxState.COMPLETED)

            stdout, stderr = await self._collect_logs(handle)

        except SandboxCreationError as e:
            self.metrics.record_sandbox_create_failure()
            logger.error(f"{e}")
            raise

        except asyncio.CancelledError:
            logger.warning(f"Sandbox {handle.id} cancelled by caller")
            if handle.state == SandboxState.RUNNING:
                # Terminal state first: a second cancel may interrupt the kill
                self._mark_killed(handle)
                await asyncio.shield(self._force_kill(handle))
            raise

        except Exception as e:
            # Backend failure while the sandbox was (or was about to be) running
            error = str(e)
            logger.error(f"Sandbox {handle.id} failed: {e}")
            if handle.state == SandboxState.CREATED:
                raise SandboxCreationError(handle.id, error) from e
            if handle.state == SandboxState.RUNNING:
                self._mark_killed(handle)
                await self._force_kill(handle)

        finally:
            await asyncio.shield(self._cleanup(handle))

        duration_ms = int((time.monotonic() - start) * 1000)
        terminal = handle.history[-2]
        self.metrics.record_sandbox_finished(terminal.value, duration_ms)

        metadata = {
            "image": image,
            "policy_version": policy.version,
            "memory_mb": limits.memory_mb,
            "cpu_cores": limits.cpu_cores,
            "timeout_sec": timeout,
        }
        if error:
            metadata["error"] = error

        cap = max_output_bytes if max_output_bytes is not None else self.max_output_bytes
        stdout_text = self._decode(stdout, "stdout", metadata, cap)
        stderr_text = self._decode(stderr, "stderr", metadata, cap)

        return ExecutionResult(
            handle_id=handle.id,
            state=terminal,
            exit_code=handle.exit_code,
            signal=handle.signal,
            stdout=stdout_text,
            stderr=stderr_text,
            duration_ms=duration_ms,
            timed_out=timed_out,
            cleaned_up=handle.reclaimed,
            network_mode=plan.network_mode,
            metadata=metadata,
        )

    @staticmethod
    def _decode(data: bytes, stream: str, metadata: dict, limit: int) -> str:
        capped = _cap_output(data, limit)
        if capped is None:
            return data.decode("utf-8", errors="replace")
        metadata[f"{stream}_truncated"] = True
        return capped

    async def _collect_logs(self, handle: SandboxHandle):
        try:
            return await self.backend.logs(handle.id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Could not read output of sandbox {handle.id}: {e}")
            return b"", b""

    @staticmethod
    def _mark_killed(handle: SandboxHandle) -> None:
        handle.signal = 9
        handle.transition(SandboxState.KILLED)

    async def _force_kill(self, handle: SandboxHandle) -> None:
        try:
            await self.backend.kill(handle.id)
        except Exception as e:
            # Removal below is forced, so a failed kill is not fatal
            logger.error(f"Kill failed for sandbox {handle.id}: {e}")

    async def _cleanup(self, handle: SandboxHandle) -> None:
        """Reclaim the sandbox. Idempotent: a second call is a no-op."""
        if handle.state == SandboxState.CLEANED_UP:
            return
        if handle.state == SandboxState.RUNNING:
            # Interrupted before a terminal state was recorded; removal is forced
            self._mark_killed(handle)

        try:
            await self.backend.remove(handle.id)
            handle.reclaimed = True
        except Exception as e:
            logger.error(f"Sandbox {handle.id} could not be removed, kept for reaping: {e}")

        handle.transition(SandboxState.CLEANED_UP)
        self._retire(handle)
        self.metrics.record_sandbox_cleaned(handle.reclaimed)
        logger.debug(f"Sandbox {handle.id} cleaned up (reclaimed={handle.reclaimed})")

    # Maintenance

    async def reap_orphans(self) -> int:
        """
        Retry removal of sandboxes whose cleanup failed, plus any managed
        sandbox the backend still lists that is not currently running here.

        Returns:
            Number of sandboxes removed
        """
        with self._lock:
            candidates = set(self._orphans)

        try:
            candidates.update(await self.backend.list_sandboxes())
        except Exception as e:
            logger.warning(f"Could not list sandboxes for reaping: {e}")

        reaped = 0
        for handle_id in sorted(candidates):
            # Executions may have started while the backend was listing
            with self._lock:
                if handle_id in self._active:
                    continue
            try:
                await self.backend.remove(handle_id)
            except Exception as e:
                logger.error(f"Reaping {handle_id} failed: {e}")
                continue
            reaped += 1
            with self._lock:
                self._orphans.discard(handle_id)

        if reaped:
            logger.info(f"Reaped {reaped} orphaned sandbox(es)")
        return reaped

    async def shutdown(self) -> int:
        """
        Emergency stop: kill every live sandbox, then reap.

        The executions owning those handles finish their own cleanup.
        """
        handles = self.active_handles()
        for handle in handles:
            await self._force_kill(handle)
        logger.warning(f"Emergency shutdown: killed {len(handles)} sandbox(es)")
        return await self.reap_orphans()
