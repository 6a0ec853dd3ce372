"""
Pytest configuration and fixtures for agent-shield tests.

This module provides shared fixtures and configuration for all tests.
"""

import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from agent_shield.backends import SandboxBackend, SandboxSpec, WaitOutcome  # noqa: E402
from agent_shield.monitoring.metrics import ShieldMetrics  # noqa: E402
from agent_shield.sandbox.runtime import SandboxRuntime  # noqa: E402
from agent_shield.security.audit import JSONFileOutput, SecurityAuditLog  # noqa: E402
from agent_shield.security.patterns import PatternCatalog  # noqa: E402
from agent_shield.security.policies import DEFAULT_POLICY_PATH, Policy, PolicyStore  # noqa: E402
from agent_shield.security.scanner import SensitiveDataScanner  # noqa: E402


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, isolated)"
    )
    config.addinivalue_line(
        "markers", "docker: Docker backend tests (mocked client)"
    )
    config.addinivalue_line(
        "markers", "slow: Slow running tests"
    )


# =============================================================================
# Fake Backend
# =============================================================================

class FakeBackend(SandboxBackend):
    """
    In-memory sandbox backend.

    `hang=True` makes wait() block until kill() is called, which is how a
    runaway process looks to the runtime.
    """

    name = "fake"

    def __init__(
        self,
        exit_code: int = 0,
        stdout: bytes = b"",
        stderr: bytes = b"",
        hang: bool = False,
        oom_killed: bool = False,
        create_error: Optional[Exception] = None,
        wait_error: Optional[Exception] = None,
        remove_error: Optional[Exception] = None,
        kill_delay: float = 0,
        list_delay: float = 0,
    ):
        super().__init__()
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.hang = hang
        self.oom_killed = oom_killed
        self.create_error = create_error
        self.wait_error = wait_error
        self.remove_error = remove_error
        self.kill_delay = kill_delay
        self.list_delay = list_delay

        self.specs: Dict[str, SandboxSpec] = {}
        self.created_specs: List[SandboxSpec] = []
        self.calls: List[Tuple[str, str]] = []
        self._kill_events: Dict[str, asyncio.Event] = {}

    async def create(self, spec: SandboxSpec) -> None:
        self.calls.append(("create", spec.handle_id))
        if self.create_error is not None:
            raise self.create_error
        self.specs[spec.handle_id] = spec
        self.created_specs.append(spec)
        self._kill_events[spec.handle_id] = asyncio.Event()

    async def start(self, handle_id: str) -> None:
        self.calls.append(("start", handle_id))

    async def wait(self, handle_id: str) -> WaitOutcome:
        self.calls.append(("wait", handle_id))
        if self.wait_error is not None:
            raise self.wait_error
        if self.hang:
            await self._kill_events[handle_id].wait()
            return WaitOutcome(exit_code=137)
        return WaitOutcome(exit_code=self.exit_code, oom_killed=self.oom_killed)

    async def kill(self, handle_id: str) -> None:
        self.calls.append(("kill", handle_id))
        if self.kill_delay:
            await asyncio.sleep(self.kill_delay)
        event = self._kill_events.get(handle_id)
        if event is not None:
            event.set()

    async def logs(self, handle_id: str) -> Tuple[bytes, bytes]:
        return self.stdout, self.stderr

    async def remove(self, handle_id: str) -> None:
        self.calls.append(("remove", handle_id))
        if self.remove_error is not None:
            raise self.remove_error
        self.specs.pop(handle_id, None)

    async def health_check(self) -> dict:
        return {"status": "healthy", "backend": "fake"}

    async def list_sandboxes(self) -> List[str]:
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        return list(self.specs)

    def ops(self, op: str) -> List[str]:
        return [handle for name, handle in self.calls if name == op]


# =============================================================================
# Policy Fixtures
# =============================================================================

@pytest.fixture
def policy() -> Policy:
    """The packaged default policy."""
    return Policy.from_file(DEFAULT_POLICY_PATH)


@pytest.fixture
def policy_store(policy) -> PolicyStore:
    return PolicyStore(policy)


@pytest.fixture
def catalog() -> PatternCatalog:
    return PatternCatalog()


@pytest.fixture
def scanner(catalog) -> SensitiveDataScanner:
    return SensitiveDataScanner(catalog)


# =============================================================================
# Audit Fixtures
# =============================================================================

@pytest.fixture
def audit_dir(tmp_path) -> Path:
    path = tmp_path / "audit"
    path.mkdir()
    return path


@pytest.fixture
def audit_log(audit_dir, catalog) -> SecurityAuditLog:
    """Audit log writing JSON lines into a temporary directory."""
    return SecurityAuditLog(
        outputs=[JSONFileOutput(str(audit_dir))],
        redactor=SensitiveDataScanner(catalog),
    )


# =============================================================================
# Sandbox Fixtures
# =============================================================================

@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend(stdout=b"hello\n")


@pytest.fixture
def metrics() -> ShieldMetrics:
    return ShieldMetrics()


@pytest.fixture
def runtime(fake_backend, policy_store, metrics) -> SandboxRuntime:
    return SandboxRuntime(fake_backend, policy_store, metrics=metrics, default_timeout_sec=5)


@pytest.fixture
def mock_docker_client():
    """Create a mock Docker client."""
    mock = MagicMock()
    mock.version.return_value = {"Version": "25.0.0", "ApiVersion": "1.44"}
    mock.images.get.return_value = MagicMock()
    mock.containers.list.return_value = []

    jail = MagicMock(id="jail0123456789")
    jail.exec_run.return_value = MagicMock(exit_code=0, output=b"")
    mock.containers.run.return_value = jail

    container = MagicMock(id="abc123def456", status="created")
    container.wait.return_value = {"StatusCode": 0}
    container.attrs = {"State": {"OOMKilled": False}}
    container.logs.side_effect = lambda stdout=True, stderr=False: b"out" if stdout else b"err"
    mock.containers.create.return_value = container
    mock.containers.get.return_value = container
    return mock


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def sample_html() -> str:
    """Sample page with active content."""
    return """
<html>
  <head>
    <style>body { color: red; }</style>
    <script src="https://cdn.example.com/tracker.js"></script>
  </head>
  <body onload="steal()">
    <!-- internal note -->
    <h1 style="font-size: 40px">Release notes</h1>
    <p>Version 2.0 is out. See the <a href="https://example.com/changelog">full changelog</a>.</p>
    <script>document.cookie</script>
    <p>Fish &amp; chips &lt;3</p>
  </body>
</html>
"""
