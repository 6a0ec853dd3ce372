"""
Sandbox backend base class

All sandbox backends must implement this interface. The runtime drives the
lifecycle one step at a time (create, start, wait, kill, remove), so that
timeouts, cancellation and cleanup stay in one place.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from agent_shield.security.isolation import IsolationPlan
from agent_shield.security.policies import ResourceLimits

__all__ = ["SandboxBackend", "SandboxSpec", "WaitOutcome", "MANAGED_LABEL"]

# Label carried by every container the shield creates
MANAGED_LABEL = "agent-shield.managed"


@dataclass(frozen=True)
class SandboxSpec:
    """Everything a backend needs to create one sandbox"""

    handle_id: str
    image: str
    command: Tuple[str, ...]
    limits: ResourceLimits
    plan: IsolationPlan
    environment: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class WaitOutcome:
    exit_code: int
    oom_killed: bool = False


class SandboxBackend(ABC):
    """
    Abstract base class for sandbox backends.

    `remove` must be idempotent: removing an absent sandbox is a no-op.
    """

    name = "base"

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

    @abstractmethod
    async def create(self, spec: SandboxSpec) -> None:
        """
        Create the sandbox with its limits and network plan applied.

        Nothing may run inside the sandbox before this returns.
        """
        pass

    @abstractmethod
    async def start(self, handle_id: str) -> None:
        pass

    @abstractmethod
    async def wait(self, handle_id: str) -> WaitOutcome:
        """Block until the sandboxed process exits"""
        pass

    @abstractmethod
    async def kill(self, handle_id: str) -> None:
        """Forcibly terminate the sandboxed process"""
        pass

    @abstractmethod
    async def logs(self, handle_id: str) -> Tuple[bytes, bytes]:
        """Return (stdout, stderr)"""
        pass

    @abstractmethod
    async def remove(self, handle_id: str) -> None:
        """Reclaim every resource belonging to the sandbox"""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """
        Check if backend is healthy and available.

        Returns:
            Dict with status information
        """
        pass

    async def list_sandboxes(self) -> List[str]:
        """Handle IDs of sandboxes still present on the backend"""
        return []

    def close(self) -> None:
        pass
