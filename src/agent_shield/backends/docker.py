"""
Docker-based sandbox backend

Each sandbox is a short-lived container with every capability dropped, a
read-only root filesystem and fixed memory / CPU / pids limits.

When the isolation plan allows outbound web access the container does not
get its own network stack. It joins the namespace of a small "jail"
sidecar that holds NET_ADMIN, has the plan's DNS resolvers and has already
applied the plan's firewall rules. The task container is only created after
the rules are in place.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container

from agent_shield.backends import MANAGED_LABEL, SandboxBackend, SandboxSpec, WaitOutcome
from agent_shield.errors import BackendUnavailableError, SandboxCreationError
from agent_shield.security.isolation import render_iptables_script
from agent_shield.utils.logger import get_logger

logger = get_logger(__name__)

__all__ = ["DockerSandbox"]


class DockerSandbox(SandboxBackend):
    """
    Docker-based sandbox backend

    Features:
    - Container-based isolation with all capabilities dropped
    - Memory (no swap), CPU and pids limits fixed at creation
    - Network jail sidecar enforcing the isolation plan
    - Idempotent removal
    """

    name = "docker"

    DEFAULT_IMAGE = "curlimages/curl:latest"
    DEFAULT_JAIL_IMAGE = "nicolaka/netshoot:latest"
    JAIL_SUFFIX = "-jail"

    def __init__(self, config: Optional[dict] = None):
        """
        Initialize Docker backend

        Args:
            config: Optional configuration dict with keys:
                - image: Default sandbox image
                - jail_image: Image with iptables for the network jail
                - pull_images: Pull missing images (default True)
        """
        super().__init__(config)

        self.image = self.config.get("image", self.DEFAULT_IMAGE)
        self.jail_image = self.config.get("jail_image", self.DEFAULT_JAIL_IMAGE)
        self.pull_images = self.config.get("pull_images", True)

        self._client: Optional[docker.DockerClient] = None

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialize Docker client"""
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise BackendUnavailableError("docker", str(e)) from e
        return self._client

    async def create(self, spec: SandboxSpec) -> None:
        await self._pull_image(spec.image)

        labels = {MANAGED_LABEL: "true", "agent-shield.handle": spec.handle_id, **spec.labels}

        if spec.plan.needs_firewall:
            jail = await self._create_jail(spec, labels)
            network_kwargs: Dict[str, Any] = {"network_mode": f"container:{jail.id}"}
        else:
            network_kwargs = spec.plan.container_kwargs()

        create_kwargs = {
            "image": spec.image,
            "command": list(spec.command),
            "name": spec.handle_id,
            "environment": dict(spec.environment),
            "labels": labels,
            "detach": True,
            **spec.limits.get_docker_config(),
            **network_kwargs,
        }

        await asyncio.to_thread(self.client.containers.create, **create_kwargs)
        logger.debug(f"Created container {spec.handle_id} (network={network_kwargs['network_mode']})")

    async def _create_jail(self, spec: SandboxSpec, labels: Dict[str, str]) -> Container:
        """Start the network jail and apply the firewall rules inside it"""
        await self._pull_image(self.jail_image)

        jail: Container = await asyncio.to_thread(
            self.client.containers.run,
            self.jail_image,
            ["sleep", "infinity"],
            name=spec.handle_id + self.JAIL_SUFFIX,
            detach=True,
            labels={**labels, "agent-shield.role": "jail"},
            cap_drop=["ALL"],
            cap_add=["NET_ADMIN", "NET_RAW"],
            security_opt=["no-new-privileges"],
            mem_limit="32m",
            pids_limit=16,
            **spec.plan.container_kwargs(),
        )

        script = render_iptables_script(spec.plan)
        result = await asyncio.to_thread(jail.exec_run, ["sh", "-c", script])
        if result.exit_code != 0:
            output = (result.output or b"").decode("utf-8", errors="replace").strip()
            raise SandboxCreationError(
                spec.handle_id,
                f"isolation plan could not be applied (exit {result.exit_code}): {output[:200]}",
            )

        logger.debug(f"Network jail for {spec.handle_id}: {len(spec.plan.rules)} rules applied")
        return jail

    async def start(self, handle_id: str) -> None:
        container = await self._get(handle_id)
        await asyncio.to_thread(container.start)

    async def wait(self, handle_id: str) -> WaitOutcome:
        container = await self._get(handle_id)
        status = await asyncio.to_thread(container.wait)
        await asyncio.to_thread(container.reload)
        state = container.attrs.get("State", {})
        return WaitOutcome(
            exit_code=int(status.get("StatusCode", -1)),
            oom_killed=bool(state.get("OOMKilled", False)),
        )

    async def kill(self, handle_id: str) -> None:
        try:
            container = await self._get(handle_id)
            await asyncio.to_thread(container.kill)
        except NotFound:
            pass
        except APIError as e:
            # 409: container is not running any more
            if e.status_code != 409:
                raise

    async def logs(self, handle_id: str) -> Tuple[bytes, bytes]:
        container = await self._get(handle_id)
        stdout = await asyncio.to_thread(container.logs, stdout=True, stderr=False)
        stderr = await asyncio.to_thread(container.logs, stdout=False, stderr=True)
        return stdout or b"", stderr or b""

    async def remove(self, handle_id: str) -> None:
        for name in (handle_id, handle_id + self.JAIL_SUFFIX):
            await self._remove_container(name)

    async def _remove_container(self, name: str) -> None:
        """Force-remove a container; an absent container is a no-op"""
        try:
            container = await asyncio.to_thread(self.client.containers.get, name)
            await asyncio.to_thread(container.remove, force=True)
        except NotFound:
            pass

    async def health_check(self) -> Dict[str, Any]:
        """
        Check Docker backend health

        Returns:
            Dict with status, docker_version, and sandbox counts
        """
        try:
            version_info = await asyncio.to_thread(self.client.version)
            containers = await asyncio.to_thread(
                self.client.containers.list,
                all=True,
                filters={"label": f"{MANAGED_LABEL}=true"},
            )
            running_count = len([c for c in containers if c.status == "running"])

            return {
                "status": "healthy",
                "backend": "docker",
                "docker_version": version_info.get("Version", "unknown"),
                "api_version": version_info.get("ApiVersion", "unknown"),
                "running_containers": running_count,
                "total_containers": len(containers),
            }

        except (DockerException, BackendUnavailableError) as e:
            return {
                "status": "unhealthy",
                "backend": "docker",
                "error": str(e),
            }

    async def list_sandboxes(self) -> List[str]:
        containers = await asyncio.to_thread(
            self.client.containers.list,
            all=True,
            filters={"label": f"{MANAGED_LABEL}=true"},
        )
        handles = []
        for c in containers:
            handle = c.labels.get("agent-shield.handle")
            if handle and handle not in handles:
                handles.append(handle)
        return handles

    async def _get(self, handle_id: str) -> Container:
        return await asyncio.to_thread(self.client.containers.get, handle_id)

    async def _pull_image(self, image: str) -> None:
        """Pull Docker image if not available"""
        try:
            await asyncio.to_thread(self.client.images.get, image)
        except ImageNotFound:
            if not self.pull_images:
                raise
            logger.info(f"Pulling image {image}")
            await asyncio.to_thread(self.client.images.pull, image)

    def close(self) -> None:
        """Close Docker client connection"""
        if self._client is not None:
            self._client.close()
            self._client = None
