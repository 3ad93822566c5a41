"""Docker-based agent lifecycle manager.

This module provides the DockerLifecycleManager class that runs each fleet
agent in its own labelled container, with the task's worktree mounted at
/workspace. All Docker SDK calls are blocking and run in the default
executor.
"""

import asyncio
from datetime import UTC, datetime
from pathlib import Path

import docker
import structlog
from docker.errors import DockerException, NotFound

from lifecycle.validation import validate_branch, validate_worktree_path
from models.errors import SpawnError
from models.schemas import AgentHandle, AgentType, ProcessMode

logger = structlog.get_logger(__name__)

LABEL_TASK_ID = "fleet.task-id"
LABEL_BRANCH = "fleet.branch"
LABEL_AGENT_TYPE = "fleet.agent-type"

# Container security configuration
CONTAINER_CONFIG: dict[str, object] = {
    "mem_limit": "4096m",
    "cpu_period": 100000,
    "cpu_quota": 100000,  # one CPU core
    "network_mode": "bridge",
    "security_opt": ["no-new-privileges"],
    "cap_drop": ["ALL"],
}


def _parse_created(value: str | None) -> datetime:
    # Docker reports nanosecond precision, which fromisoformat rejects
    if not value:
        return datetime.now(UTC)
    head, _, rest = value.partition(".")
    fraction = rest.rstrip("Z")[:6]
    try:
        parsed = datetime.fromisoformat(f"{head}.{fraction}" if fraction else head)
    except ValueError:
        return datetime.now(UTC)
    return parsed.replace(tzinfo=UTC)


class DockerLifecycleManager:
    """Spawns, probes and tears down container-mode agents.

    Attributes:
        image_name: The Docker image agents run in.
        worktree_base_dir: Directory every task worktree must live under.
        spawn_timeout: Seconds to wait for a container to start.
    """

    def __init__(
        self,
        image_name: str = "fleet-agent:latest",
        worktree_base_dir: str = "./worktrees",
        spawn_timeout: float = 30.0,
    ) -> None:
        self.image_name = image_name
        self.worktree_base_dir = worktree_base_dir
        self.spawn_timeout = spawn_timeout
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def spawn(
        self,
        task_id: str,
        branch: str,
        agent_type: AgentType,
        prompt: str,
    ) -> AgentHandle:
        """Start an agent container for a task.

        Raises:
            SpawnError: If the branch or worktree path is invalid, or the
                container could not be started.
        """
        valid, error = validate_branch(branch)
        if not valid:
            raise SpawnError("INVALID_BRANCH", error)

        valid, error, worktree_path = validate_worktree_path(
            self.worktree_base_dir, f"{task_id}/{branch}"
        )
        if not valid:
            raise SpawnError("WORKTREE_ESCAPE", error)

        loop = asyncio.get_running_loop()
        try:
            Path(worktree_path).mkdir(parents=True, exist_ok=True)
            run_future = loop.run_in_executor(
                None,
                self._run_container,
                task_id,
                branch,
                AgentType(agent_type),
                prompt,
                worktree_path,
            )
            # Shielded so a timeout leaves the executor future observable
            container = await asyncio.wait_for(
                asyncio.shield(run_future), timeout=self.spawn_timeout
            )
        except TimeoutError as e:
            name = f"fleet-{task_id}"
            logger.error(
                "agent_spawn_timeout",
                task_id=task_id,
                branch=branch,
                timeout=self.spawn_timeout,
            )
            # The executor thread may still create the container after this point
            run_future.add_done_callback(
                lambda _: loop.run_in_executor(None, self._discard_container, name)
            )
            await loop.run_in_executor(None, self._discard_container, name)
            raise SpawnError(
                "CONTAINER_FAILED",
                f"Agent container did not start within {self.spawn_timeout}s",
            ) from e
        except (DockerException, OSError) as e:
            logger.error("agent_spawn_failed", task_id=task_id, branch=branch, error=str(e))
            raise SpawnError("CONTAINER_FAILED", f"Failed to start agent container: {e}") from e

        logger.info(
            "agent_spawned",
            task_id=task_id,
            branch=branch,
            container_id=container.id[:12],
        )
        return AgentHandle(
            task_id=task_id,
            branch=branch,
            worktree_path=worktree_path,
            process_ref=container.id,
            mode=ProcessMode.CONTAINER,
            spawned_at=datetime.now(UTC),
        )

    def _run_container(
        self,
        task_id: str,
        branch: str,
        agent_type: AgentType,
        prompt: str,
        worktree_path: str,
    ) -> docker.models.containers.Container:
        """Create and start the container (blocking operation)."""
        return self.client.containers.run(
            self.image_name,
            name=f"fleet-{task_id}",
            detach=True,
            remove=False,
            labels={
                LABEL_TASK_ID: task_id,
                LABEL_BRANCH: branch,
                LABEL_AGENT_TYPE: agent_type.value,
            },
            volumes={worktree_path: {"bind": "/workspace", "mode": "rw"}},
            working_dir="/workspace",
            environment={
                "FLEET_TASK_ID": task_id,
                "FLEET_BRANCH": branch,
                "FLEET_AGENT_TYPE": agent_type.value,
                "FLEET_PROMPT": prompt,
            },
            mem_limit=CONTAINER_CONFIG["mem_limit"],
            cpu_period=CONTAINER_CONFIG["cpu_period"],
            cpu_quota=CONTAINER_CONFIG["cpu_quota"],
            network_mode=CONTAINER_CONFIG["network_mode"],
            security_opt=CONTAINER_CONFIG["security_opt"],
            cap_drop=CONTAINER_CONFIG["cap_drop"],
        )

    async def is_alive(self, handle: AgentHandle) -> bool:
        """True if the agent's container exists and is running.

        Raises:
            APIError: If the Docker daemon could not be queried.
        """
        return await asyncio.get_running_loop().run_in_executor(
            None, self._container_running, handle.process_ref
        )

    def _container_running(self, container_id: str) -> bool:
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            return False
        return container.status == "running"

    async def kill(self, handle: AgentHandle) -> None:
        """Stop the agent container. A missing container is not an error."""
        await asyncio.get_running_loop().run_in_executor(
            None, self._stop_container, handle.process_ref
        )
        logger.info("agent_killed", task_id=handle.task_id)

    def _stop_container(self, container_id: str) -> None:
        try:
            self.client.containers.get(container_id).stop(timeout=10)
        except NotFound:
            pass  # Already removed

    async def cleanup(self, handle: AgentHandle) -> None:
        """Remove the agent container. A missing container is not an error."""
        await asyncio.get_running_loop().run_in_executor(
            None, self._remove_container, handle.process_ref
        )
        logger.info("agent_cleaned_up", task_id=handle.task_id)

    def _remove_container(self, container_id: str) -> None:
        try:
            self.client.containers.get(container_id).remove(force=True)
        except NotFound:
            pass  # Already removed

    def _discard_container(self, name: str) -> None:
        """Best-effort removal of a container whose spawn was abandoned."""
        try:
            self._remove_container(name)
        except DockerException as e:
            logger.warning("agent_discard_failed", container_name=name, error=str(e))

    async def list_active(self) -> list[AgentHandle]:
        """List running containers that carry the fleet task label."""
        containers = await asyncio.get_running_loop().run_in_executor(
            None,
            lambda: self.client.containers.list(
                filters={"label": LABEL_TASK_ID, "status": "running"}
            ),
        )
        handles = []
        for container in containers:
            labels = container.labels or {}
            mounts = container.attrs.get("Mounts") or []
            worktree = next(
                (m.get("Source", "") for m in mounts if m.get("Destination") == "/workspace"),
                "",
            )
            handles.append(
                AgentHandle(
                    task_id=labels[LABEL_TASK_ID],
                    branch=labels.get(LABEL_BRANCH, ""),
                    worktree_path=worktree,
                    process_ref=container.id,
                    mode=ProcessMode.CONTAINER,
                    spawned_at=_parse_created(container.attrs.get("Created")),
                )
            )
        return handles

    async def is_docker_available(self) -> bool:
        """Check whether the Docker daemon is reachable."""
        return await asyncio.get_running_loop().run_in_executor(None, self._ping)

    def _ping(self) -> bool:
        try:
            self.client.ping()
            return True
        except Exception:
            return False
