import asyncio

import docker
from docker.errors import DockerException, NotFound
from docker.models.containers import Container
from loguru import logger

from habitat_bridge.errors import SandboxBootError
from habitat_bridge.models import SandboxRecipe
from habitat_bridge.runtime import SandboxHandle, SandboxRuntime, SandboxStatus

SOURCE_MOUNT_PATH = "/mnt/source"


class DockerRuntime(SandboxRuntime):
    """
    Docker-based implementation of the SandboxRuntime.
    """

    def __init__(
        self,
        cpu_limit: float = 2.0,
        mem_limit: str = "2g",
        bind_host: str = "127.0.0.1",
    ):
        self.client = docker.from_env()
        self.cpu_limit = cpu_limit
        self.mem_limit = mem_limit
        self.bind_host = bind_host

    def _volumes(self, recipe: SandboxRecipe) -> dict[str, dict[str, str]]:
        volumes = {
            f"habitat-{recipe.cache_key}-{cv.name}": {"bind": cv.mount_path, "mode": "rw"}
            for cv in recipe.cache_volumes
        }
        if recipe.source_mount:
            volumes[recipe.source_mount] = {"bind": SOURCE_MOUNT_PATH, "mode": "ro"}
        return volumes

    def _get_container(self, handle: SandboxHandle) -> Container | None:
        try:
            return self.client.containers.get(handle.process_id)
        except NotFound:
            return None

    async def boot(self, recipe: SandboxRecipe, name: str) -> SandboxHandle:
        """
        Start the container; setup runs inside it before the bridge server.
        """
        logger.info(f"Starting Docker sandbox {name} with image {recipe.base_image} on port {recipe.port}")
        try:
            container = await asyncio.to_thread(
                self.client.containers.run,
                recipe.base_image,
                command=["sh", "-c", recipe.boot_script()],
                detach=True,
                name=name,
                environment=recipe.environment,
                ports={f"{recipe.port}/tcp": (self.bind_host, recipe.port)},
                volumes=self._volumes(recipe),
                mem_limit=self.mem_limit,
                nano_cpus=int(self.cpu_limit * 1e9),
                labels={"habitat.bridge": name},
                working_dir="/",
            )
        except DockerException as e:
            logger.error(f"Failed to start Docker sandbox {name}: {e}")
            raise SandboxBootError(f"Failed to start sandbox {name}: {e}") from e

        logger.info(f"Docker sandbox started: {container.short_id}")
        return SandboxHandle(process_id=container.id, name=name, port=recipe.port)

    async def status(self, handle: SandboxHandle) -> SandboxStatus:
        try:
            container = await asyncio.to_thread(self._get_container, handle)
            if container is None:
                return "missing"
            await asyncio.to_thread(container.reload)
        except NotFound:
            return "missing"
        except DockerException as e:
            logger.warning(f"Failed to inspect sandbox {handle.name}: {e}")
            return "missing"

        if container.status in ("exited", "dead"):
            return "exited"
        return "running"

    async def logs(self, handle: SandboxHandle, tail: int | None = None) -> str:
        try:
            container = await asyncio.to_thread(self._get_container, handle)
            if container is None:
                return ""
            output = await asyncio.to_thread(container.logs, tail=tail if tail else "all")
        except DockerException as e:
            logger.warning(f"Failed to read logs of sandbox {handle.name}: {e}")
            return ""
        return output.decode("utf-8", errors="replace") if output else ""

    async def stop(self, handle: SandboxHandle) -> None:
        """
        Kill and remove the container.
        """
        logger.info(f"Terminating Docker sandbox: {handle.name}")
        try:
            container = await asyncio.to_thread(self._get_container, handle)
            if container is None:
                logger.warning(f"Attempted to terminate non-existent Docker sandbox {handle.name}")
                return
            await asyncio.to_thread(container.remove, force=True)
        except NotFound:
            logger.warning(f"Docker sandbox {handle.name} already removed")
        except DockerException as e:
            logger.warning(f"Error terminating Docker sandbox {handle.name}: {e}")
