from habitat_bridge.config import HabitatConfig
from habitat_bridge.runtime import SandboxRuntime
from habitat_bridge.runtimes.docker import DockerRuntime


class SandboxFactory:
    """
    Factory to create SandboxRuntime instances based on configuration.
    """

    @staticmethod
    def get_runtime(config: HabitatConfig) -> SandboxRuntime:
        """
        Returns an instance of the configured SandboxRuntime.
        """
        if config.runtime == "docker":
            return DockerRuntime(
                cpu_limit=config.cpu_limit,
                mem_limit=config.mem_limit,
                bind_host=config.bridge_host,
            )
        else:
            # This should be unreachable due to Pydantic validation, but for safety:
            raise ValueError(f"Unknown runtime: {config.runtime}")  # pragma: no cover
