from pathlib import Path
from typing import Any, Literal

from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from habitat_bridge.secrets import EnvSecretStore


class SecretStoreSettingsSource(PydanticBaseSettingsSource):
    """
    Custom Pydantic Settings Source that reads credentials from the secret store.
    """

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        # Unused because __call__ returns the full dict, but the ABC requires it.
        return None, field_name, False  # pragma: no cover

    def __call__(self) -> dict[str, Any]:
        store = EnvSecretStore()
        secrets: dict[str, Any] = {}

        # Config field -> secret name
        mapping = {
            "github_token": "GITHUB_TOKEN",
        }

        for field, key in mapping.items():
            val = store.get_secret(key)
            if val:
                secrets[field] = val

        return secrets


class HabitatConfig(BaseSettings):
    """
    Configuration for the control process (analyzer and provisioner).
    """

    runtime: Literal["docker"] = "docker"
    state_dir: Path = Path.home() / ".habitat" / "agents"

    max_iterations: int = 10
    health_timeout: float = 120.0  # per attempt, includes setup commands
    health_poll_interval: float = 1.0
    analysis_cache_ttl: float = 300.0  # 5 minutes
    client_timeout: float = 30.0

    port_range_start: int = 8080
    port_range_end: int = 8999
    bridge_host: str = "127.0.0.1"

    bridge_install_command: str = (
        "python3 -m venv /opt/bridge-venv && /opt/bridge-venv/bin/pip install --quiet habitat-bridge"
    )
    bridge_executable: str = "/opt/bridge-venv/bin/habitat-bridge-server"

    # Docker resources
    mem_limit: str = "2g"
    cpu_limit: float = 2.0

    github_token: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="HABITAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            SecretStoreSettingsSource(settings_cls),
            file_secret_settings,
        )


class BridgeSettings(BaseSettings):
    """
    Configuration for the bridge server running inside a sandbox.
    """

    host: str = "0.0.0.0"
    port: int = 8080
    workspace: str = "/workspace"
    allowed_roots: list[str] = ["/workspace", "/opt"]

    exec_timeout: float = 60.0
    git_timeout: float = 120.0
    log_buffer_size: int = 1000
    default_log_lines: int = 100

    # Name of the env var holding a token for authenticated git remotes.
    token_env: str = "GITHUB_TOKEN"

    model_config = SettingsConfigDict(
        env_prefix="HABITAT_BRIDGE_",
        extra="ignore",
    )
