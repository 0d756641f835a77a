# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/habitat_bridge

import shlex
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_serializer

ProjectType = Literal["npm", "pip", "cargo", "go", "maven", "gradle", "shell", "unknown"]
BridgeStatus = Literal["running", "stopped"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheVolume(BaseModel):
    """A named volume that persists a directory across provisioning attempts.

    Attributes:
        name: Volume name (project-scoped by the runtime).
        mount_path: Where the volume is mounted inside the sandbox.
    """

    model_config = {"frozen": True}

    name: str
    mount_path: str


class SkillRepo(BaseModel):
    """A third-party plugin resolved to an installable source.

    Attributes:
        name: Short identifier taken from the last segment of the reference.
        source_location: Clone target (full URL, SSH remote, or expanded owner/name).
        sandbox_path: Where the plugin is materialized inside the sandbox.
        apt_packages: System packages this plugin requires.
        setup_commands: Commands run inside ``sandbox_path`` after cloning.
    """

    name: str
    source_location: str
    sandbox_path: str
    apt_packages: list[str] = Field(default_factory=list)
    setup_commands: list[str] = Field(default_factory=list)


class ProjectRequirements(BaseModel):
    """Provisioning needs inferred from a project's scripts and metadata."""

    project_type: ProjectType = "unknown"
    detected_tools: set[str] = Field(default_factory=set)
    env_var_names: set[str] = Field(default_factory=set)
    apt_packages: set[str] = Field(default_factory=set)
    global_packages: set[str] = Field(default_factory=set)
    setup_commands: list[str] = Field(default_factory=list)
    base_image: str = "ubuntu:22.04"
    cache_volumes: list[CacheVolume] = Field(default_factory=list)
    skill_repos: list[SkillRepo] = Field(default_factory=list)

    @field_serializer("detected_tools", "env_var_names", "apt_packages", "global_packages")
    def _sorted(self, value: set[str]) -> list[str]:
        return sorted(value)


class SandboxRecipe(BaseModel):
    """Concrete, bootable description of a sandbox."""

    base_image: str
    repository: str
    port: int
    environment: dict[str, str] = Field(default_factory=dict)
    cache_volumes: list[CacheVolume] = Field(default_factory=list)
    setup_commands: list[str] = Field(default_factory=list)
    skill_repos: list[SkillRepo] = Field(default_factory=list)
    entrypoint: str
    source_mount: str | None = None
    cache_key: str = "default"

    def boot_script(self) -> str:
        """Shell script run as the sandbox's main process.

        Each setup step is echoed before it runs so boot output shows which step
        failed. The bridge server replaces the shell once setup succeeds.
        """
        lines = ["set -e"]
        for index, command in enumerate(self.setup_commands, start=1):
            lines.append(f"echo {shlex.quote(f'[habitat] step {index}: {command}')}")
            lines.append(command)
        lines.append(f"exec {self.entrypoint}")
        return "\n".join(lines)

    def redacted(self) -> dict[str, object]:
        """Recipe as a dict with secret values masked, for logging."""
        data = self.model_dump()
        data["environment"] = {name: "***" for name in self.environment}
        return data


class BridgeState(BaseModel):
    """Persisted lifecycle record of one agent's sandbox.

    Attributes:
        agent_id: Owning agent identifier.
        repository: Repository reference the sandbox was provisioned from.
        port: Host port the bridge server is published on.
        process_id: Identifier of the controlling sandbox process (container id).
        status: ``running`` while the sandbox is addressable, else ``stopped``.
        created_at: When the record was first written.
        last_health_check: Last successful health probe.
    """

    agent_id: str
    repository: str
    port: int
    process_id: str
    status: BridgeStatus = "running"
    created_at: datetime = Field(default_factory=utcnow)
    last_health_check: datetime | None = None


class BridgeHealth(BaseModel):
    status: str
    uptime: float
    workspace: str
    timestamp: str | None = None


class DirectoryEntry(BaseModel):
    name: str
    type: Literal["file", "directory"]


class FileStat(BaseModel):
    path: str
    size: int
    is_directory: bool
    is_file: bool
    modified: str
    created: str


class GitFileStatus(BaseModel):
    status: str
    path: str


class ExecResult(BaseModel):
    """Outcome of ``exec_run`` as seen by the client."""

    stdout: str
    stderr: str | None = None
    exit_code: int = 0
