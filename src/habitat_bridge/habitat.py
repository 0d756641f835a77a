# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/habitat_bridge

from pathlib import Path
from uuid import uuid4

import anyio
from loguru import logger

from habitat_bridge.config import HabitatConfig
from habitat_bridge.models import DirectoryEntry, ExecResult, ProjectRequirements
from habitat_bridge.provisioner import IterativeProvisioner, ProvisionerState
from habitat_bridge.secrets import SecretStore


class HabitatAsync:
    """Async-native habitat (The Core).

    Provisions a sandbox for a repository on entry and destroys it on exit.
    Each operation opens a short-lived client to the bridge.
    """

    def __init__(
        self,
        repository: str,
        agent_id: str | None = None,
        config: HabitatConfig | None = None,
        secrets: SecretStore | None = None,
        requirements: ProjectRequirements | None = None,
    ):
        """Initializes the habitat.

        Args:
            repository: Remote URL or local path of the repository.
            agent_id: Owning agent. A random id is used when omitted.
            config: Control process configuration.
            secrets: Lookup for environment variable values.
            requirements: Precomputed requirements.
        """
        self.agent_id = agent_id or f"agent-{uuid4().hex[:12]}"
        self.provisioner = IterativeProvisioner(
            self.agent_id,
            repository,
            config=config,
            secrets=secrets,
            requirements=requirements,
        )

    async def __aenter__(self) -> "HabitatAsync":
        """Provisions the sandbox."""
        await self.provisioner.initialize()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        """Destroys the sandbox."""
        await self.provisioner.destroy()

    @property
    def state(self) -> ProvisionerState:
        return self.provisioner.get_state()

    async def execute(self, command: str, timeout: float | None = None, cwd: str | None = None) -> ExecResult:
        """Runs a shell command in the sandbox.

        Args:
            command: Shell command line.
            timeout: Seconds before the command is killed.
            cwd: Working directory inside the sandbox.

        Returns:
            ExecResult: Output and exit code.
        """
        logger.info("Executing command in habitat", agent_id=self.agent_id)
        async with self.provisioner.get_client() as client:
            return await client.execute(command, timeout=timeout, cwd=cwd)

    async def read_file(self, path: str) -> str:
        async with self.provisioner.get_client() as client:
            return await client.read_file(path)

    async def write_file(self, path: str, content: str) -> None:
        async with self.provisioner.get_client() as client:
            await client.write_file(path, content)

    async def upload(self, local_path: Path, remote_path: str) -> None:
        """Copies a local text file into the sandbox.

        Args:
            local_path: Path to the local file.
            remote_path: Destination path in the sandbox.
        """
        content = await anyio.Path(local_path).read_text(encoding="utf-8")
        await self.write_file(remote_path, content)

    async def download(self, remote_path: str, local_path: Path) -> None:
        """Copies a text file out of the sandbox.

        Args:
            remote_path: Path to the file in the sandbox.
            local_path: Destination path on the host.
        """
        content = await self.read_file(remote_path)
        await anyio.Path(local_path).write_text(content, encoding="utf-8")

    async def list_files(self, path: str | None = None) -> list[DirectoryEntry]:
        async with self.provisioner.get_client() as client:
            return await client.list_directory(path)


class Habitat:
    """Sync Facade for HabitatAsync (The Facade).

    Wraps HabitatAsync and executes methods via anyio.run.
    """

    def __init__(
        self,
        repository: str,
        agent_id: str | None = None,
        config: HabitatConfig | None = None,
        secrets: SecretStore | None = None,
        requirements: ProjectRequirements | None = None,
    ):
        self._async = HabitatAsync(repository, agent_id, config, secrets, requirements)

    def __enter__(self) -> "Habitat":
        """Context entry point."""
        anyio.run(self._async.__aenter__)
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        """Context exit point."""
        anyio.run(self._async.__aexit__, exc_type, exc_val, exc_tb)

    @property
    def agent_id(self) -> str:
        return self._async.agent_id

    @property
    def state(self) -> ProvisionerState:
        return self._async.state

    def execute(self, command: str, timeout: float | None = None, cwd: str | None = None) -> ExecResult:
        return anyio.run(self._async.execute, command, timeout, cwd)

    def read_file(self, path: str) -> str:
        return anyio.run(self._async.read_file, path)

    def write_file(self, path: str, content: str) -> None:
        anyio.run(self._async.write_file, path, content)

    def upload(self, local_path: Path, remote_path: str) -> None:
        anyio.run(self._async.upload, local_path, remote_path)

    def download(self, remote_path: str, local_path: Path) -> None:
        anyio.run(self._async.download, remote_path, local_path)

    def list_files(self, path: str | None = None) -> list[DirectoryEntry]:
        return anyio.run(self._async.list_files, path)
