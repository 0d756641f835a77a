# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/habitat_bridge

import asyncio
import base64
import os
import shutil
import tempfile
from enum import Enum
from pathlib import Path
from typing import Callable
from uuid import uuid4

import aiofiles  # type: ignore[import-untyped]
from loguru import logger
from pydantic import BaseModel

from habitat_bridge.analyzer import LocalProjectSource, RequirementAnalyzer, shared_analyzer
from habitat_bridge.client import BridgeClient
from habitat_bridge.config import HabitatConfig
from habitat_bridge.errors import (
    BridgeConnectionError,
    BridgeNotReadyError,
    BridgeToolError,
    HealthCheckTimeout,
    ProvisioningError,
    SandboxBootError,
)
from habitat_bridge.factory import SandboxFactory
from habitat_bridge.models import BridgeState, ProjectRequirements, utcnow
from habitat_bridge.ports import PortAllocator
from habitat_bridge.recipe import TOKEN_NAME, RecipeBuilder, RecipeFixes, diagnose, is_local_reference
from habitat_bridge.runtime import SandboxHandle, SandboxRuntime
from habitat_bridge.secrets import EnvSecretStore, SecretStore
from habitat_bridge.state import BridgeStateStore

_PORT_CONFLICT = ("port is already allocated", "address already in use")
_DESTROYED = "destroyed during provisioning"
_LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {message}"

_port_allocators: dict[tuple[int, int, str], PortAllocator] = {}


def get_port_allocator(config: HabitatConfig) -> PortAllocator:
    """Process-wide allocator for the configured port range."""
    key = (config.port_range_start, config.port_range_end, config.bridge_host)
    if key not in _port_allocators:
        _port_allocators[key] = PortAllocator(*key)
    return _port_allocators[key]


class Phase(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    BUILDING = "building"
    BOOTING = "booting"
    HEALTH_CHECKING = "health_checking"
    READY = "ready"
    REPAIRING = "repairing"
    FAILED = "failed"
    STOPPED = "stopped"


class ProvisionerState(BaseModel):
    is_ready: bool
    iteration: int
    phase: Phase
    last_error: str | None = None


class IterativeProvisioner:
    """Drives one agent's sandbox from a repository reference to a healthy bridge.

    Each iteration builds a recipe, boots it and waits for the bridge to
    report healthy. A failed iteration is diagnosed and the recipe repaired
    before the next attempt, up to ``max_iterations``.
    """

    def __init__(
        self,
        agent_id: str,
        repository: str,
        config: HabitatConfig | None = None,
        runtime: SandboxRuntime | None = None,
        secrets: SecretStore | None = None,
        requirements: ProjectRequirements | None = None,
        analyzer: RequirementAnalyzer | None = None,
        ports: PortAllocator | None = None,
        store: BridgeStateStore | None = None,
        client_factory: Callable[[int], BridgeClient] | None = None,
    ):
        """Initializes the provisioner.

        Args:
            agent_id: Owning agent; scopes persisted state and logs.
            repository: Remote URL or local path of the repository.
            config: Control process configuration.
            runtime: Sandbox backend. Created from ``config.runtime`` when omitted.
            secrets: Lookup for environment variable values.
            requirements: Precomputed requirements; analysis is skipped when given.
            analyzer: Analyzer used when requirements must be computed. Defaults to a
                process-wide analyzer caching results for ``analysis_cache_ttl``.
            ports: Port allocator shared with other provisioners.
            store: Persisted state store.
            client_factory: Builds a client for a port; used for health checks.
        """
        self.agent_id = agent_id
        self.repository = repository
        self.config = config or HabitatConfig()
        self.runtime = runtime or SandboxFactory.get_runtime(self.config)
        self.secrets = secrets or EnvSecretStore()
        self.analyzer = analyzer or shared_analyzer(self.config.analysis_cache_ttl)
        self.ports = ports or get_port_allocator(self.config)
        self.store = store or BridgeStateStore(self.config.state_dir)
        self.builder = RecipeBuilder(self.config)
        self._client_factory = client_factory
        self._requirements = requirements

        self._phase = Phase.PENDING
        self._iteration = 0
        self._last_error: str | None = None
        self._port: int | None = None
        self._handle: SandboxHandle | None = None
        self._state: BridgeState | None = None
        self._destroyed = False
        self._log_path: Path = self.store.log_path(agent_id)
        self._init_lock = asyncio.Lock()
        self.log = logger.bind(agent_id=agent_id)

    # Public API

    def get_state(self) -> ProvisionerState:
        return ProvisionerState(
            is_ready=self._phase == Phase.READY,
            iteration=self._iteration,
            phase=self._phase,
            last_error=self._last_error,
        )

    def get_port(self) -> int:
        if self._phase != Phase.READY or self._port is None:
            raise BridgeNotReadyError(f"Bridge for {self.agent_id} is not ready (phase {self._phase.value})")
        return self._port

    def get_client(self) -> BridgeClient:
        return self._make_client(self.get_port())

    async def initialize(self, log_path: Path | None = None) -> None:
        """Provision until the bridge is healthy.

        Args:
            log_path: Per-agent log file. Defaults to the state store's log path.

        Raises:
            ProvisioningError: When every iteration failed.
        """
        async with self._init_lock:
            if self._phase == Phase.READY:
                return
            self._destroyed = False

            if log_path:
                self._log_path = Path(log_path)
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            sink_id = logger.add(
                self._log_path,
                format=_LOG_FORMAT,
                level="DEBUG",
                filter=lambda record: record["extra"].get("agent_id") == self.agent_id,
            )
            try:
                with logger.contextualize(agent_id=self.agent_id):
                    await self._provision()
            finally:
                logger.remove(sink_id)

    async def destroy(self) -> None:
        """Stop the sandbox, mark the state stopped and release the port. Idempotent.

        When provisioning is in flight, waits for the current iteration to
        stop whatever it booted before cleaning up.
        """
        self._destroyed = True
        if self._init_lock.locked():
            self.log.info("Destroy requested during provisioning; waiting for the current iteration to stop")
        async with self._init_lock:
            await self._teardown()

    async def _teardown(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            self.log.info(f"Stopping sandbox {handle.name}")
            await self._archive_output(handle)
            await self.runtime.stop(handle)

        if self._port is not None:
            self.ports.release(self._port)
            self._port = None

        state = self._state or await self.store.load(self.agent_id)
        if state is not None and state.status != "stopped":
            state.status = "stopped"
            await self.store.save(state)
        self._state = None

        if self._phase not in (Phase.PENDING, Phase.FAILED):
            self._phase = Phase.STOPPED

    async def is_healthy(self) -> bool:
        """Probe the bridge and record the time of a successful check."""
        if self._phase != Phase.READY:
            return False
        async with self.get_client() as client:
            try:
                health = await client.health()
            except (BridgeConnectionError, BridgeToolError) as e:
                self.log.warning(f"Health probe failed: {e}")
                return False
        if health.status != "healthy":
            return False
        if self._state is not None:
            self._state.last_health_check = utcnow()
            await self.store.save(self._state)
        return True

    async def get_logs(self, lines: int | None = None) -> list[str]:
        async with self.get_client() as client:
            return await client.get_logs(lines)

    async def recover(self) -> bool:
        """Adopt a sandbox recorded as running by an earlier control process.

        Returns:
            bool: True when the sandbox is still running and is now READY.
        """
        state = await self.store.recover(self.agent_id)
        if state is None:
            return False

        handle = SandboxHandle(process_id=state.process_id, name=f"habitat-{self.agent_id}", port=state.port)
        if await self.runtime.status(handle) != "running":
            self.log.info(f"Recorded sandbox {state.process_id} is gone; marking stopped")
            state.status = "stopped"
            await self.store.save(state)
            return False

        self.ports.reserve(state.port)
        self._port = state.port
        self._handle = handle
        self._state = state
        self._phase = Phase.READY
        self.log.info(f"Recovered running sandbox on port {state.port}")
        return True

    # Internals

    def _make_client(self, port: int) -> BridgeClient:
        if self._client_factory is not None:
            return self._client_factory(port)
        return BridgeClient(self.config.bridge_host, port, timeout=self.config.client_timeout)

    async def _provision(self) -> None:
        self._phase = Phase.ANALYZING
        self.log.info(f"Provisioning {self.repository}")
        requirements = await self._analyze()

        fixes = RecipeFixes()
        try:
            self._port = self.ports.allocate()
        except RuntimeError as e:
            self._phase = Phase.FAILED
            self._last_error = str(e)
            self.log.error(f"Provisioning failed before booting: {e}")
            raise ProvisioningError(0, str(e)) from e
        last_signal = ""

        for iteration in range(1, self.config.max_iterations + 1):
            self._iteration = iteration
            if self._destroyed:
                last_signal = _DESTROYED
                break

            self._phase = Phase.BUILDING
            recipe = self.builder.build(requirements, fixes, self.repository, self._port, self.secrets)

            self._phase = Phase.BOOTING
            name = f"habitat-{self.agent_id}-{uuid4().hex[:8]}"
            try:
                self._handle = await self.runtime.boot(recipe, name)
                if not self._destroyed:
                    self._phase = Phase.HEALTH_CHECKING
                    await self._wait_healthy(self._handle)
            except (SandboxBootError, HealthCheckTimeout) as e:
                last_signal = str(e)
            else:
                if not self._destroyed:
                    await self._mark_ready(self._handle)
                    return
                last_signal = _DESTROYED

            self._last_error = last_signal
            self.log.warning(f"Iteration {iteration}/{self.config.max_iterations} failed: {last_signal}")
            if self._handle is not None:
                await self._archive_output(self._handle)
                await self.runtime.stop(self._handle)
                self._handle = None

            if self._destroyed or iteration == self.config.max_iterations:
                break

            self._phase = Phase.REPAIRING
            if self._port is not None and any(marker in last_signal for marker in _PORT_CONFLICT):
                self.ports.release(self._port)
                self._port = None
                try:
                    self._port = self.ports.allocate()
                except RuntimeError as e:
                    last_signal = str(e)
                    break
                self.log.info(f"Port conflict; retrying on port {self._port}")
                continue
            repair = diagnose(last_signal)
            if repair is None:
                self.log.info("No repair found; retrying unchanged")
            elif repair.apply(fixes):
                self.log.info(f"Applied repair: {repair.reason}")
            else:
                self.log.info(f"Repair already applied: {repair.reason}")

        self._phase = Phase.STOPPED if self._destroyed else Phase.FAILED
        self._last_error = last_signal
        if self._port is not None:
            self.ports.release(self._port)
            self._port = None
        self.log.error(f"Provisioning failed after {self._iteration} iteration(s)")
        raise ProvisioningError(self._iteration, last_signal)

    async def _archive_output(self, handle: SandboxHandle) -> None:
        """Append the sandbox's full output (setup steps and bridge server log) to the agent log."""
        output = await self.runtime.logs(handle)
        if not output:
            return
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self._log_path, "a", encoding="utf-8") as f:
            await f.write(f"----- output of {handle.name} -----\n")
            await f.write(output if output.endswith("\n") else output + "\n")
            await f.write(f"----- end of {handle.name} -----\n")

    async def _mark_ready(self, handle: SandboxHandle) -> None:
        self._state = BridgeState(
            agent_id=self.agent_id,
            repository=self.repository,
            port=handle.port,
            process_id=handle.process_id,
            status="running",
            last_health_check=utcnow(),
        )
        await self.store.save(self._state)
        self._phase = Phase.READY
        self._last_error = None
        self.log.info(f"Bridge ready on port {self._port} after {self._iteration} iteration(s)")

    async def _wait_healthy(self, handle: SandboxHandle) -> None:
        """Poll ``bridge_health`` until healthy.

        Returns early, without raising, once destroy has been requested.

        Raises:
            SandboxBootError: The sandbox exited before becoming healthy.
            HealthCheckTimeout: No healthy response within ``health_timeout``.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.health_timeout
        last = "no response"

        async with self._make_client(handle.port) as client:
            while not self._destroyed:
                if await self.runtime.status(handle) != "running":
                    output = await self.runtime.logs(handle, tail=50)
                    raise SandboxBootError(f"Sandbox exited during setup:\n{output}")
                try:
                    health = await client.health()
                    if health.status == "healthy":
                        return
                    last = f"status {health.status}"
                except (BridgeConnectionError, BridgeToolError) as e:
                    last = str(e)

                if loop.time() >= deadline:
                    output = await self.runtime.logs(handle, tail=50)
                    raise HealthCheckTimeout(
                        f"Bridge not healthy after {self.config.health_timeout}s ({last}):\n{output}"
                    )
                await asyncio.sleep(self.config.health_poll_interval)

    async def _analyze(self) -> ProjectRequirements:
        if self._requirements is not None:
            self.log.info("Using precomputed requirements")
            return self._requirements
        if is_local_reference(self.repository):
            return await self.analyzer.analyze(self.repository)
        return await self.analyzer.cache.get_or_compute(self.repository, self._analyze_remote)

    async def _analyze_remote(self) -> ProjectRequirements:
        """Shallow-clone to a temp dir, analyze, remove."""
        workdir = await asyncio.to_thread(tempfile.mkdtemp, prefix="habitat-analyze-")
        target = os.path.join(workdir, "repo")
        try:
            env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
            token = self.secrets.get_secret(TOKEN_NAME) or self.config.github_token
            if token:
                basic = base64.b64encode(f"x-access-token:{token}".encode()).decode()
                env.update(
                    GIT_CONFIG_COUNT="1",
                    GIT_CONFIG_KEY_0="http.https://github.com/.extraheader",
                    GIT_CONFIG_VALUE_0=f"Authorization: Basic {basic}",
                )
            try:
                proc = await asyncio.create_subprocess_exec(
                    "git",
                    "clone",
                    "--depth",
                    "1",
                    self.repository,
                    target,
                    env=env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
                _, stderr = await proc.communicate()
            except FileNotFoundError:
                self.log.warning("git is not installed on the host; skipping analysis")
                return ProjectRequirements()
            if proc.returncode != 0:
                self.log.warning(f"Could not clone {self.repository} for analysis: {stderr.decode().strip()}")
                return ProjectRequirements()
            return await self.analyzer.analyze_source(LocalProjectSource(target))
        finally:
            await asyncio.to_thread(shutil.rmtree, workdir, ignore_errors=True)
