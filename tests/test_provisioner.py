import asyncio
import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from habitat_bridge.analyzer import RequirementAnalyzer, shared_analyzer
from habitat_bridge.config import HabitatConfig
from habitat_bridge.errors import BridgeConnectionError, BridgeNotReadyError, ProvisioningError, SandboxBootError
from habitat_bridge.models import BridgeHealth, BridgeState, ProjectRequirements, SandboxRecipe
from habitat_bridge.ports import PortAllocator
from habitat_bridge.provisioner import IterativeProvisioner, Phase
from habitat_bridge.runtime import SandboxHandle, SandboxRuntime, SandboxStatus
from habitat_bridge.state import BridgeStateStore


class FakeRuntime(SandboxRuntime):
    """Boots nothing; each boot consumes the next scripted outcome."""

    def __init__(self, outcomes: list[Any] | None = None):
        self.outcomes = list(outcomes or [])
        self.recipes: list[SandboxRecipe] = []
        self.stopped: list[str] = []
        self.current: Any = "running"

    async def boot(self, recipe: SandboxRecipe, name: str) -> SandboxHandle:
        self.recipes.append(recipe)
        self.current = self.outcomes.pop(0) if self.outcomes else "running"
        if isinstance(self.current, Exception):
            raise self.current
        return SandboxHandle(process_id=f"cid-{len(self.recipes)}", name=name, port=recipe.port)

    async def status(self, handle: SandboxHandle) -> SandboxStatus:
        if isinstance(self.current, tuple):
            return "exited"
        return "running"

    async def logs(self, handle: SandboxHandle, tail: int | None = None) -> str:
        if isinstance(self.current, tuple):
            return self.current[1]
        return "INFO | Starting habitat bridge\n"

    async def stop(self, handle: SandboxHandle) -> None:
        self.stopped.append(handle.process_id)


class FakeClient:
    def __init__(self, healthy: bool):
        self.healthy = healthy

    async def __aenter__(self) -> "FakeClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        pass

    async def health(self) -> BridgeHealth:
        if not self.healthy:
            raise BridgeConnectionError("Cannot reach bridge")
        return BridgeHealth(status="healthy", uptime=1.0, workspace="/workspace")

    async def get_logs(self, lines: int = 100) -> list[str]:
        return ["started"][-lines:]


@pytest.fixture
def config(tmp_path: Path) -> HabitatConfig:
    return HabitatConfig(
        _env_file=None,
        state_dir=tmp_path / "agents",
        max_iterations=3,
        health_timeout=0.05,
        health_poll_interval=0.01,
    )


@pytest.fixture
def ports() -> PortAllocator:
    return PortAllocator(start=29100, end=29199)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "package.json").write_text(json.dumps({"name": "demo"}))
    return repo


def _provisioner(
    config: HabitatConfig,
    ports: PortAllocator,
    project: Path,
    analyzer: RequirementAnalyzer,
    runtime: FakeRuntime,
    healthy: bool = True,
    **kwargs: Any,
) -> IterativeProvisioner:
    return IterativeProvisioner(
        "agent-1",
        str(project),
        config=config,
        runtime=runtime,
        analyzer=analyzer,
        ports=ports,
        client_factory=lambda port: FakeClient(healthy),  # type: ignore[arg-type,return-value]
        **kwargs,
    )


@pytest.mark.asyncio
async def test_success_persists_running_state(
    config: HabitatConfig, ports: PortAllocator, project: Path, analyzer: RequirementAnalyzer
) -> None:
    runtime = FakeRuntime()
    provisioner = _provisioner(config, ports, project, analyzer, runtime)

    with pytest.raises(BridgeNotReadyError):
        provisioner.get_port()

    await provisioner.initialize()

    state = provisioner.get_state()
    assert state.is_ready is True
    assert state.phase == Phase.READY
    assert state.iteration == 1
    port = provisioner.get_port()
    assert port in ports.reserved
    assert runtime.recipes[0].base_image == "node:20"

    stored = await BridgeStateStore(config.state_dir).load("agent-1")
    assert stored is not None
    assert stored.status == "running"
    assert stored.port == port
    assert stored.process_id == "cid-1"

    assert await provisioner.is_healthy() is True
    assert await provisioner.get_logs(5) == ["started"]

    # Already ready: no second boot
    await provisioner.initialize()
    assert len(runtime.recipes) == 1


@pytest.mark.asyncio
async def test_always_unhealthy_fails_at_iteration_budget(
    config: HabitatConfig, ports: PortAllocator, project: Path, analyzer: RequirementAnalyzer
) -> None:
    runtime = FakeRuntime()
    provisioner = _provisioner(config, ports, project, analyzer, runtime, healthy=False)

    with pytest.raises(ProvisioningError) as exc:
        await provisioner.initialize()

    assert exc.value.iteration == config.max_iterations
    assert len(runtime.recipes) == config.max_iterations
    assert runtime.stopped == ["cid-1", "cid-2", "cid-3"]
    state = provisioner.get_state()
    assert state.phase == Phase.FAILED
    assert state.is_ready is False
    assert state.last_error is not None and "not healthy" in state.last_error
    assert ports.reserved == frozenset()
    with pytest.raises(BridgeNotReadyError):
        provisioner.get_port()


@pytest.mark.asyncio
async def test_repair_is_applied_between_iterations(
    config: HabitatConfig, ports: PortAllocator, project: Path, analyzer: RequirementAnalyzer
) -> None:
    runtime = FakeRuntime(outcomes=[("exited", "[habitat] step 4: ./run.sh\nsh: 1: jq: not found\n"), "running"])
    provisioner = _provisioner(config, ports, project, analyzer, runtime)

    await provisioner.initialize()

    assert provisioner.get_state().iteration == 2
    assert "jq" not in runtime.recipes[0].setup_commands[0]
    assert "jq" in runtime.recipes[1].setup_commands[0]


@pytest.mark.asyncio
async def test_port_conflict_moves_to_new_port(
    config: HabitatConfig, ports: PortAllocator, project: Path, analyzer: RequirementAnalyzer
) -> None:
    runtime = FakeRuntime(outcomes=[SandboxBootError("Bind for 127.0.0.1:29100 failed: port is already allocated")])
    provisioner = _provisioner(config, ports, project, analyzer, runtime)

    await provisioner.initialize()

    first, second = runtime.recipes
    assert first.port != second.port
    assert provisioner.get_port() == second.port
    assert first.port not in ports.reserved


@pytest.mark.asyncio
async def test_destroy_is_idempotent(
    config: HabitatConfig, ports: PortAllocator, project: Path, analyzer: RequirementAnalyzer
) -> None:
    runtime = FakeRuntime()
    provisioner = _provisioner(config, ports, project, analyzer, runtime)

    await provisioner.destroy()
    assert provisioner.get_state().phase == Phase.PENDING

    await provisioner.initialize()
    port = provisioner.get_port()

    await provisioner.destroy()
    await provisioner.destroy()

    assert runtime.stopped == ["cid-1"]
    assert port not in ports.reserved
    assert provisioner.get_state().phase == Phase.STOPPED
    stored = await BridgeStateStore(config.state_dir).load("agent-1")
    assert stored is not None and stored.status == "stopped"
    with pytest.raises(BridgeNotReadyError):
        provisioner.get_port()


@pytest.mark.asyncio
async def test_per_agent_log_file(
    config: HabitatConfig, ports: PortAllocator, project: Path, analyzer: RequirementAnalyzer, tmp_path: Path
) -> None:
    log_path = tmp_path / "custom" / "agent.log"
    provisioner = _provisioner(config, ports, project, analyzer, FakeRuntime())

    await provisioner.initialize(log_path=log_path)

    content = log_path.read_text()
    assert "Provisioning" in content
    assert "Bridge ready on port" in content


@pytest.mark.asyncio
async def test_precomputed_requirements_skip_analysis(
    config: HabitatConfig, ports: PortAllocator, project: Path
) -> None:
    analyzer: Any = AsyncMock()
    runtime = FakeRuntime()
    requirements = ProjectRequirements(project_type="cargo", base_image="rust:1.75")
    provisioner = _provisioner(config, ports, project, analyzer, runtime, requirements=requirements)

    await provisioner.initialize()

    analyzer.analyze.assert_not_called()
    assert runtime.recipes[0].base_image == "rust:1.75"


@pytest.mark.asyncio
async def test_recover_running_sandbox(
    config: HabitatConfig, ports: PortAllocator, project: Path, analyzer: RequirementAnalyzer
) -> None:
    store = BridgeStateStore(config.state_dir)
    await store.save(BridgeState(agent_id="agent-1", repository=str(project), port=29150, process_id="cid-old"))
    provisioner = _provisioner(config, ports, project, analyzer, FakeRuntime())

    assert await provisioner.recover() is True
    assert provisioner.get_port() == 29150
    assert 29150 in ports.reserved


@pytest.mark.asyncio
async def test_recover_marks_vanished_sandbox_stopped(
    config: HabitatConfig, ports: PortAllocator, project: Path, analyzer: RequirementAnalyzer
) -> None:
    store = BridgeStateStore(config.state_dir)
    await store.save(BridgeState(agent_id="agent-1", repository=str(project), port=29150, process_id="cid-old"))
    runtime = FakeRuntime()
    runtime.current = ("exited", "")
    provisioner = _provisioner(config, ports, project, analyzer, runtime)

    assert await provisioner.recover() is False
    stored = await store.load("agent-1")
    assert stored is not None and stored.status == "stopped"


@pytest.mark.asyncio
async def test_sandbox_output_is_archived_to_agent_log(
    config: HabitatConfig, ports: PortAllocator, project: Path, analyzer: RequirementAnalyzer, tmp_path: Path
) -> None:
    log_path = tmp_path / "agent.log"
    runtime = FakeRuntime(outcomes=[("exited", "[habitat] step 3: make\nsh: 1: make: not found\n"), "running"])
    provisioner = _provisioner(config, ports, project, analyzer, runtime)

    await provisioner.initialize(log_path=log_path)
    await provisioner.destroy()

    content = log_path.read_text()
    assert "----- output of habitat-agent-1-" in content
    assert "sh: 1: make: not found" in content
    assert "INFO | Starting habitat bridge" in content


class SlowBootRuntime(FakeRuntime):
    """Holds every boot until ``release`` is set; records whether the port was still reserved at stop."""

    def __init__(self, ports: PortAllocator):
        super().__init__()
        self.ports = ports
        self.booting = asyncio.Event()
        self.release = asyncio.Event()
        self.port_reserved_at_stop: list[bool] = []

    async def boot(self, recipe: SandboxRecipe, name: str) -> SandboxHandle:
        self.booting.set()
        await self.release.wait()
        return await super().boot(recipe, name)

    async def stop(self, handle: SandboxHandle) -> None:
        self.port_reserved_at_stop.append(handle.port in self.ports.reserved)
        await super().stop(handle)


@pytest.mark.asyncio
async def test_destroy_during_boot_stops_the_booted_sandbox(
    config: HabitatConfig, ports: PortAllocator, project: Path, analyzer: RequirementAnalyzer
) -> None:
    runtime = SlowBootRuntime(ports)
    provisioner = _provisioner(config, ports, project, analyzer, runtime)

    init_task = asyncio.create_task(provisioner.initialize())
    await asyncio.wait_for(runtime.booting.wait(), timeout=5)
    (port,) = ports.reserved

    destroy_task = asyncio.create_task(provisioner.destroy())
    await asyncio.sleep(0.01)
    assert not destroy_task.done()
    assert port in ports.reserved

    runtime.release.set()
    await asyncio.wait_for(destroy_task, timeout=5)
    with pytest.raises(ProvisioningError, match="destroyed during provisioning"):
        await init_task

    assert runtime.stopped == ["cid-1"]
    assert runtime.port_reserved_at_stop == [True]
    assert port not in ports.reserved
    assert len(runtime.recipes) == 1
    state = provisioner.get_state()
    assert state.phase == Phase.STOPPED
    assert state.is_ready is False
    assert await BridgeStateStore(config.state_dir).load("agent-1") is None


@pytest.mark.asyncio
async def test_destroy_during_health_check_stops_polling(
    config: HabitatConfig, ports: PortAllocator, project: Path, analyzer: RequirementAnalyzer
) -> None:
    config = config.model_copy(update={"health_timeout": 30.0})
    runtime = FakeRuntime()
    provisioner = _provisioner(config, ports, project, analyzer, runtime, healthy=False)

    init_task = asyncio.create_task(provisioner.initialize())
    for _ in range(500):
        if provisioner.get_state().phase == Phase.HEALTH_CHECKING:
            break
        await asyncio.sleep(0.01)
    assert provisioner.get_state().phase == Phase.HEALTH_CHECKING

    await asyncio.wait_for(provisioner.destroy(), timeout=5)
    with pytest.raises(ProvisioningError, match="destroyed during provisioning"):
        await init_task

    assert runtime.stopped == ["cid-1"]
    assert len(runtime.recipes) == 1
    assert ports.reserved == frozenset()
    assert provisioner.get_state().phase == Phase.STOPPED


@pytest.mark.asyncio
async def test_exhausted_port_range_fails_provisioning(
    config: HabitatConfig, project: Path, analyzer: RequirementAnalyzer
) -> None:
    ports = PortAllocator(start=29200, end=29200)
    ports.reserve(29200)
    runtime = FakeRuntime()
    provisioner = _provisioner(config, ports, project, analyzer, runtime)

    with pytest.raises(ProvisioningError, match="No free ports") as exc:
        await provisioner.initialize()

    assert exc.value.iteration == 0
    assert runtime.recipes == []
    state = provisioner.get_state()
    assert state.phase == Phase.FAILED
    assert state.last_error is not None and "No free ports" in state.last_error


def test_default_analyzer_follows_configured_cache_ttl(
    config: HabitatConfig, ports: PortAllocator, project: Path
) -> None:
    config = config.model_copy(update={"analysis_cache_ttl": 12.5})

    first = IterativeProvisioner("agent-1", str(project), config=config, runtime=FakeRuntime(), ports=ports)
    second = IterativeProvisioner("agent-2", str(project), config=config, runtime=FakeRuntime(), ports=ports)

    assert first.analyzer.cache.ttl == 12.5
    assert first.analyzer is second.analyzer
    assert first.analyzer is shared_analyzer(12.5)
