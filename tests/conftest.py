from pathlib import Path
from typing import Any, Generator

import httpx
import pytest

from habitat_bridge.analyzer import AnalysisCache, RequirementAnalyzer
from habitat_bridge.client import BridgeClient
from habitat_bridge.config import BridgeSettings
from habitat_bridge.server.app import create_app
from habitat_bridge.server.logbuffer import LogBuffer


@pytest.fixture
def analyzer() -> RequirementAnalyzer:
    return RequirementAnalyzer(cache=AnalysisCache(ttl=300))


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def opt_dir(tmp_path: Path) -> Path:
    opt = tmp_path / "opt"
    opt.mkdir()
    return opt


@pytest.fixture
def bridge_settings(workspace: Path, opt_dir: Path) -> BridgeSettings:
    return BridgeSettings(
        workspace=str(workspace),
        allowed_roots=[str(workspace), str(opt_dir)],
        exec_timeout=10,
        git_timeout=30,
    )


@pytest.fixture
def log_buffer() -> LogBuffer:
    return LogBuffer(capacity=50)


@pytest.fixture
def bridge_app(bridge_settings: BridgeSettings, log_buffer: LogBuffer) -> Any:
    return create_app(bridge_settings, buffer=log_buffer)


@pytest.fixture
def http_client(bridge_app: Any) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=bridge_app),
        base_url="http://bridge",
        headers={"Accept": "application/json, text/event-stream"},
    )


@pytest.fixture
def bridge_client(http_client: httpx.AsyncClient) -> Generator[BridgeClient, None, None]:
    yield BridgeClient("bridge", 8080, timeout=15, client=http_client)
