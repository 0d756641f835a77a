# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/habitat_bridge

import os
from pathlib import Path

import aiofiles  # type: ignore[import-untyped]
from loguru import logger
from pydantic import ValidationError

from habitat_bridge.models import BridgeState


class BridgeStateStore:
    """File-backed store of per-agent bridge state.

    Layout::

        <root>/<agent_id>/bridge-state.json
        <root>/<agent_id>/bridge.log

    Files are plain JSON and text so they can be inspected or recovered without
    a running control process.
    """

    STATE_FILE = "bridge-state.json"
    LOG_FILE = "bridge.log"

    def __init__(self, root: Path):
        """Initializes the store.

        Args:
            root: Directory containing one subdirectory per agent.
        """
        self.root = Path(root)

    def agent_dir(self, agent_id: str) -> Path:
        if not agent_id or "/" in agent_id or agent_id in (".", ".."):
            raise ValueError(f"Invalid agent id: {agent_id!r}")
        return self.root / agent_id

    def state_path(self, agent_id: str) -> Path:
        return self.agent_dir(agent_id) / self.STATE_FILE

    def log_path(self, agent_id: str) -> Path:
        return self.agent_dir(agent_id) / self.LOG_FILE

    async def save(self, state: BridgeState) -> None:
        """Write the state atomically (temp file + rename)."""
        path = self.state_path(state.agent_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write(state.model_dump_json(indent=2))
        os.replace(tmp, path)
        logger.debug(f"Persisted bridge state for {state.agent_id}: {state.status}")

    async def load(self, agent_id: str) -> BridgeState | None:
        """
        Read an agent's state. Returns None if missing or corrupt.
        """
        path = self.state_path(agent_id)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                raw = await f.read()
            return BridgeState.model_validate_json(raw)
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable bridge state {path}: {e}")
            return None

    async def list_states(self) -> list[BridgeState]:
        if not self.root.is_dir():
            return []
        states = []
        for entry in sorted(self.root.iterdir()):
            if not (entry / self.STATE_FILE).is_file():
                continue
            state = await self.load(entry.name)
            if state:
                states.append(state)
        return states

    async def list_running(self) -> list[BridgeState]:
        """States last recorded as running, for recovery after a restart."""
        return [s for s in await self.list_states() if s.status == "running"]

    async def recover(self, agent_id: str) -> BridgeState | None:
        """The agent's state if it was last recorded as running."""
        state = await self.load(agent_id)
        if state is None or state.status != "running":
            return None
        return state
