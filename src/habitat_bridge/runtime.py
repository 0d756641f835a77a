# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/habitat_bridge

from abc import ABC, abstractmethod
from typing import Literal

from pydantic import BaseModel

from habitat_bridge.models import SandboxRecipe

SandboxStatus = Literal["running", "exited", "missing"]


class SandboxHandle(BaseModel):
    """Reference to a booted sandbox.

    Attributes:
        process_id: Runtime identifier of the controlling process (container id).
        name: Human readable sandbox name.
        port: Host port the bridge server is published on.
    """

    process_id: str
    name: str
    port: int


class SandboxRuntime(ABC):
    """
    Abstract base class for sandbox runtimes.
    Follows the Strategy Pattern.
    """

    @abstractmethod
    async def boot(self, recipe: SandboxRecipe, name: str) -> SandboxHandle:
        """Start a sandbox from a recipe.

        The sandbox runs the recipe's setup commands and then the bridge server
        as its long-running process. Boot returns as soon as the process has
        been started; readiness is established by health checking.

        Args:
            recipe: The sandbox recipe.
            name: Unique name for the sandbox.

        Returns:
            SandboxHandle: Identifies the running sandbox.

        Raises:
            SandboxBootError: If the sandbox could not be started.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def status(self, handle: SandboxHandle) -> SandboxStatus:
        """Report whether the sandbox process is still running.

        Args:
            handle: The sandbox to inspect.

        Returns:
            SandboxStatus: ``running``, ``exited`` or ``missing``.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def logs(self, handle: SandboxHandle, tail: int | None = None) -> str:
        """Captured output of the sandbox process.

        Args:
            handle: The sandbox to read from.
            tail: Only return the last ``tail`` lines when set.

        Returns:
            str: Combined stdout/stderr; empty if unavailable.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def stop(self, handle: SandboxHandle) -> None:
        """Kill and cleanup the sandbox.

        Must be safe to call repeatedly and on sandboxes that already exited.
        """
        pass  # pragma: no cover
