# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/habitat_bridge

"""Exception hierarchy for habitat-bridge."""

from typing import Any


class HabitatError(Exception):
    """Base class for all habitat-bridge errors."""


class SandboxBootError(HabitatError):
    """The sandbox runtime failed to start a container from a recipe."""


class HealthCheckTimeout(HabitatError):
    """The bridge server did not report healthy within the allotted time."""


class ProvisioningError(HabitatError):
    """Provisioning exhausted its iteration budget.

    Attributes:
        iteration: The last iteration that was attempted.
        last_signal: The failure signal captured during that iteration.
    """

    def __init__(self, iteration: int, last_signal: str):
        self.iteration = iteration
        self.last_signal = last_signal
        super().__init__(f"Provisioning failed after {iteration} iteration(s): {last_signal}")


class BridgeNotReadyError(HabitatError):
    """Raised when a bridge endpoint is requested before provisioning finished."""


class BridgeConnectionError(HabitatError):
    """The bridge server could not be reached or returned a malformed response."""


class BridgeToolError(HabitatError):
    """A bridge tool returned an error result.

    Attributes:
        tool: Name of the tool that failed.
        kind: Machine-readable error kind (e.g. ``not_found``, ``timeout``).
        structured: The structured error payload returned by the tool.
    """

    def __init__(self, tool: str, message: str, kind: str = "tool_error", structured: dict[str, Any] | None = None):
        self.tool = tool
        self.kind = kind
        self.structured = structured or {}
        super().__init__(f"{tool}: {message}")


class AccessDeniedError(BridgeToolError):
    """A bridge tool rejected a path outside the allowed roots."""

    def __init__(self, tool: str, message: str, structured: dict[str, Any] | None = None):
        super().__init__(tool, message, kind="access_denied", structured=structured)
