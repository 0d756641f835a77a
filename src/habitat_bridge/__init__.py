# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/habitat_bridge

"""
habitat-bridge
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .analyzer import RequirementAnalyzer, analyze_project, clear_analysis_cache
from .client import BridgeClient
from .config import BridgeSettings, HabitatConfig
from .errors import (
    AccessDeniedError,
    BridgeConnectionError,
    BridgeNotReadyError,
    BridgeToolError,
    HabitatError,
    ProvisioningError,
)
from .habitat import Habitat, HabitatAsync
from .models import BridgeState, ExecResult, ProjectRequirements, SkillRepo
from .provisioner import IterativeProvisioner, ProvisionerState
from .skills import resolve

__all__ = [
    "AccessDeniedError",
    "BridgeClient",
    "BridgeConnectionError",
    "BridgeNotReadyError",
    "BridgeSettings",
    "BridgeState",
    "BridgeToolError",
    "ExecResult",
    "Habitat",
    "HabitatAsync",
    "HabitatConfig",
    "HabitatError",
    "IterativeProvisioner",
    "ProjectRequirements",
    "ProvisionerState",
    "ProvisioningError",
    "RequirementAnalyzer",
    "SkillRepo",
    "analyze_project",
    "clear_analysis_cache",
    "resolve",
]
