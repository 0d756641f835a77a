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
import os
import time
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Awaitable, Callable, Protocol

import aiofiles  # type: ignore[import-untyped]
from loguru import logger

from habitat_bridge.errors import BridgeConnectionError, BridgeToolError
from habitat_bridge.models import ProjectRequirements, ProjectType
from habitat_bridge.patterns import (
    APT_CACHE_VOLUME,
    BASE_IMAGES,
    BIN_DIR,
    CACHE_VOLUMES,
    DEFAULT_IMAGE,
    DOC_FILE,
    ENV_FILES,
    ENV_KEY_PATTERN,
    ENV_NAME_PATTERN,
    NODE_IMAGE,
    NODE_TOOLS,
    PROJECT_TYPE_MARKERS,
    ROOT_SCRIPTS,
    SETUP_COMMANDS,
    SHELL_MARKERS,
    TOOL_PATTERNS,
    is_secret_name,
)
from habitat_bridge.skills import detect_references

if TYPE_CHECKING:
    from habitat_bridge.client import BridgeClient


class ProjectSource(Protocol):
    """Read-only view of a project tree, addressed by paths relative to its root."""

    label: str

    async def exists(self, relative: str) -> bool:
        """Whether a file or directory exists."""
        ...

    async def list_files(self, relative: str) -> list[str] | None:
        """Names of regular files in a directory, or None if it does not exist."""
        ...

    async def read_text(self, relative: str) -> str | None:
        """File contents, or None when the file is missing or unreadable."""
        ...


class LocalProjectSource:
    """
    Project tree on the host filesystem.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self.label = str(self.root)

    async def exists(self, relative: str) -> bool:
        return await asyncio.to_thread((self.root / relative).exists)

    async def list_files(self, relative: str) -> list[str] | None:
        directory = self.root / relative

        def _list() -> list[str] | None:
            if not directory.is_dir():
                return None
            return sorted(entry.name for entry in directory.iterdir() if entry.is_file())

        try:
            return await asyncio.to_thread(_list)
        except OSError as e:
            logger.warning(f"Skipping unreadable directory {directory}: {e}")
            return None

    async def read_text(self, relative: str) -> str | None:
        path = self.root / relative
        if not await asyncio.to_thread(path.is_file):
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                content: str = await f.read()
                return content
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Skipping unreadable file {path}: {e}")
            return None


class BridgeProjectSource:
    """
    Project tree inside a running bridge, read through its protocol client.
    """

    def __init__(self, client: "BridgeClient", root: str = "/workspace"):
        self.client = client
        self.root = PurePosixPath(root)
        self.label = f"bridge:{root}"

    async def exists(self, relative: str) -> bool:
        try:
            return await self.client.file_exists(str(self.root / relative))
        except (BridgeToolError, BridgeConnectionError) as e:
            logger.warning(f"Existence check failed for {relative}: {e}")
            return False

    async def list_files(self, relative: str) -> list[str] | None:
        try:
            entries = await self.client.list_directory(str(self.root / relative))
        except BridgeToolError:
            return None
        return sorted(e.name for e in entries if e.type == "file")

    async def read_text(self, relative: str) -> str | None:
        path = str(self.root / relative)
        try:
            if not await self.client.file_exists(path):
                return None
            return await self.client.read_file(path)
        except (BridgeToolError, BridgeConnectionError) as e:
            logger.warning(f"Skipping unreadable file {path}: {e}")
            return None


class AnalysisCache:
    """
    In-memory TTL cache of analysis results keyed by project path.

    Entries expire on read; there is no background eviction. Computation for a
    single key is serialized so concurrent callers share one analysis.
    """

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[ProjectRequirements, float]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> ProjectRequirements | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        requirements, stored_at = entry
        if self._clock() - stored_at >= self.ttl:
            self._entries.pop(key, None)
            return None
        return requirements.model_copy(deep=True)

    def put(self, key: str, requirements: ProjectRequirements) -> None:
        self._entries[key] = (requirements.model_copy(deep=True), self._clock())

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_compute(
        self, key: str, compute: Callable[[], Awaitable[ProjectRequirements]]
    ) -> ProjectRequirements:
        # Optimistic check
        cached = self.get(key)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                # Double-check inside lock
                cached = self.get(key)
                if cached is not None:
                    return cached

                requirements = await compute()
                self.put(key, requirements)
                return requirements.model_copy(deep=True)
        finally:
            # Drop the key's lock once no caller holds or awaits it.
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                self._locks.pop(key, None)


class RequirementAnalyzer:
    """Infers provisioning requirements from a project's scripts and metadata.

    Analysis never mutates the project and never fails: unreadable inputs are
    skipped and the result may simply be sparse.
    """

    def __init__(self, cache: AnalysisCache | None = None):
        """Initializes the analyzer.

        Args:
            cache: Result cache shared across calls. A private 5 minute cache is
                created when omitted.
        """
        self.cache = cache or AnalysisCache()

    async def analyze(self, project_path: str | os.PathLike[str]) -> ProjectRequirements:
        """Analyze a project directory on the host, using the cache.

        Args:
            project_path: Root of the project.

        Returns:
            ProjectRequirements: What the project needs to run in a sandbox.
        """
        root = Path(project_path).expanduser().resolve()
        return await self.cache.get_or_compute(
            str(root), lambda: self.analyze_source(LocalProjectSource(root))
        )

    async def analyze_source(self, source: ProjectSource) -> ProjectRequirements:
        """Analyze any project source without consulting the cache."""
        logger.info(f"Analyzing project requirements for {source.label}")

        project_type = await self.detect_project_type(source)
        scripts = await self.collect_scripts(source)

        requirements = ProjectRequirements(project_type=project_type)
        installers: list[str] = []

        for script in scripts:
            for tool in TOOL_PATTERNS:
                if not tool.matches(script):
                    continue
                requirements.detected_tools.add(tool.tool)
                requirements.apt_packages.update(tool.apt_packages)
                requirements.global_packages.update(tool.global_packages)
                requirements.env_var_names.update(tool.env_vars)
                if tool.installer and tool.installer not in installers:
                    installers.append(tool.installer)

        skills = detect_references(scripts)
        seen = {repo.name for repo in requirements.skill_repos}
        for repo in skills.skill_repos:
            if repo.name not in seen:
                seen.add(repo.name)
                requirements.skill_repos.append(repo)
        requirements.apt_packages.update(skills.apt_packages)
        requirements.env_var_names.update(skills.env_var_names)

        requirements.env_var_names.update(await self.collect_env_var_names(source))

        requirements.base_image = self.resolve_base_image(project_type, requirements.detected_tools)
        requirements.setup_commands = self.build_setup_commands(requirements, installers)

        requirements.cache_volumes = list(CACHE_VOLUMES.get(project_type, ()))
        if requirements.apt_packages:
            requirements.cache_volumes.append(APT_CACHE_VOLUME)

        logger.info(
            f"Analysis of {source.label}: type={project_type} image={requirements.base_image} "
            f"tools={sorted(requirements.detected_tools)} skills={[r.name for r in requirements.skill_repos]}"
        )
        return requirements

    async def detect_project_type(self, source: ProjectSource) -> ProjectType:
        for project_type, markers in PROJECT_TYPE_MARKERS:
            for marker in markers:
                if await source.exists(marker):
                    return project_type

        for marker in SHELL_MARKERS:
            if await source.exists(marker):
                return "shell"

        bin_files = await source.list_files(BIN_DIR)
        if bin_files:
            return "shell"

        return "unknown"

    async def collect_scripts(self, source: ProjectSource) -> list[str]:
        """Script text from ``bin/``, conventional root scripts, and the doc file."""
        paths = [f"{BIN_DIR}/{name}" for name in (await source.list_files(BIN_DIR) or [])]
        paths.extend(ROOT_SCRIPTS)
        paths.append(DOC_FILE)

        scripts: list[str] = []
        for path in paths:
            content = await source.read_text(path)
            if content:
                scripts.append(content)
        return scripts

    async def collect_env_var_names(self, source: ProjectSource) -> set[str]:
        """Secret-shaped variable names mentioned in the doc file and env files."""
        names: set[str] = set()

        doc = await source.read_text(DOC_FILE)
        if doc:
            for match in ENV_NAME_PATTERN.finditer(doc):
                if is_secret_name(match.group(1)):
                    names.add(match.group(1))

        for env_file in ENV_FILES:
            content = await source.read_text(env_file)
            if not content:
                continue
            for line in content.splitlines():
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key = line.split("=", 1)[0].strip()
                if key.startswith("export "):
                    key = key[len("export ") :].strip()
                if ENV_KEY_PATTERN.match(key) and is_secret_name(key):
                    names.add(key)

        return names

    @staticmethod
    def resolve_base_image(project_type: str, detected_tools: set[str]) -> str:
        image = BASE_IMAGES.get(project_type, DEFAULT_IMAGE)
        if project_type != "npm" and detected_tools & NODE_TOOLS:
            image = NODE_IMAGE
        return image

    @staticmethod
    def build_setup_commands(requirements: ProjectRequirements, installers: list[str]) -> list[str]:
        commands: list[str] = []

        if requirements.apt_packages:
            commands.append(system_install_command(requirements.base_image, requirements.apt_packages))

        if requirements.global_packages:
            commands.append(f"npm install -g {' '.join(sorted(requirements.global_packages))}")

        commands.extend(installers)
        commands.extend(SETUP_COMMANDS.get(requirements.project_type, ()))
        return commands


def system_install_command(base_image: str, packages: set[str] | list[str]) -> str:
    """One combined system-package install for the image's package manager."""
    joined = " ".join(sorted(set(packages)))
    if "alpine" in base_image:
        return f"apk add --no-cache {joined}"
    return f"apt-get update -qq && apt-get install -y -qq {joined} && rm -rf /var/lib/apt/lists/*"


default_analyzer = RequirementAnalyzer()

_analyzers: dict[float, RequirementAnalyzer] = {default_analyzer.cache.ttl: default_analyzer}


def shared_analyzer(ttl: float) -> RequirementAnalyzer:
    """Process-wide analyzer whose cache keeps results for ``ttl`` seconds."""
    if ttl not in _analyzers:
        _analyzers[ttl] = RequirementAnalyzer(cache=AnalysisCache(ttl=ttl))
    return _analyzers[ttl]


async def analyze_project(project_path: str | os.PathLike[str]) -> ProjectRequirements:
    """Analyze a project with the process-wide cache."""
    return await default_analyzer.analyze(project_path)


def clear_analysis_cache() -> None:
    for analyzer in _analyzers.values():
        analyzer.cache.clear()
