# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/habitat_bridge

import hashlib
import re
import shlex
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from habitat_bridge.analyzer import system_install_command
from habitat_bridge.config import HabitatConfig
from habitat_bridge.models import ProjectRequirements, SandboxRecipe, SkillRepo
from habitat_bridge.patterns import BINARY_PACKAGES, NODE_IMAGE
from habitat_bridge.secrets import SecretStore

WORKSPACE = "/workspace"
SOURCE_MOUNT_PATH = "/mnt/source"
TOKEN_NAME = "GITHUB_TOKEN"
BRIDGE_LOG_DIR = "/var/log/habitat"

# Packages the bridge server itself needs inside the sandbox.
BRIDGE_PREREQUISITES = ("git", "python3", "python3-venv", "python3-pip")
PYTHON_TOOLING = ("python3", "python3-venv", "python3-pip")

_MISSING_COMMAND = re.compile(r"(?:^|[\s:/])([A-Za-z0-9][\w.+-]*): (?:command )?not found", re.MULTILINE)
_MISSING_COMMAND_BASH = re.compile(r"command not found: ([\w.+-]+)")
_UNKNOWN_PACKAGE = re.compile(r"Unable to locate package ([\w.+-]+)")


class RecipeFixes(BaseModel):
    """Repairs accumulated across provisioning iterations."""

    extra_apt_packages: set[str] = Field(default_factory=set)
    removed_apt_packages: set[str] = Field(default_factory=set)
    extra_setup_commands: list[str] = Field(default_factory=list)
    base_image: str | None = None

    def is_empty(self) -> bool:
        return not (
            self.extra_apt_packages or self.removed_apt_packages or self.extra_setup_commands or self.base_image
        )


class Repair(BaseModel):
    """A single change derived from a failure signal."""

    reason: str
    add_apt_packages: set[str] = Field(default_factory=set)
    remove_apt_packages: set[str] = Field(default_factory=set)
    setup_commands: list[str] = Field(default_factory=list)
    base_image: str | None = None

    def apply(self, fixes: RecipeFixes) -> bool:
        """Merge into ``fixes``. Returns False when nothing changed."""
        before = fixes.model_copy(deep=True)
        fixes.extra_apt_packages |= self.add_apt_packages - fixes.removed_apt_packages
        fixes.removed_apt_packages |= self.remove_apt_packages
        fixes.extra_apt_packages -= self.remove_apt_packages
        for command in self.setup_commands:
            if command not in fixes.extra_setup_commands:
                fixes.extra_setup_commands.append(command)
        if self.base_image:
            fixes.base_image = self.base_image
        return fixes != before


def _excerpt(signal: str, limit: int = 300) -> str:
    text = signal.strip()
    return text if len(text) <= limit else "..." + text[-limit:]


def _missing_commands(signal: str) -> list[str]:
    names = [m.group(1) for m in _MISSING_COMMAND.finditer(signal)]
    names.extend(m.group(1) for m in _MISSING_COMMAND_BASH.finditer(signal))
    seen: list[str] = []
    for name in names:
        if name not in seen and name not in ("sh", "bash", "zsh", "line"):
            seen.append(name)
    return seen


def diagnose(signal: str) -> Repair | None:
    """Map a failure signal to a repair.

    Only evidence in the signal is used. Returns None when nothing matches, in
    which case the caller retries unchanged.
    """
    if not signal:
        logger.info("No failure signal to diagnose; retrying unchanged")
        return None

    unknown = _UNKNOWN_PACKAGE.findall(signal)
    if unknown:
        repair = Repair(reason=f"unavailable packages {sorted(set(unknown))}", remove_apt_packages=set(unknown))
        logger.info(f"Diagnosis: dropping {sorted(set(unknown))} (signal: {_excerpt(signal)!r})")
        return repair

    missing = _missing_commands(signal)
    if "npm" in missing or "node" in missing or "npx" in missing:
        logger.info(f"Diagnosis: node runtime missing, switching to {NODE_IMAGE} (signal: {_excerpt(signal)!r})")
        return Repair(reason="node runtime missing", base_image=NODE_IMAGE)

    if {"pip", "pip3", "python3", "python"} & set(missing):
        logger.info(f"Diagnosis: python tooling missing (signal: {_excerpt(signal)!r})")
        return Repair(reason="python tooling missing", add_apt_packages=set(PYTHON_TOOLING))

    packages = {BINARY_PACKAGES[name] for name in missing if name in BINARY_PACKAGES}
    if packages:
        logger.info(f"Diagnosis: adding {sorted(packages)} for missing {missing} (signal: {_excerpt(signal)!r})")
        return Repair(reason=f"missing commands {missing}", add_apt_packages=packages)

    logger.info(f"Diagnosis: no known repair (signal: {_excerpt(signal)!r})")
    return None


def cache_key(repository: str) -> str:
    """Stable short key scoping cache volumes to one repository."""
    return hashlib.sha1(repository.encode("utf-8")).hexdigest()[:12]


def is_local_reference(repository: str) -> bool:
    if repository.startswith(("http://", "https://", "git@", "ssh://", "git://")):
        return False
    return Path(repository).expanduser().exists()


class RecipeBuilder:
    """Turns requirements plus accumulated fixes into a bootable recipe."""

    def __init__(self, config: HabitatConfig):
        self.config = config

    def build(
        self,
        requirements: ProjectRequirements,
        fixes: RecipeFixes | None,
        repository: str,
        port: int,
        secrets: SecretStore | None = None,
    ) -> SandboxRecipe:
        """Build a recipe.

        Args:
            requirements: Analysis result for the repository.
            fixes: Repairs from earlier failed iterations.
            repository: Remote URL or local path of the repository.
            port: Port the bridge server listens on inside and outside the sandbox.
            secrets: Lookup for the environment variable values.

        Returns:
            SandboxRecipe: The recipe for this iteration.
        """
        fixes = fixes or RecipeFixes()
        base_image = fixes.base_image or requirements.base_image

        environment = self._environment(requirements, secrets)
        environment.setdefault("HABITAT_LOG_DIR", BRIDGE_LOG_DIR)

        packages = set(requirements.apt_packages) | fixes.extra_apt_packages
        for skill in requirements.skill_repos:
            packages.update(skill.apt_packages)
        if not base_image.startswith("python"):
            packages.update(BRIDGE_PREREQUISITES)
        else:
            packages.add("git")
        packages -= fixes.removed_apt_packages

        commands: list[str] = []
        if packages:
            commands.append(system_install_command(base_image, packages))
        commands.append(self.config.bridge_install_command)

        source_mount: str | None = None
        if is_local_reference(repository):
            source_mount = str(Path(repository).expanduser().resolve())
            commands.append(self._copy_local_command())
        else:
            commands.append(self._clone_command(repository, TOKEN_NAME in environment))

        for skill in requirements.skill_repos:
            commands.extend(self._skill_commands(skill, TOKEN_NAME in environment))

        # Analyzer's system install is superseded by the combined one above.
        superseded = (
            system_install_command(requirements.base_image, requirements.apt_packages)
            if requirements.apt_packages
            else None
        )
        for command in requirements.setup_commands:
            if command == superseded:
                continue
            commands.append(f"(cd {WORKSPACE} && {command})")
        commands.extend(fixes.extra_setup_commands)

        recipe = SandboxRecipe(
            base_image=base_image,
            repository=repository,
            port=port,
            environment=environment,
            cache_volumes=list(requirements.cache_volumes),
            setup_commands=commands,
            skill_repos=list(requirements.skill_repos),
            entrypoint=f"{self.config.bridge_executable} --port {port}",
            source_mount=source_mount,
            cache_key=cache_key(repository),
        )
        logger.debug(f"Built recipe: {recipe.redacted()}")
        return recipe

    def _environment(self, requirements: ProjectRequirements, secrets: SecretStore | None) -> dict[str, str]:
        environment: dict[str, str] = {}
        names = set(requirements.env_var_names) | {TOKEN_NAME}
        for name in sorted(names):
            value = secrets.get_secret(name) if secrets else None
            if name == TOKEN_NAME and not value:
                value = self.config.github_token
            if value:
                environment[name] = value
            elif name in requirements.env_var_names:
                logger.warning(f"Secret {name} not available; sandbox will start without it")
        return environment

    @staticmethod
    def _git_auth_prefix(with_token: bool) -> str:
        if not with_token:
            return ""
        header = 'http.https://github.com/.extraheader=Authorization: Basic $(printf "x-access-token:%s" "$GITHUB_TOKEN" | base64 | tr -d "\\n")'
        return f'git -c "{header}" '

    def _clone_command(self, repository: str, with_token: bool) -> str:
        # Cache volumes may already populate /workspace, so clone aside and copy in.
        git = self._git_auth_prefix(with_token) or "git "
        return (
            f"if [ ! -d {WORKSPACE}/.git ]; then "
            f"rm -rf /tmp/habitat-src && {git}clone --depth 1 {shlex.quote(repository)} /tmp/habitat-src"
            f" && mkdir -p {WORKSPACE} && cp -a /tmp/habitat-src/. {WORKSPACE}/ && rm -rf /tmp/habitat-src; fi"
        )

    @staticmethod
    def _copy_local_command() -> str:
        return (
            f"if [ ! -d {WORKSPACE}/.git ]; then mkdir -p {WORKSPACE} && "
            f"if [ -d {SOURCE_MOUNT_PATH}/.git ]; then "
            f"rm -rf /tmp/habitat-src && git clone file://{SOURCE_MOUNT_PATH} /tmp/habitat-src"
            f" && cp -a /tmp/habitat-src/. {WORKSPACE}/ && rm -rf /tmp/habitat-src; "
            f"else cp -a {SOURCE_MOUNT_PATH}/. {WORKSPACE}/; fi; fi"
        )

    def _skill_commands(self, skill: SkillRepo, with_token: bool) -> list[str]:
        git = self._git_auth_prefix(with_token) or "git "
        path = shlex.quote(skill.sandbox_path)
        commands = [
            f"if [ ! -d {path}/.git ]; then rm -rf {path} && "
            f"{git}clone --depth 1 {shlex.quote(skill.source_location)} {path}; fi"
        ]
        commands.extend(f"(cd {path} && {command})" for command in skill.setup_commands)
        return commands
