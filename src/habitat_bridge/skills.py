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
Skill/plugin resolution.

Scripts that drive third-party plugins reference them through the plugin
cache, e.g. ``~/.claude/plugins/cache/<org>/<plugin>/<version>/bin/tool``.
Each reference is mapped to a git source that gets cloned into the sandbox.
"""

import re
from pathlib import Path
from typing import Iterable

from loguru import logger
from pydantic import BaseModel, Field

from habitat_bridge.models import SkillRepo
from habitat_bridge.patterns import KNOWN_SKILLS

GITHUB_BASE = "https://github.com"

_OWNER_NAME = re.compile(r"^[^/\s]+/[^/\s]+$")

# Home directory spellings that expand to the same plugin cache.
_HOME_FORMS = (r"~", r"\$HOME", r"\$\{HOME\}", r"/Users/[^/\s]+", r"/home/[^/\s]+", r"/root")


def _plugin_pattern() -> re.Pattern[str]:
    homes = list(_HOME_FORMS)
    current = str(Path.home()).rstrip("/")
    if current:
        homes.append(re.escape(current))
    return re.compile(
        r"(?:" + "|".join(homes) + r")/\.claude/plugins/cache/"
        r"(?P<org>[^/\s\"']+)/(?P<plugin>[^/\s\"']+)/"
        r"(?:[^/\s\"']+/)*[^/\s\"']+"
    )


PLUGIN_REFERENCE = _plugin_pattern()


class SkillDetection(BaseModel):
    """Plugins found in a set of scripts and what they need."""

    skill_repos: list[SkillRepo] = Field(default_factory=list)
    apt_packages: set[str] = Field(default_factory=set)
    env_var_names: set[str] = Field(default_factory=set)


def normalize_source(reference: str) -> str:
    """Normalize a plugin source to something ``git clone`` accepts.

    Full URLs and SSH remotes are returned unchanged. A bare ``owner/name``
    expands to a GitHub URL. Anything else is returned stripped.
    """
    ref = reference.strip()
    if ref.startswith(("http://", "https://", "git@")):
        return ref
    if _OWNER_NAME.match(ref):
        return f"{GITHUB_BASE}/{ref}"
    return ref


def skill_name(reference: str) -> str:
    """Last path segment of a reference, without a ``.git`` suffix."""
    ref = reference.strip().rstrip("/")
    tail = re.split(r"[/:]", ref)[-1] if ref else ref
    if tail.endswith(".git"):
        tail = tail[: -len(".git")]
    return tail or ref


def resolve(name_or_reference: str) -> SkillRepo:
    """
    Resolve a plugin name or source reference to a SkillRepo.
    Never raises: unknown names fall back to using the reference as the source.
    """
    known = KNOWN_SKILLS.get(name_or_reference)
    if known:
        return SkillRepo(
            name=name_or_reference,
            source_location=normalize_source(known.source),
            sandbox_path=known.sandbox_path,
            apt_packages=list(known.apt_packages),
            setup_commands=list(known.setup_commands),
        )

    name = skill_name(name_or_reference)
    known = KNOWN_SKILLS.get(name)
    if known:
        return resolve(name)

    return SkillRepo(
        name=name,
        source_location=normalize_source(name_or_reference),
        sandbox_path=f"/opt/{name}",
    )


def find_references(scripts: Iterable[str]) -> list[str]:
    """Return unique ``org/plugin`` references in first-seen order."""
    seen: dict[str, None] = {}
    for script in scripts:
        for match in PLUGIN_REFERENCE.finditer(script):
            seen.setdefault(f"{match.group('org')}/{match.group('plugin')}", None)
    return list(seen)


def detect_references(scripts: Iterable[str]) -> SkillDetection:
    """Scan scripts for plugin cache references and resolve each one once."""
    detection = SkillDetection()
    seen_names: set[str] = set()

    for reference in find_references(scripts):
        name = skill_name(reference)
        if name in seen_names:
            continue
        seen_names.add(name)

        repo = resolve(name) if name in KNOWN_SKILLS else resolve(reference)
        logger.debug(f"Resolved plugin reference {reference} -> {repo.source_location}")
        detection.skill_repos.append(repo)
        detection.apt_packages.update(repo.apt_packages)

    return detection
