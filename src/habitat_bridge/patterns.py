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
Static tables used by the requirement analyzer and skill resolver.

Everything here is immutable and loaded once at import time. The analyzer
and resolver treat these tables as pure inputs.
"""

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from habitat_bridge.models import CacheVolume, ProjectType


@dataclass(frozen=True)
class ToolPattern:
    """Maps a script substring to the tool and packages it implies."""

    pattern: re.Pattern[str]
    tool: str
    apt_packages: tuple[str, ...] = ()
    global_packages: tuple[str, ...] = ()
    env_vars: tuple[str, ...] = ()
    installer: str | None = None

    def matches(self, script: str) -> bool:
        return self.pattern.search(script) is not None


@dataclass(frozen=True)
class KnownSkill:
    source: str
    sandbox_path: str
    apt_packages: tuple[str, ...] = ()
    setup_commands: tuple[str, ...] = ()


# Checked in order; the first ecosystem with a marker present wins.
PROJECT_TYPE_MARKERS: tuple[tuple[ProjectType, tuple[str, ...]], ...] = (
    ("npm", ("package.json", "pnpm-lock.yaml", "yarn.lock")),
    ("pip", ("requirements.txt", "setup.py", "pyproject.toml", "Pipfile")),
    ("cargo", ("Cargo.toml",)),
    ("go", ("go.mod", "go.sum")),
    ("maven", ("pom.xml",)),
    ("gradle", ("build.gradle", "build.gradle.kts", "settings.gradle")),
)

SHELL_MARKERS: tuple[str, ...] = ("run.sh", "setup.sh", "Makefile", "makefile")
ROOT_SCRIPTS: tuple[str, ...] = ("run.sh", "setup.sh", "start.sh", "build.sh", "deploy.sh")
BIN_DIR = "bin"
DOC_FILE = "CLAUDE.md"
ENV_FILES: tuple[str, ...] = (".env", ".env.example", ".env.local")

NODE_IMAGE = "node:20"
DEFAULT_IMAGE = "ubuntu:22.04"

BASE_IMAGES: Mapping[str, str] = MappingProxyType(
    {
        "npm": NODE_IMAGE,
        "pip": "python:3.11",
        "cargo": "rust:1.75",
        "go": "golang:1.21",
        "maven": "maven:3.9-eclipse-temurin-17",
        "gradle": "gradle:8.5-jdk17",
        "shell": DEFAULT_IMAGE,
        "unknown": DEFAULT_IMAGE,
    }
)

SETUP_COMMANDS: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        "npm": ("npm install",),
        "pip": ("pip install -r requirements.txt || pip install -e . || true",),
        "cargo": ("cargo fetch",),
        "go": ("go mod download",),
        "maven": ("mvn dependency:resolve",),
        "gradle": ("gradle dependencies",),
        "shell": (),
        "unknown": (),
    }
)

CACHE_VOLUMES: Mapping[str, tuple[CacheVolume, ...]] = MappingProxyType(
    {
        "npm": (CacheVolume(name="npm-cache", mount_path="/root/.npm"),),
        "pip": (CacheVolume(name="pip-cache", mount_path="/root/.cache/pip"),),
        "cargo": (
            CacheVolume(name="cargo-registry", mount_path="/usr/local/cargo/registry"),
            CacheVolume(name="cargo-target", mount_path="/workspace/target"),
        ),
        "go": (
            CacheVolume(name="go-mod-cache", mount_path="/go/pkg/mod"),
            CacheVolume(name="go-build-cache", mount_path="/root/.cache/go-build"),
        ),
        "maven": (CacheVolume(name="maven-repo", mount_path="/root/.m2/repository"),),
        "gradle": (CacheVolume(name="gradle-cache", mount_path="/root/.gradle"),),
        "shell": (),
        "unknown": (),
    }
)

APT_CACHE_VOLUME = CacheVolume(name="apt-cache", mount_path="/var/cache/apt")

_ONEPASSWORD_INSTALL = (
    "apt-get update -qq && apt-get install -y -qq curl gpg"
    " && curl -sS https://downloads.1password.com/linux/keys/1password.asc"
    " | gpg --dearmor --yes --output /usr/share/keyrings/1password-archive-keyring.gpg"
    ' && echo "deb [arch=$(dpkg --print-architecture)'
    " signed-by=/usr/share/keyrings/1password-archive-keyring.gpg]"
    ' https://downloads.1password.com/linux/debian/$(dpkg --print-architecture) stable main"'
    " > /etc/apt/sources.list.d/1password.list"
    " && apt-get update -qq && apt-get install -y -qq 1password-cli"
)

TOOL_PATTERNS: tuple[ToolPattern, ...] = (
    ToolPattern(re.compile(r"\b(magick|convert)\b"), "imagemagick", apt_packages=("imagemagick",)),
    ToolPattern(
        re.compile(r"\bclaude\s+(--model|-p|--print)\b"),
        "claude-cli",
        global_packages=("@anthropic-ai/claude-code",),
        env_vars=("ANTHROPIC_API_KEY",),
    ),
    ToolPattern(re.compile(r"\bnpx\s+"), "npx"),
    ToolPattern(re.compile(r"\bjq\b"), "jq", apt_packages=("jq",)),
    ToolPattern(re.compile(r"\bcurl\b"), "curl", apt_packages=("curl",)),
    ToolPattern(re.compile(r"\bwget\b"), "wget", apt_packages=("wget",)),
    ToolPattern(re.compile(r"\bgit\b"), "git", apt_packages=("git",)),
    ToolPattern(re.compile(r"\bpython3?\b"), "python", apt_packages=("python3",)),
    ToolPattern(re.compile(r"\bffmpeg\b"), "ffmpeg", apt_packages=("ffmpeg",)),
    ToolPattern(re.compile(r"\bsqlite3\b"), "sqlite3", apt_packages=("sqlite3",)),
    ToolPattern(re.compile(r"\b(chrome|chromium)\b"), "chrome", apt_packages=("chromium",)),
    ToolPattern(
        re.compile(r"\bop\s+(read|signin|vault)\b"),
        "1password-cli",
        env_vars=("OP_SERVICE_ACCOUNT_TOKEN",),
        installer=_ONEPASSWORD_INSTALL,
    ),
)

# Tools that need a node runtime regardless of project type.
NODE_TOOLS: frozenset[str] = frozenset({"npx", "claude-cli"})

ENV_NAME_PATTERN = re.compile(r"\b([A-Z][A-Z0-9]*(?:_[A-Z0-9]+)+)\b")
ENV_KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")

SECRET_SUFFIXES: tuple[str, ...] = ("_KEY", "_TOKEN", "_SECRET", "_URL")
SECRET_PREFIXES: tuple[str, ...] = (
    "ANTHROPIC_",
    "OPENAI_",
    "GOOGLE_",
    "GEMINI_",
    "GITHUB_",
    "TAVILY_",
    "AWS_",
)

KNOWN_SKILLS: Mapping[str, KnownSkill] = MappingProxyType(
    {
        "chrome-driver": KnownSkill(
            source="The-Focus-AI/chrome-driver",
            sandbox_path="/opt/chrome-driver",
            apt_packages=("chromium", "perl", "libwww-perl", "libjson-perl"),
        ),
        "nano-banana": KnownSkill(
            source="The-Focus-AI/nano-banana-cli",
            sandbox_path="/opt/nano-banana",
        ),
    }
)

# Binary name -> apt package, consulted when a boot fails on a missing command.
BINARY_PACKAGES: Mapping[str, str] = MappingProxyType(
    {
        "convert": "imagemagick",
        "magick": "imagemagick",
        "jq": "jq",
        "curl": "curl",
        "wget": "wget",
        "git": "git",
        "python": "python3",
        "python3": "python3",
        "pip": "python3-pip",
        "pip3": "python3-pip",
        "ffmpeg": "ffmpeg",
        "sqlite3": "sqlite3",
        "chromium": "chromium",
        "perl": "perl",
        "make": "make",
        "gcc": "build-essential",
        "g++": "build-essential",
        "unzip": "unzip",
        "zip": "zip",
        "ssh": "openssh-client",
        "gpg": "gnupg",
        "rsync": "rsync",
    }
)


def is_secret_name(name: str) -> bool:
    """True when ``name`` looks like a secret rather than an ordinary constant."""
    return name.endswith(SECRET_SUFFIXES) or name.startswith(SECRET_PREFIXES)
