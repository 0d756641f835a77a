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
import base64
import json
import os
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import aiofiles  # type: ignore[import-untyped]
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from habitat_bridge.config import BridgeSettings
from habitat_bridge.models import BridgeHealth, DirectoryEntry, FileStat, GitFileStatus
from habitat_bridge.server.logbuffer import LogBuffer


class ToolFailure(Exception):
    """A tool could not complete. Reported to the caller as an error result.

    Attributes:
        kind: Machine-readable error kind, e.g. ``access_denied``.
        data: Extra fields merged into the structured error payload.
    """

    def __init__(self, kind: str, message: str, **data: Any):
        self.kind = kind
        self.message = message
        self.data = data
        super().__init__(message)


@dataclass
class ToolOutput:
    text: str
    structured: dict[str, Any] = field(default_factory=dict)


class ToolInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NoInput(ToolInput):
    pass


class GitCloneInput(ToolInput):
    repo_url: str = Field(alias="repoUrl", min_length=1)
    path: str | None = None


class GitPathInput(ToolInput):
    path: str | None = None


class GitCommitInput(ToolInput):
    message: str = Field(min_length=1)
    path: str | None = None


class PathInput(ToolInput):
    path: str = Field(min_length=1)


class OptionalPathInput(ToolInput):
    path: str | None = None


class WriteInput(ToolInput):
    path: str = Field(min_length=1)
    content: str


class ExecInput(ToolInput):
    command: str = Field(min_length=1)
    timeout: float | None = Field(default=None, gt=0)
    cwd: str | None = None


class LogsInput(ToolInput):
    lines: int | None = Field(default=None, ge=1)


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat()


async def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    await proc.wait()


class BridgeTools:
    """
    Implementations of the fixed bridge tool surface.

    Holds only immutable configuration; every call is independent. Paths are
    confined to the configured allowed roots.
    """

    def __init__(self, settings: BridgeSettings, buffer: LogBuffer, started_at: float | None = None):
        self.settings = settings
        self.buffer = buffer
        self.started_at = started_at if started_at is not None else time.monotonic()
        self.workspace = os.path.realpath(settings.workspace)
        self._roots = [os.path.realpath(root) for root in settings.allowed_roots]

    def resolve_path(self, path: str | None) -> str:
        """Absolute, symlink-resolved path, or ``access_denied`` if outside the allowed roots."""
        raw = path or self.settings.workspace
        candidate = raw if os.path.isabs(raw) else os.path.join(self.settings.workspace, raw)
        real = os.path.realpath(candidate)
        for root in self._roots:
            if real == root or real.startswith(root.rstrip("/") + "/"):
                return real
        logger.warning(f"Access denied for path {raw}")
        raise ToolFailure("access_denied", f"Access denied: {raw} is outside the allowed directories")

    # Git

    def _git_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        token = os.environ.get(self.settings.token_env)
        if token:
            basic = base64.b64encode(f"x-access-token:{token}".encode()).decode()
            env.update(
                {
                    "GIT_CONFIG_COUNT": "1",
                    "GIT_CONFIG_KEY_0": "http.https://github.com/.extraheader",
                    "GIT_CONFIG_VALUE_0": f"Authorization: Basic {basic}",
                }
            )
        return env

    async def _git(self, args: list[str], cwd: str) -> str:
        logger.info(f"git {args[0]} in {cwd}")
        try:
            proc = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=cwd,
                env=self._git_env(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise ToolFailure("not_found", f"Cannot run git in {cwd}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.settings.git_timeout)
        except asyncio.TimeoutError:
            await _kill_group(proc)
            raise ToolFailure("timeout", f"git {args[0]} timed out after {self.settings.git_timeout}s") from None

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            raise ToolFailure("git_error", (err or out).strip() or f"git {args[0]} failed", exit_code=proc.returncode)
        return out + err

    async def git_clone(self, args: GitCloneInput) -> ToolOutput:
        target = self.resolve_path(args.path)
        parent = os.path.dirname(target)
        await asyncio.to_thread(os.makedirs, parent, exist_ok=True)
        output = await self._git(["clone", "--depth", "1", args.repo_url, target], cwd=parent)
        return ToolOutput(f"Cloned {args.repo_url} into {target}\n{output}".rstrip(), {"path": target})

    async def git_status(self, args: GitPathInput) -> ToolOutput:
        cwd = self.resolve_path(args.path)
        output = await self._git(["status", "--porcelain"], cwd=cwd)
        files = [
            GitFileStatus(status=line[:2].strip(), path=line[3:]).model_dump()
            for line in output.splitlines()
            if len(line) > 3
        ]
        text = output if files else "Working tree clean"
        return ToolOutput(text, {"path": cwd, "clean": not files, "files": files})

    async def git_commit(self, args: GitCommitInput) -> ToolOutput:
        cwd = self.resolve_path(args.path)
        await self._git(["add", "-A"], cwd=cwd)
        output = await self._git(["commit", "-m", args.message], cwd=cwd)
        return ToolOutput(output.strip(), {"path": cwd})

    async def git_push(self, args: GitPathInput) -> ToolOutput:
        cwd = self.resolve_path(args.path)
        output = await self._git(["push"], cwd=cwd)
        return ToolOutput(output.strip() or "Pushed", {"path": cwd})

    # Filesystem

    async def fs_read(self, args: PathInput) -> ToolOutput:
        path = self.resolve_path(args.path)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
                content: str = await f.read()
        except FileNotFoundError:
            raise ToolFailure("not_found", f"File not found: {args.path}") from None
        except IsADirectoryError:
            raise ToolFailure("is_directory", f"Is a directory: {args.path}") from None
        return ToolOutput(content, {"path": path, "size": len(content.encode("utf-8"))})

    async def fs_write(self, args: WriteInput) -> ToolOutput:
        path = self.resolve_path(args.path)
        await asyncio.to_thread(os.makedirs, os.path.dirname(path), exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(args.content)
        size = len(args.content.encode("utf-8"))
        logger.info(f"Wrote {size} bytes to {path}")
        return ToolOutput(f"Wrote {size} bytes to {path}", {"path": path, "bytes": size})

    async def fs_list(self, args: OptionalPathInput) -> ToolOutput:
        path = self.resolve_path(args.path)

        def _scan() -> list[dict[str, Any]]:
            with os.scandir(path) as it:
                return [
                    DirectoryEntry(name=e.name, type="directory" if e.is_dir() else "file").model_dump()
                    for e in sorted(it, key=lambda e: e.name)
                ]

        try:
            entries = await asyncio.to_thread(_scan)
        except FileNotFoundError:
            raise ToolFailure("not_found", f"Directory not found: {args.path or path}") from None
        except NotADirectoryError:
            raise ToolFailure("not_a_directory", f"Not a directory: {args.path}") from None
        return ToolOutput(json.dumps(entries, indent=2), {"path": path, "entries": entries})

    async def fs_exists(self, args: PathInput) -> ToolOutput:
        path = self.resolve_path(args.path)
        exists = await asyncio.to_thread(os.path.exists, path)
        return ToolOutput("true" if exists else "false", {"path": path, "exists": exists})

    async def fs_stat(self, args: PathInput) -> ToolOutput:
        path = self.resolve_path(args.path)
        try:
            st = await asyncio.to_thread(os.stat, path)
        except FileNotFoundError:
            raise ToolFailure("not_found", f"Path not found: {args.path}") from None
        is_dir = os.path.isdir(path)
        stat = FileStat(
            path=path,
            size=st.st_size,
            is_directory=is_dir,
            is_file=not is_dir and os.path.isfile(path),
            modified=_iso(st.st_mtime),
            created=_iso(getattr(st, "st_birthtime", st.st_ctime)),
        ).model_dump()
        return ToolOutput(json.dumps(stat, indent=2), stat)

    # Execution

    async def exec_run(self, args: ExecInput) -> ToolOutput:
        """Run a shell command in its own process group.

        On timeout the whole group is killed so no children outlive the call.
        A non-zero exit is reported as an error carrying the full output.
        """
        cwd = self.resolve_path(args.cwd) if args.cwd else self.workspace
        timeout = args.timeout or self.settings.exec_timeout
        logger.info(f"exec_run in {cwd} (timeout {timeout}s): {args.command}")

        try:
            proc = await asyncio.create_subprocess_shell(
                args.command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise ToolFailure("not_found", f"Working directory not found: {cwd}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            await _kill_group(proc)
            logger.warning(f"exec_run timed out after {timeout}s: {args.command}")
            raise ToolFailure(
                "timeout", f"Command timed out after {timeout}s", timed_out=True, stdout="", stderr=""
            ) from None

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        text = out
        if err:
            text = f"{text}\nSTDERR:\n{err}" if text else f"STDERR:\n{err}"

        result = {"exit_code": proc.returncode, "stdout": out, "stderr": err, "timed_out": False}
        if proc.returncode != 0:
            raise ToolFailure("nonzero_exit", f"Exit code: {proc.returncode}\n{text}".rstrip(), **result)
        return ToolOutput(text, result)

    # Introspection

    async def bridge_health(self, args: NoInput) -> ToolOutput:
        health = BridgeHealth(
            status="healthy",
            uptime=round(time.monotonic() - self.started_at, 3),
            workspace=self.settings.workspace,
            timestamp=datetime.now(timezone.utc).isoformat(),
        ).model_dump()
        return ToolOutput(json.dumps(health), health)

    async def bridge_logs(self, args: LogsInput) -> ToolOutput:
        lines = self.buffer.tail(args.lines or self.settings.default_log_lines)
        return ToolOutput("\n".join(lines), {"lines": lines})


# name, description, input model; the handler is the BridgeTools method of the same name
TOOL_TABLE: tuple[tuple[str, str, type[ToolInput]], ...] = (
    ("git_clone", "Clone a git repository into the workspace.", GitCloneInput),
    ("git_status", "Show the working tree status of a repository.", GitPathInput),
    ("git_commit", "Stage all changes and commit them.", GitCommitInput),
    ("git_push", "Push the current branch to its remote.", GitPathInput),
    ("fs_read", "Read a text file.", PathInput),
    ("fs_write", "Write a text file, creating parent directories.", WriteInput),
    ("fs_list", "List a directory.", OptionalPathInput),
    ("fs_exists", "Check whether a path exists.", PathInput),
    ("fs_stat", "Size, type and timestamps of a path.", PathInput),
    ("exec_run", "Run a shell command with a timeout in seconds.", ExecInput),
    ("bridge_health", "Bridge server health.", NoInput),
    ("bridge_logs", "Recent bridge server log lines.", LogsInput),
)
