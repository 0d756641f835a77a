# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/habitat_bridge

from datetime import timedelta
from typing import Any

import httpx
from loguru import logger
from mcp import ClientSession
from mcp.client.streamable_http import streamable_http_client
from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult, TextContent

from habitat_bridge.errors import AccessDeniedError, BridgeConnectionError, BridgeToolError
from habitat_bridge.models import BridgeHealth, DirectoryEntry, ExecResult, FileStat, GitFileStatus


def _root_cause(exc: BaseException) -> BaseException:
    # Transport failures surface wrapped in (possibly nested) task group exception groups.
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return exc


class BridgeClient:
    """Typed async client for a bridge server's ``/mcp`` endpoint.

    Every call opens its own protocol session over streamable HTTP, initializes
    it and invokes one tool; the bridge is stateless so nothing is kept between
    calls.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 8080,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initializes the client.

        Args:
            host: Bridge server host.
            port: Bridge server port.
            timeout: Per-request timeout in seconds.
            client: Optional httpx.AsyncClient for connection pooling or testing.
        """
        self.base_url = f"http://{host}:{port}"
        self.url = f"{self.base_url}/mcp"
        self.timeout = timeout
        self._internal_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "BridgeClient":
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._internal_client:
            await self._client.aclose()

    async def _invoke(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        async with streamable_http_client(self.url, http_client=self._client) as (read_stream, write_stream, _):
            async with ClientSession(
                read_stream, write_stream, read_timeout_seconds=timedelta(seconds=self.timeout)
            ) as session:
                await session.initialize()
                return await session.call_tool(name, arguments)

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> CallToolResult:
        """Invoke a tool and return the raw result, raising on tool errors.

        Raises:
            AccessDeniedError: The path was outside the bridge's allowed roots.
            BridgeToolError: Any other tool failure.
            BridgeConnectionError: Transport or protocol failure.
        """
        try:
            result = await self._invoke(name, arguments or {})
        except Exception as e:
            cause = _root_cause(e)
            if isinstance(cause, McpError):
                raise BridgeConnectionError(f"{name} failed ({cause.error.code}): {cause.error.message}") from cause
            raise BridgeConnectionError(f"Cannot reach bridge at {self.base_url}: {cause}") from cause

        if result.isError:
            structured = result.structuredContent or {}
            kind = str(structured.get("error", "tool_error"))
            message = str(structured.get("message") or _text(result))
            logger.debug(f"Tool {name} failed with {kind}: {message}")
            if kind == "access_denied":
                raise AccessDeniedError(name, message, structured=structured)
            raise BridgeToolError(name, message, kind=kind, structured=structured)
        return result

    async def _structured(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        return (await self.call_tool(name, arguments)).structuredContent or {}

    # Introspection

    async def health(self) -> BridgeHealth:
        return BridgeHealth.model_validate(await self._structured("bridge_health"))

    async def get_logs(self, lines: int | None = None) -> list[str]:
        data = await self._structured("bridge_logs", {"lines": lines} if lines else {})
        return [str(line) for line in data.get("lines", [])]

    # Filesystem

    async def read_file(self, path: str) -> str:
        return _text(await self.call_tool("fs_read", {"path": path}))

    async def write_file(self, path: str, content: str) -> None:
        await self.call_tool("fs_write", {"path": path, "content": content})

    async def list_directory(self, path: str | None = None) -> list[DirectoryEntry]:
        arguments = {"path": path} if path else {}
        data = await self._structured("fs_list", arguments)
        return [DirectoryEntry.model_validate(e) for e in data.get("entries", [])]

    async def file_exists(self, path: str) -> bool:
        data = await self._structured("fs_exists", {"path": path})
        return bool(data.get("exists"))

    async def stat(self, path: str) -> FileStat:
        return FileStat.model_validate(await self._structured("fs_stat", {"path": path}))

    # Execution

    async def execute(self, command: str, timeout: float | None = None, cwd: str | None = None) -> ExecResult:
        """Run a shell command in the sandbox.

        A non-zero exit is returned as a result, not raised.

        Raises:
            BridgeToolError: With ``kind == "timeout"`` when the command was killed.
        """
        arguments: dict[str, Any] = {"command": command}
        if timeout is not None:
            arguments["timeout"] = timeout
        if cwd is not None:
            arguments["cwd"] = cwd

        try:
            data = await self._structured("exec_run", arguments)
        except BridgeToolError as e:
            if e.kind != "nonzero_exit":
                raise
            data = e.structured
        return ExecResult(
            stdout=str(data.get("stdout", "")),
            stderr=data.get("stderr") or None,
            exit_code=int(data.get("exit_code", 0)),
        )

    # Git

    async def git_clone(self, repo_url: str, path: str | None = None) -> str:
        arguments: dict[str, Any] = {"repoUrl": repo_url}
        if path:
            arguments["path"] = path
        return _text(await self.call_tool("git_clone", arguments))

    async def git_status(self, path: str | None = None) -> list[GitFileStatus]:
        data = await self._structured("git_status", {"path": path} if path else {})
        return [GitFileStatus.model_validate(f) for f in data.get("files", [])]

    async def git_commit(self, message: str, path: str | None = None) -> str:
        arguments: dict[str, Any] = {"message": message}
        if path:
            arguments["path"] = path
        return _text(await self.call_tool("git_commit", arguments))

    async def git_push(self, path: str | None = None) -> str:
        return _text(await self.call_tool("git_push", {"path": path} if path else {}))


def _text(result: CallToolResult) -> str:
    return "".join(c.text for c in result.content if isinstance(c, TextContent))
