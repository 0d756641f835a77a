# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/habitat_bridge

import time
from typing import Any

import anyio
from anyio.abc import TaskStatus
from loguru import logger
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import StreamableHTTPServerTransport
from mcp.types import CallToolResult, TextContent, Tool
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.responses import Response
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from habitat_bridge import __version__
from habitat_bridge.config import BridgeSettings
from habitat_bridge.server.logbuffer import LogBuffer
from habitat_bridge.server.tools import TOOL_TABLE, BridgeTools, ToolFailure, ToolInput

SERVER_NAME = "habitat-bridge"

TOOLS: dict[str, tuple[str, type[ToolInput]]] = {name: (description, model) for name, description, model in TOOL_TABLE}


def describe_tools() -> list[Tool]:
    return [
        Tool(name=name, description=description, inputSchema=model.model_json_schema(by_alias=True))
        for name, (description, model) in TOOLS.items()
    ]


def failure_result(kind: str, message: str, **data: Any) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=message)],
        structuredContent={"error": kind, "message": message, **data},
        isError=True,
    )


async def run_tool(tools: Any, name: str, arguments: dict[str, Any]) -> CallToolResult:
    """
    Validates arguments and runs one tool against ``tools``.

    Every failure, including unknown tools and bad arguments, comes back as an
    error result carrying ``{"error": <kind>, "message": ...}``.
    """
    entry = TOOLS.get(name)
    if entry is None:
        return failure_result("unknown_tool", f"Unknown tool: {name}")

    _, input_model = entry
    try:
        args = input_model.model_validate(arguments)
    except ValidationError as e:
        return failure_result("invalid_arguments", f"Invalid arguments for {name}: {e}")

    try:
        output = await getattr(tools, name)(args)
    except ToolFailure as e:
        logger.debug(f"Tool {name} failed with {e.kind}: {e.message}")
        return failure_result(e.kind, e.message, **e.data)
    except Exception as e:
        logger.exception(f"Tool {name} raised unexpectedly")
        return failure_result("internal_error", str(e))

    return CallToolResult(
        content=[TextContent(type="text", text=output.text)],
        structuredContent=output.structured,
        isError=False,
    )


def build_server(tools: BridgeTools) -> Server[Any, Any]:
    server: Server[Any, Any] = Server(SERVER_NAME, version=__version__)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return describe_tools()

    # Arguments are validated by the pydantic input models so failures keep their error kind.
    @server.call_tool(validate_input=False)
    async def call_tool(name: str, arguments: dict[str, Any]) -> CallToolResult:
        return await run_tool(tools, name, arguments)

    return server


class BridgeEndpoint:
    """
    ASGI endpoint for ``/mcp``.

    Each request gets a fresh protocol server and a fresh stateless transport
    that are torn down once the response is sent, so nothing survives between
    requests. ``DELETE`` is answered directly since there is no session to end.
    """

    def __init__(self, tools: BridgeTools):
        self.tools = tools

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["method"] == "DELETE":
            await Response(status_code=200)(scope, receive, send)
            return

        server = build_server(self.tools)
        transport = StreamableHTTPServerTransport(mcp_session_id=None, is_json_response_enabled=True)

        async def serve(*, task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED) -> None:
            async with transport.connect() as (read_stream, write_stream):
                task_status.started()
                await server.run(read_stream, write_stream, server.create_initialization_options(), stateless=True)

        async with anyio.create_task_group() as tg:
            await tg.start(serve)
            try:
                await transport.handle_request(scope, receive, send)
            finally:
                with anyio.CancelScope(shield=True):
                    await transport.terminate()
                tg.cancel_scope.cancel()


def create_app(settings: BridgeSettings | None = None, buffer: LogBuffer | None = None) -> Starlette:
    """Starlette app serving the bridge protocol at ``/mcp``."""
    settings = settings or BridgeSettings()
    if buffer is None:
        buffer = LogBuffer(settings.log_buffer_size)
        buffer.install()
    tools = BridgeTools(settings, buffer, started_at=time.monotonic())
    return Starlette(routes=[Route("/mcp", BridgeEndpoint(tools), methods=["POST", "DELETE"])])
