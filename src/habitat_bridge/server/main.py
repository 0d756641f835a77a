# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/habitat_bridge

import argparse
from typing import Any, Sequence

import uvicorn

from habitat_bridge.config import BridgeSettings
from habitat_bridge.server.app import create_app
from habitat_bridge.server.logbuffer import LogBuffer
from habitat_bridge.utils.logger import logger


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="habitat-bridge-server", description="Habitat bridge protocol server")
    parser.add_argument("--port", type=int, help="Port to listen on")
    parser.add_argument("--host", help="Interface to bind")
    parser.add_argument("--workspace", help="Workspace directory relative paths resolve against")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    overrides: dict[str, Any] = {k: v for k, v in vars(args).items() if v is not None}
    settings = BridgeSettings(**overrides)

    buffer = LogBuffer(settings.log_buffer_size)
    buffer.install()
    logger.info(f"Starting habitat bridge on {settings.host}:{settings.port} (workspace {settings.workspace})")

    # uvicorn handles SIGINT/SIGTERM: stops accepting and drains open requests.
    uvicorn.run(create_app(settings, buffer=buffer), host=settings.host, port=settings.port)
    logger.info("Habitat bridge stopped")


if __name__ == "__main__":  # pragma: no cover
    main()
