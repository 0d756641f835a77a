from typing import Any
from unittest.mock import patch

from habitat_bridge.server.main import main, parse_args


def test_parse_args() -> None:
    args = parse_args(["--port", "8123", "--workspace", "/srv/ws"])
    assert args.port == 8123
    assert args.workspace == "/srv/ws"
    assert args.host is None


def test_main_runs_uvicorn() -> None:
    with (
        patch("habitat_bridge.server.main.uvicorn.run") as mock_run,
        patch("habitat_bridge.server.main.LogBuffer") as mock_buffer_cls,
        patch.dict("os.environ", {}, clear=True),
    ):
        main(["--port", "9001"])

    mock_buffer_cls.return_value.install.assert_called_once()
    args: Any = mock_run.call_args
    assert args.kwargs["port"] == 9001
    assert args.kwargs["host"] == "0.0.0.0"
    assert callable(args.args[0])


def test_main_sizes_log_buffer_from_settings() -> None:
    with (
        patch("habitat_bridge.server.main.uvicorn.run"),
        patch("habitat_bridge.server.main.create_app") as mock_create_app,
        patch("habitat_bridge.server.main.LogBuffer") as mock_buffer_cls,
        patch.dict("os.environ", {"HABITAT_BRIDGE_LOG_BUFFER_SIZE": "25"}, clear=True),
    ):
        main([])

    mock_buffer_cls.assert_called_once_with(25)
    assert mock_create_app.call_args.kwargs["buffer"] is mock_buffer_cls.return_value
