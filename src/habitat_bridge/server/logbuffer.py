import threading
from collections import deque
from typing import Any

from loguru import logger


class LogBuffer:
    """
    Fixed-capacity ring buffer of formatted log lines.

    Installed as a loguru sink so ``bridge_logs`` can return recent server
    activity. Oldest entries are evicted once capacity is reached.
    """

    def __init__(self, capacity: int = 1000):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._entries: deque[str] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._sink_id: int | None = None

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def append(self, line: str) -> None:
        with self._lock:
            self._entries.append(line)

    def tail(self, lines: int) -> list[str]:
        """The most recent ``lines`` entries, oldest first."""
        if lines <= 0:
            return []
        with self._lock:
            entries = list(self._entries)
        return entries[-lines:]

    def write(self, message: Any) -> None:
        # loguru passes a str subclass with a trailing newline
        self.append(str(message).rstrip("\n"))

    def install(self, level: str = "DEBUG") -> int:
        if self._sink_id is None:
            self._sink_id = logger.add(
                self.write,
                level=level,
                format="{time:YYYY-MM-DD HH:mm:ss.SSS} [{level}] {message}",
            )
        return self._sink_id

    def uninstall(self) -> None:
        if self._sink_id is not None:
            try:
                logger.remove(self._sink_id)
            except ValueError:
                # Already removed by a global logger.remove()
                pass
            self._sink_id = None
