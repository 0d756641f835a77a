import socket
import threading

from loguru import logger


class PortAllocator:
    """
    Hands out host ports for bridge servers from a fixed range.

    A port is only handed out if nothing else is listening on it. Reservations
    are held until ``release`` is called.
    """

    def __init__(self, start: int = 8080, end: int = 8999, host: str = "127.0.0.1"):
        if start > end:
            raise ValueError(f"Invalid port range {start}-{end}")
        self.start = start
        self.end = end
        self.host = host
        self._reserved: set[int] = set()
        self._next = start
        self._lock = threading.Lock()

    def _is_free(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((self.host, port))
            except OSError:
                return False
        return True

    def allocate(self) -> int:
        with self._lock:
            span = self.end - self.start + 1
            for offset in range(span):
                port = self.start + (self._next - self.start + offset) % span
                if port in self._reserved or not self._is_free(port):
                    continue
                self._reserved.add(port)
                self._next = port + 1 if port < self.end else self.start
                logger.debug(f"Allocated port {port}")
                return port
        raise RuntimeError(f"No free ports in range {self.start}-{self.end}")

    def reserve(self, port: int) -> None:
        """Mark a port as taken by a sandbox adopted after a restart."""
        with self._lock:
            self._reserved.add(port)
        logger.debug(f"Reserved port {port}")

    def release(self, port: int) -> None:
        with self._lock:
            self._reserved.discard(port)
        logger.debug(f"Released port {port}")

    @property
    def reserved(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._reserved)
