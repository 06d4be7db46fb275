"""Pool of connections to the key-value store."""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import redis

POOL_SIZE = 16
SOCKET_PATH = "/tmp/berghain.sock"


class StoreError(Exception):
    """Raised when the key-value store fails or cannot be reached."""


def connect_unix(path: str | Path = SOCKET_PATH) -> redis.Redis:
    """Connect to the store over a unix socket, failing fast if unreachable."""
    client = redis.Redis(unix_socket_path=str(path), socket_connect_timeout=5)
    try:
        client.ping()
    except (redis.RedisError, OSError) as exc:
        client.close()
        raise StoreError(f"failed to connect to valkey: {exc}") from exc
    return client


class ConnectionPool:
    """A fixed set of connections handed out one caller at a time."""

    def __init__(
        self,
        size: int = POOL_SIZE,
        connect: Callable[[], Any] | None = None,
    ) -> None:
        if size < 1:
            raise ValueError("pool size must be at least 1")
        factory = connect if connect is not None else connect_unix
        self._all = [factory() for _ in range(size)]
        self._idle: queue.LifoQueue[Any] = queue.LifoQueue()
        for conn in self._all:
            self._idle.put(conn)
        self._closed = False
        self._lock = threading.Lock()

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """Borrow a connection, waiting until one is free."""
        if self._closed:
            raise StoreError("connection pool is closed")
        conn = self._idle.get()
        try:
            yield conn
        except redis.RedisError as exc:
            raise StoreError("valkey error") from exc
        finally:
            self._idle.put(conn)

    def close(self) -> None:
        """Close every connection in the pool."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for conn in self._all:
                conn.close()

    def __enter__(self) -> ConnectionPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()