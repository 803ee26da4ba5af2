"""Shared test doubles for dispatcher set tests."""

from __future__ import annotations

import queue
import socket
import threading
from typing import Callable, Iterable, Iterator, List

import pytest

from dispatchers.errors import StreamClosed
from dispatchers.sets import DispatcherSet


class FakeSet(DispatcherSet):
    """In-memory dispatcher set whose watch events are scripted by the test."""

    def __init__(self, set_id: int, hosts: Iterable[str] = ()):
        self._id = set_id
        self._hosts: List[str] = list(hosts)
        self._events: "queue.Queue[tuple]" = queue.Queue()
        self._generation = 0
        self.update_calls = 0
        self.close_calls = 0
        self.update_error: Exception | None = None

    @property
    def id(self) -> int:
        return self._id

    def hosts(self) -> List[str]:
        return list(self._hosts)

    def set_hosts(self, hosts: Iterable[str]) -> None:
        self._hosts = list(hosts)

    def update(self) -> None:
        self.update_calls += 1
        if self.update_error is not None:
            raise self.update_error

    def push_change(self, hosts: Iterable[str]) -> None:
        self._events.put(("change", list(hosts)))

    def push_error(self, error: Exception) -> None:
        self._events.put(("error", error))

    def watch(self, stop: threading.Event) -> None:
        generation = self._generation
        while not stop.is_set() and generation == self._generation:
            try:
                kind, value = self._events.get(timeout=0.01)
            except queue.Empty:
                continue
            if kind == "change":
                self._hosts = value
                return
            raise value
        raise StreamClosed("fake watch interrupted")

    def close(self) -> None:
        self.close_calls += 1
        self._generation += 1


@pytest.fixture
def make_set() -> Callable[..., FakeSet]:
    return FakeSet


class SilentWatchServer:
    """HTTP server that starts a chunked watch response and never sends an event."""

    HEADERS = (
        b"HTTP/1.1 200 OK\r\n"
        b"Content-Type: application/json\r\n"
        b"Transfer-Encoding: chunked\r\n"
        b"\r\n"
    )

    def __init__(self) -> None:
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(8)
        self._listener.settimeout(0.05)
        self.url = f"http://127.0.0.1:{self._listener.getsockname()[1]}"
        self.requests = 0
        self._connections: List[socket.socket] = []
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._accept, daemon=True)
        self._thread.start()

    def _accept(self) -> None:
        while not self._closed.is_set():
            try:
                conn, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            conn.settimeout(None)
            self._connections.append(conn)
            request = b""
            while b"\r\n\r\n" not in request:
                chunk = conn.recv(4096)
                if not chunk:
                    break
                request += chunk
            self.requests += 1
            conn.sendall(self.HEADERS)

    def close(self) -> None:
        self._closed.set()
        self._thread.join(1)
        self._listener.close()
        for conn in self._connections:
            conn.close()


@pytest.fixture
def silent_watch_server() -> Iterator[SilentWatchServer]:
    server = SilentWatchServer()
    yield server
    server.close()
