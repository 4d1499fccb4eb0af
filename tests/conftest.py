"""Shared fixtures for dgrep tests."""

import asyncio
import contextlib
import json
import socket
from types import SimpleNamespace

import pytest
import pytest_asyncio

from dgrep.models import Target
from dgrep.server import GrepServer
from dgrep.service import RemoteGrep

LOG_LINES = [
    "2024-01-01 10:00:00 INFO service started",
    "2024-01-01 10:00:01 ERROR disk quota exceeded",
    "2024-01-01 10:00:02 INFO request served",
]


@pytest.fixture
def log_file(tmp_path):
    """A three-line log with one ERROR line."""
    path = tmp_path / "app.log"
    path.write_text("\n".join(LOG_LINES) + "\n")
    return path


@pytest.fixture
def write_targets(tmp_path):
    """Write a JSON target list and return its path."""

    def _write(addresses, name="sources.json"):
        path = tmp_path / name
        path.write_text(json.dumps(addresses))
        return path

    return _write


@pytest_asyncio.fixture
async def grep_server(log_file):
    """A real execution service on an ephemeral port."""
    server = GrepServer(RemoteGrep(default_path=str(log_file)), host="127.0.0.1", port=0)
    await server.start()
    yield server
    await server.close()


@pytest_asyncio.fixture
async def silent_server():
    """Accepts connections and reads requests but never answers.

    ``closed`` is set once the client side has closed the connection.
    """
    closed = asyncio.Event()

    async def handle(reader, writer):
        with contextlib.suppress(ConnectionError):
            while await reader.read(1024):
                pass
        closed.set()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    yield SimpleNamespace(target=Target("127.0.0.1", port), closed=closed)
    server.close()
    await server.wait_closed()


@pytest.fixture
def closed_port():
    """A local port with nothing listening on it."""
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return port
