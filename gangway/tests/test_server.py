"""
Server supervisor tests: listener binding, request deadlines, graceful
shutdown and process exit codes.
"""

import asyncio
import socket

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from gangway import main as gangway_main
from gangway.server import GatewayServer, ListenerBindError, RequestTimeoutMiddleware
from gangway.tests.conftest import TEST_SESSION_KEY, make_settings


def slow_app(delay: float) -> FastAPI:
    app = FastAPI()

    @app.get("/slow")
    async def slow():
        await asyncio.sleep(delay)
        return {"done": True}

    @app.get("/fast")
    async def fast():
        return {"done": True}

    return app


@pytest.fixture
def occupied_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def quiet_logging(monkeypatch):
    monkeypatch.setattr(gangway_main, "setup_logging", lambda *args, **kwargs: None)


# ============================================================================
# Binding
# ============================================================================

def test_bind_conflict_raises(occupied_port):
    server = GatewayServer(slow_app(0), make_settings(PORT=occupied_port))

    with pytest.raises(ListenerBindError, match=f"127.0.0.1:{occupied_port}"):
        server.bind()


def test_bind_returns_listening_socket():
    server = GatewayServer(slow_app(0), make_settings(PORT=_free_port()))

    sock = server.bind()
    try:
        assert sock.getsockname()[0] == "127.0.0.1"
    finally:
        sock.close()


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# ============================================================================
# Request Deadline
# ============================================================================

def test_request_timeout_returns_504():
    app = slow_app(delay=2.0)
    app.add_middleware(RequestTimeoutMiddleware, timeout=0.1)

    with TestClient(app) as client:
        assert client.get("/fast").status_code == 200
        response = client.get("/slow")

    assert response.status_code == 504


# ============================================================================
# Graceful Shutdown
# ============================================================================

async def test_shutdown_drains_in_flight_requests():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(16)
    sock.setblocking(False)
    port = sock.getsockname()[1]

    closed = []

    async def on_shutdown():
        closed.append(True)

    server = GatewayServer(slow_app(delay=1.0), make_settings(SHUTDOWN_TIMEOUT=5), on_shutdown=on_shutdown)
    stop = asyncio.Event()
    serve_task = asyncio.create_task(server.serve(sock=sock, stop=stop))

    for _ in range(500):
        if server.server is not None and server.server.started:
            break
        await asyncio.sleep(0.01)
    assert server.server.started

    async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}") as client:
        in_flight = asyncio.create_task(client.get("/slow"))
        await asyncio.sleep(0.3)
        stop.set()
        response = await in_flight

    await asyncio.wait_for(serve_task, timeout=10)

    assert response.status_code == 200
    assert response.json() == {"done": True}
    assert closed == [True]

    async with httpx.AsyncClient() as client:
        with pytest.raises(httpx.ConnectError):
            await client.get(f"http://127.0.0.1:{port}/fast")


# ============================================================================
# Header Deadline
# ============================================================================

async def start_server(app, settings):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(16)
    sock.setblocking(False)

    server = GatewayServer(app, settings)
    stop = asyncio.Event()
    task = asyncio.create_task(server.serve(sock=sock, stop=stop))
    for _ in range(500):
        if server.server is not None and server.server.started:
            break
        await asyncio.sleep(0.01)
    assert server.server.started
    return sock.getsockname()[1], stop, task


async def test_incomplete_headers_are_cut_off():
    port, stop, task = await start_server(slow_app(0), make_settings(REQUEST_TIMEOUT=1))
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"GET /fast HTTP/1.1\r\nHost: x\r\n")
        await writer.drain()

        # EOF once the server gives up on the headers
        data = await asyncio.wait_for(reader.read(), timeout=4)

        assert data == b""
        writer.close()
    finally:
        stop.set()
        await asyncio.wait_for(task, timeout=10)


async def test_complete_requests_are_not_cut_off():
    port, stop, task = await start_server(slow_app(delay=0.5), make_settings(REQUEST_TIMEOUT=1))
    try:
        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}") as client:
            first = await client.get("/fast")
            await asyncio.sleep(0.7)
            # Same keep-alive connection, handler runs past the remaining header window
            second = await client.get("/slow")

        assert first.status_code == 200
        assert second.status_code == 200
    finally:
        stop.set()
        await asyncio.wait_for(task, timeout=10)


# ============================================================================
# Exit Codes
# ============================================================================

def write_config(tmp_path, **extra) -> str:
    lines = [
        "clientID: gangway-client",
        "clientSecret: gangway-secret",
        "redirectURL: http://localhost/callback",
        "authorizeURL: https://idp/auth",
        "tokenURL: https://idp/token",
        f"sessionSecurityKey: {TEST_SESSION_KEY}",
        "host: 127.0.0.1",
    ]
    lines.extend(f"{key}: {value}" for key, value in extra.items())
    path = tmp_path / "gangway.yaml"
    path.write_text("\n".join(lines) + "\n")
    return str(path)


def test_main_missing_config_file(tmp_path, quiet_logging):
    assert gangway_main.main(["--config", str(tmp_path / "missing.yaml")]) == 1


def test_main_invalid_config(tmp_path, quiet_logging):
    path = tmp_path / "gangway.yaml"
    path.write_text("clientID: only\n")

    assert gangway_main.main(["--config", str(path)]) == 1


def test_main_unreadable_trusted_ca(tmp_path, quiet_logging):
    config = write_config(tmp_path, trustedCAPath=str(tmp_path / "missing-ca.pem"))

    assert gangway_main.main(["--config", config]) == 1


def test_main_bind_failure(tmp_path, quiet_logging, occupied_port):
    config = write_config(tmp_path, port=occupied_port)

    assert gangway_main.main(["--config", config]) == 1
