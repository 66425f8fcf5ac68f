"""Pytest configuration and fixtures for restclient tests.

This file provides:
- make_request: HttpRequest factory with sensible defaults
- RecordingTransport: httpx.MockTransport that records every request it serves
- digest_handler: MockTransport handler that enforces Digest auth
- PortReservation / MockServer: subprocess management for the integration server
"""

from __future__ import annotations

import hashlib
import re
import socket
import subprocess
import sys
import time
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Generator

import httpx
import pytest

from restclient.models import HttpRequest, MultipartPart

# Project root for subprocess cwd
PROJECT_ROOT = Path(__file__).parent.parent
MOCK_SERVER_MODULE = "tests.integration.mock_server"


def make_request(
    method: str = "GET",
    url: str = "http://api.example.com/resource",
    headers: dict[str, str] | None = None,
    raw_body: str = "",
    body: Any = None,
    multipart_parts: list[MultipartPart] | None = None,
) -> HttpRequest:
    """Create an HttpRequest for testing.

    Prefer this over constructing HttpRequest directly - it provides
    sensible defaults and documents which fields are typically varied in tests.
    """
    return HttpRequest(
        method=method,
        url=url,
        headers=headers or {},
        raw_body=raw_body,
        body=body,
        multipart_parts=multipart_parts or [],
    )


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it handled, in order.

    MockTransport reads request bodies before calling the handler, so
    recorded requests expose .content.
    """

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response] | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self._lock = Lock()
        self._respond = handler or (lambda request: httpx.Response(200))
        super().__init__(self._record)

    def _record(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        return self._respond(request)


_AUTH_PARAM = re.compile(r'(\w+)=(?:"([^"]*)"|([^,\s]+))')


def parse_auth_params(header: str) -> dict[str, str]:
    """Parse `Digest k="v", k=v` into a dict (test-side, independent of restclient)."""
    return {m.group(1): m.group(2) if m.group(2) is not None else m.group(3)
            for m in _AUTH_PARAM.finditer(header)}


def md5_hex(s: str) -> str:
    return hashlib.md5(s.encode("utf-8")).hexdigest()


def expected_digest_response(
    params: dict[str, str], password: str, method: str
) -> str:
    """Recompute the Digest response the server expects for the client's params."""
    ha1 = md5_hex(f"{params['username']}:{params['realm']}:{password}")
    ha2 = md5_hex(f"{method}:{params['uri']}")
    if params.get("qop") == "auth":
        return md5_hex(
            f"{ha1}:{params['nonce']}:{params['nc']}:{params['cnonce']}:auth:{ha2}"
        )
    return md5_hex(f"{ha1}:{params['nonce']}:{ha2}")


def digest_handler(
    username: str = "alice",
    password: str = "s3cret pass",
    realm: str = "test-realm",
    nonce: str = "dcd98b7102dd2f0e8b11d0f600bfb0c093",
    qop: str = "auth",
    opaque: str = "5ccc069c403ebaf9f0171e9517f40e41",
) -> Callable[[httpx.Request], httpx.Response]:
    """Handler that challenges unauthenticated requests and accepts valid Digest answers."""
    challenge = f'Digest realm="{realm}", nonce="{nonce}", opaque="{opaque}"'
    if qop:
        challenge += f', qop="{qop}"'

    def handle(request: httpx.Request) -> httpx.Response:
        auth = request.headers.get("authorization", "")
        if auth.lower().startswith("digest "):
            params = parse_auth_params(auth[len("Digest "):])
            if (
                params.get("username") == username
                and params.get("response") == expected_digest_response(
                    params, password, request.method
                )
            ):
                return httpx.Response(200, json={"authenticated": True, "user": username})
        return httpx.Response(401, headers={"WWW-Authenticate": challenge})

    return handle


class PortReservation:
    """Holds a reserved port with socket kept open to prevent races.

    The socket stays bound until release(), so no other process can take the
    port between reservation and server start.
    """

    def __init__(self) -> None:
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind(("127.0.0.1", 0))  # Port 0 = OS assigns ephemeral port
        self._port = self._socket.getsockname()[1]
        self._released = False

    @property
    def port(self) -> int:
        return self._port

    def release(self) -> int:
        """Release the socket and return the port for server use.

        Safe to call multiple times - subsequent calls are no-ops.
        """
        if not self._released:
            self._socket.close()
            self._released = True
        return self._port


def wait_for_server_ready(host: str, port: int, timeout: float = 10.0) -> bool:
    """Block until server accepts TCP connections, or timeout expires."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except (ConnectionRefusedError, socket.timeout, OSError):
            time.sleep(0.1)
    return False


class MockServer:
    """Manages the mock server subprocess (tests/integration/mock_server.py)."""

    def __init__(self, reservation: PortReservation) -> None:
        self._reservation = reservation
        self.port = reservation.port
        self.host = "127.0.0.1"
        self.base_url = f"http://{self.host}:{self.port}"
        self._process: subprocess.Popen | None = None

    def start(self) -> None:
        """Start the mock server subprocess.

        Raises:
            RuntimeError: If server fails to start within 10 seconds.
        """
        self._reservation.release()

        self._process = subprocess.Popen(
            [
                sys.executable, "-m", MOCK_SERVER_MODULE,
                "--host", self.host,
                "--port", str(self.port),
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=PROJECT_ROOT,
        )

        if not wait_for_server_ready(self.host, self.port):
            stderr = ""
            if self._process and self._process.stderr:
                stderr = self._process.stderr.read().decode(errors="replace")
            self.stop()
            raise RuntimeError(
                f"MockServer failed to start on port {self.port}. "
                f"stderr: {stderr or '(empty)'}"
            )

    def stop(self) -> None:
        """Stop the subprocess: SIGTERM, then SIGKILL after 5s.

        Safe to call multiple times or if server was never started.
        """
        if self._process:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait(timeout=5)
            self._process = None

    def __enter__(self) -> MockServer:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()


# =============================================================================
# Pytest Fixtures
# =============================================================================


@pytest.fixture
def upload_file(tmp_path: Path) -> Path:
    """A small binary file for multipart upload tests."""
    path = tmp_path / "report.bin"
    path.write_bytes(b"\x00\x01binary-payload\xff")
    return path


@pytest.fixture(scope="session")
def fixture_mock_server() -> Generator[MockServer, None, None]:
    """Start the mock server once per test session."""
    with MockServer(PortReservation()) as server:
        yield server


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Tag tests as integration or unit based on their directory.

    Enables running subsets via:
        pytest -m integration
        pytest -m unit
    """
    for item in items:
        test_path = Path(item.fspath)
        if "integration" in test_path.parts:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
