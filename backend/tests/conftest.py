import ipaddress
import socket
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from svg_gateway.config import Settings
from svg_gateway.main import create_app

FIXTURES = Path(__file__).parent.parent / "test_fixtures"

DNS_TABLE = {
    "example.com": ["93.184.216.34"],
    "cdn.example.com": ["93.184.216.35", "2606:2800:220:1:248:1893:25c8:1946"],
    "internal.example": ["127.0.0.1"],
    "metadata.example": ["169.254.169.254"],
    "mixed.example": ["93.184.216.34", "10.0.0.5"],
    "mapped.example": ["::ffff:192.168.1.10"],
}


class FakeResolver:
    """Resolvedor DNS en memoria. Las IPs literales se resuelven a si mismas."""

    def __init__(self, table=None):
        self.table = dict(DNS_TABLE if table is None else table)
        self.calls = []

    async def __call__(self, host, port):
        self.calls.append(host)
        try:
            return [str(ipaddress.ip_address(host))]
        except ValueError:
            pass
        if host not in self.table:
            raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        return list(self.table[host])


class FakeUpstream:
    """
    Servidor origen simulado para httpx.MockTransport.

    Las rutas se indexan por (Host, path) porque el Fetcher se conecta a la
    IP y manda el nombre real en el header Host.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, host, path, content=b"", status=200, headers=None):
        self.routes[(host, path)] = (status, dict(headers or {}), content)

    def hits(self, host, path):
        return sum(
            1
            for request in self.requests
            if request.headers["host"] == host and request.url.path == path
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.headers["host"], request.url.path)
        if key not in self.routes:
            return httpx.Response(404, content=b"not found")
        status, headers, content = self.routes[key]
        return httpx.Response(status, headers=headers, content=content)


@pytest.fixture
def svg_bytes():
    return (FIXTURES / "sample.svg").read_bytes()


@pytest.fixture
def test_settings():
    settings = Settings()
    settings.STORE_URL = "memory://"
    settings.RATE_LIMIT_REQUESTS = 60
    settings.RATE_LIMIT_WINDOW_SECONDS = 60
    settings.TRUSTED_PROXIES = []
    settings.RASTERIZE_CONCURRENCY = 2
    settings.FETCH_TIMEOUT_SECONDS = 5.0
    settings.PROCESSING_TIMEOUT_SECONDS = 20.0
    return settings


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def upstream(svg_bytes):
    upstream = FakeUpstream()
    upstream.add("example.com", "/logo.svg", svg_bytes, headers={"content-type": "image/svg+xml"})
    return upstream


@pytest.fixture
def client(test_settings, resolver, upstream):
    app = create_app(
        test_settings,
        resolver=resolver,
        transport=httpx.MockTransport(upstream.handler),
    )
    with TestClient(app) as client:
        yield client
