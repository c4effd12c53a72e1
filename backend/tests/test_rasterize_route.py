import base64
import io

import httpx
from fastapi.testclient import TestClient
from PIL import Image

from svg_gateway.main import create_app

from conftest import FIXTURES, FakeResolver


def open_png(data):
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


def test_returns_png(client):
    response = client.get(
        "/rasterize-svg", params={"url": "https://example.com/logo.svg", "width": "200", "height": "100"}
    )
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert open_png(response.content).size == (200, 100)


def test_default_dimensions(client):
    response = client.get("/rasterize-svg", params={"url": "https://example.com/logo.svg"})
    assert response.status_code == 200
    assert open_png(response.content).size == (1024, 1024)


def test_returns_json_when_asked(client):
    response = client.get(
        "/rasterize-svg",
        params={"url": "https://example.com/logo.svg", "width": "64", "height": "64"},
        headers={"Accept": "application/json"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert (data["width"], data["height"]) == (64, 64)
    assert data["content_type"] == "image/png"
    png = base64.b64decode(data["data_uri"].split(",", 1)[1])
    assert len(png) == data["size"]
    assert open_png(png).size == (64, 64)


def test_no_cache_header_leaks(client, upstream):
    params = {"url": "https://example.com/logo.svg", "width": "64", "height": "64"}
    first = client.get("/rasterize-svg", params=params)
    second = client.get("/rasterize-svg", params=params)

    assert first.content == second.content
    assert upstream.hits("example.com", "/logo.svg") == 1
    assert {k.lower() for k in first.headers} == {k.lower() for k in second.headers}


def test_not_svg_source(client, upstream):
    upstream.add("example.com", "/page.html", (FIXTURES / "page.html").read_bytes(), headers={"content-type": "text/html"})

    response = client.get(
        "/rasterize-svg", params={"url": "https://example.com/page.html", "format": "json"}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "not_svg_source"


def test_metadata_address_is_denied(client, upstream):
    response = client.get(
        "/rasterize-svg", params={"url": "http://169.254.169.254/latest/meta-data/", "format": "json"}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "admission_denied"
    assert upstream.requests == []


def test_width_below_minimum(client):
    response = client.get(
        "/rasterize-svg", params={"url": "https://example.com/logo.svg", "width": "16", "height": "64"}
    )
    assert response.status_code == 400
    assert response.text.startswith("input_error:")


def test_missing_url(client):
    response = client.get("/rasterize-svg", headers={"Accept": "application/json"})
    assert response.status_code == 400
    assert response.json()["error"] == "input_error"


def test_upstream_error_is_500(client, upstream):
    upstream.add("example.com", "/broken.svg", b"oops", status=502)

    response = client.get(
        "/rasterize-svg", params={"url": "https://example.com/broken.svg", "format": "json"}
    )
    assert response.status_code == 500
    assert response.json()["error"] == "upstream_fetch_error"


def test_script_svg_is_sanitized_and_rendered(client, upstream):
    upstream.add("example.com", "/scripted.svg", (FIXTURES / "scripted.svg").read_bytes())

    response = client.get(
        "/rasterize-svg", params={"url": "https://example.com/scripted.svg", "width": "64", "height": "64"}
    )
    assert response.status_code == 200
    assert open_png(response.content).size == (64, 64)
    # La <image> externa no genero ninguna peticion.
    assert all(request.headers["host"] == "example.com" for request in upstream.requests)


def test_61st_request_is_rate_limited(client):
    params = {"url": "https://example.com/logo.svg", "width": "64", "height": "64"}
    for _ in range(60):
        assert client.get("/rasterize-svg", params=params).status_code == 200

    response = client.get("/rasterize-svg", params=params)
    assert response.status_code == 429
    assert int(response.headers["retry-after"]) > 0
    assert response.text.startswith("rate_limit_exceeded:")


def test_rate_limit_json_body(test_settings, upstream):
    test_settings.RATE_LIMIT_REQUESTS = 1
    app = create_app(test_settings, resolver=FakeResolver(), transport=httpx.MockTransport(upstream.handler))
    with TestClient(app) as client:
        client.get("/rasterize-svg", params={"url": "https://example.com/logo.svg", "width": "64"})
        response = client.get(
            "/rasterize-svg",
            params={"url": "https://example.com/logo.svg", "width": "64"},
            headers={"Accept": "application/json"},
        )
    assert response.status_code == 429
    data = response.json()
    assert data["error"] == "rate_limit_exceeded"
    assert 1 <= data["retry_after"] <= 60
    assert response.headers["retry-after"] == str(data["retry_after"])


def test_forwarded_header_ignored_without_trusted_proxies(test_settings, upstream):
    test_settings.RATE_LIMIT_REQUESTS = 1
    test_settings.TRUSTED_PROXIES = []
    app = create_app(test_settings, resolver=FakeResolver(), transport=httpx.MockTransport(upstream.handler))
    params = {"url": "https://example.com/logo.svg", "width": "64"}
    with TestClient(app) as client:
        assert client.get("/rasterize-svg", params=params, headers={"X-Forwarded-For": "198.51.100.1"}).status_code == 200
        # Sin proxies de confianza el header se ignora: mismo cliente.
        assert client.get("/rasterize-svg", params=params, headers={"X-Forwarded-For": "198.51.100.2"}).status_code == 429
