import asyncio

import httpx
import pytest

from svg_gateway.errors import AdmissionDenied, DenialReason, PayloadTooLarge, UpstreamFetchError
from svg_gateway.services.content_kind import ContentKind
from svg_gateway.services.fetcher import SvgFetcher
from svg_gateway.services.url_guard import UrlAdmissionGuard

from conftest import FakeResolver, FakeUpstream


def make_fetcher(upstream, **kwargs):
    guard = UrlAdmissionGuard(allowed_ports=(80, 443, 8080), resolver=FakeResolver())
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    return SvgFetcher(client, guard, **kwargs)


@pytest.mark.asyncio
async def test_fetches_and_classifies_svg(svg_bytes):
    upstream = FakeUpstream()
    upstream.add("example.com", "/logo.svg", svg_bytes, headers={"content-type": "image/svg+xml"})

    result = await make_fetcher(upstream).fetch("https://example.com/logo.svg")

    assert result.content == svg_bytes
    assert result.content_type == "image/svg+xml"
    assert result.kind is ContentKind.SVG


@pytest.mark.asyncio
async def test_connects_to_checked_address_with_original_host(svg_bytes):
    upstream = FakeUpstream()
    upstream.add("example.com:8080", "/logo.svg", svg_bytes)

    await make_fetcher(upstream).fetch("http://example.com:8080/logo.svg")

    request = upstream.requests[0]
    assert request.url.host == "93.184.216.34"
    assert request.url.port == 8080
    assert request.headers["host"] == "example.com:8080"


@pytest.mark.asyncio
async def test_sets_sni_for_https(svg_bytes):
    upstream = FakeUpstream()
    upstream.add("example.com", "/logo.svg", svg_bytes)

    await make_fetcher(upstream).fetch("https://example.com/logo.svg")

    assert upstream.requests[0].extensions["sni_hostname"] == "example.com"


@pytest.mark.asyncio
async def test_declared_content_length_over_limit():
    upstream = FakeUpstream()
    upstream.add("example.com", "/big.svg", b"<svg/>" * 100, headers={"content-length": "600"})

    with pytest.raises(PayloadTooLarge):
        await make_fetcher(upstream, max_bytes=512).fetch("https://example.com/big.svg")


@pytest.mark.asyncio
async def test_streamed_body_over_limit():
    def handler(request):
        # Sin Content-Length: el limite se aplica mientras llegan los bytes.
        return httpx.Response(200, stream=ChunkStream([b"<svg>" + b" " * 400, b" " * 400, b"</svg>"]))

    guard = UrlAdmissionGuard(resolver=FakeResolver())
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    fetcher = SvgFetcher(client, guard, max_bytes=512)

    with pytest.raises(PayloadTooLarge) as exc_info:
        await fetcher.fetch("https://example.com/stream.svg")
    assert exc_info.value.status_code == 500
    assert exc_info.value.cacheable is True


class ChunkStream(httpx.AsyncByteStream):
    def __init__(self, chunks):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk


@pytest.mark.asyncio
async def test_non_2xx_is_upstream_error():
    upstream = FakeUpstream()
    upstream.add("example.com", "/gone.svg", b"gone", status=410)

    with pytest.raises(UpstreamFetchError) as exc_info:
        await make_fetcher(upstream).fetch("https://example.com/gone.svg")
    assert "410" in exc_info.value.message


@pytest.mark.asyncio
async def test_follows_redirects(svg_bytes):
    upstream = FakeUpstream()
    upstream.add("example.com", "/old.svg", status=301, headers={"location": "https://cdn.example.com/new.svg"})
    upstream.add("cdn.example.com", "/new.svg", svg_bytes)

    result = await make_fetcher(upstream).fetch("https://example.com/old.svg")

    assert result.url == "https://cdn.example.com/new.svg"
    assert result.content == svg_bytes


@pytest.mark.asyncio
async def test_redirect_to_private_address_is_denied():
    upstream = FakeUpstream()
    upstream.add("example.com", "/evil.svg", status=302, headers={"location": "http://169.254.169.254/latest/meta-data/"})

    with pytest.raises(AdmissionDenied) as exc_info:
        await make_fetcher(upstream).fetch("https://example.com/evil.svg")
    assert exc_info.value.reason is DenialReason.DISALLOWED_ADDRESS
    assert len(upstream.requests) == 1


@pytest.mark.asyncio
async def test_redirect_to_other_scheme_is_denied():
    upstream = FakeUpstream()
    upstream.add("example.com", "/file.svg", status=302, headers={"location": "file:///etc/passwd"})

    with pytest.raises(AdmissionDenied) as exc_info:
        await make_fetcher(upstream).fetch("https://example.com/file.svg")
    assert exc_info.value.reason is DenialReason.INVALID_SCHEME


@pytest.mark.asyncio
async def test_redirect_loop_is_bounded():
    upstream = FakeUpstream()
    upstream.add("example.com", "/loop.svg", status=302, headers={"location": "/loop.svg"})

    with pytest.raises(UpstreamFetchError):
        await make_fetcher(upstream, max_redirects=3).fetch("https://example.com/loop.svg")
    assert len(upstream.requests) == 4


@pytest.mark.asyncio
async def test_timeout_is_upstream_error():
    async def slow_handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, content=b"<svg/>")

    guard = UrlAdmissionGuard(resolver=FakeResolver())
    client = httpx.AsyncClient(transport=httpx.MockTransport(slow_handler))
    fetcher = SvgFetcher(client, guard, timeout=0.2)

    with pytest.raises(UpstreamFetchError) as exc_info:
        await fetcher.fetch("https://example.com/slow.svg")
    assert "Timed out" in exc_info.value.message


@pytest.mark.asyncio
async def test_network_error_is_upstream_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    guard = UrlAdmissionGuard(resolver=FakeResolver())
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    with pytest.raises(UpstreamFetchError):
        await SvgFetcher(client, guard).fetch("https://example.com/logo.svg")
