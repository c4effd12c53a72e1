from starlette.requests import Request

from svg_gateway.services.client_identity import ClientIdentifier


def make_request(peer, forwarded=None):
    headers = []
    if forwarded is not None:
        headers.append((b"x-forwarded-for", forwarded.encode("latin-1")))
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/rasterize-svg",
            "headers": headers,
            "query_string": b"",
            "client": (peer, 52000),
        }
    )


def test_uses_peer_without_trusted_proxies():
    identifier = ClientIdentifier()
    request = make_request("203.0.113.9", forwarded="198.51.100.1")
    assert identifier.identify(request) == "203.0.113.9"


def test_ignores_header_from_untrusted_peer():
    identifier = ClientIdentifier(["10.0.0.0/8"])
    request = make_request("203.0.113.9", forwarded="198.51.100.1")
    assert identifier.identify(request) == "203.0.113.9"


def test_trusted_proxy_uses_forwarded_client():
    identifier = ClientIdentifier(["10.0.0.0/8"])
    request = make_request("10.0.0.2", forwarded="198.51.100.1")
    assert identifier.identify(request) == "198.51.100.1"


def test_skips_trusted_hops_from_the_right():
    identifier = ClientIdentifier(["10.0.0.0/8"])
    # El primer valor lo puso el cliente y puede ser falso.
    request = make_request("10.0.0.2", forwarded="1.2.3.4, 203.0.113.7, 10.0.0.9")
    assert identifier.identify(request) == "203.0.113.7"


def test_garbage_entry_stops_at_last_trusted_hop():
    identifier = ClientIdentifier(["10.0.0.0/8"])
    request = make_request("10.0.0.2", forwarded="not-an-ip, 10.0.0.9")
    assert identifier.identify(request) == "10.0.0.9"


def test_all_trusted_chain_returns_leftmost():
    identifier = ClientIdentifier(["10.0.0.0/8"])
    request = make_request("10.0.0.2", forwarded="10.0.0.7, 10.0.0.9")
    assert identifier.identify(request) == "10.0.0.7"


def test_trusted_proxy_without_header_uses_peer():
    identifier = ClientIdentifier(["10.0.0.2/32"])
    assert identifier.identify(make_request("10.0.0.2")) == "10.0.0.2"
