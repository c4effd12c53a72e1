from fastapi.testclient import TestClient

from svg_gateway.config import VERSION
from svg_gateway.main import create_app
from svg_gateway.services.store import create_backing_store


def test_health_ok(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["version"] == VERSION
    assert data["dependencies"] == {"store": "ok"}
    assert data["timestamp"]


def test_health_degraded_when_store_is_down(test_settings):
    store = create_backing_store("memory://")

    async def broken_ping():
        raise ConnectionError("redis down")

    store.kv.ping = broken_ping
    with TestClient(create_app(test_settings, store=store)) as client:
        response = client.get("/health")

    assert response.status_code == 503
    data = response.json()
    assert data["status"] == "degraded"
    assert data["dependencies"] == {"store": "unavailable"}
