"""
Endpoint tests for the dashboard app, run against a scripted backend.
"""
import json
from urllib.parse import urlsplit

import pytest
import requests
from fastapi.testclient import TestClient

from config.settings import Settings
from dashboard.data_layer import DataAccessLayer
from dashboard.main import create_app


@pytest.fixture
def backend(response_factory):
    """(method, path) -> response or exception served by the fake backend."""
    return {
        ("GET", "/api/v1/operations/op-7/labor"): response_factory(
            200, json_body=[{"id": "a-1", "operatorName": "R. Diaz", "status": "clocked_in"}]
        ),
        ("GET", "/api/v1/operations/op-7/ncrs"): response_factory(200, json_body=[]),
        ("GET", "/api/v1/operations/offline/labor"): requests.ConnectionError("no route to host"),
        ("POST", "/api/v1/labor/a-1/clock-in"): response_factory(200, json_body={"id": "a-1"}),
        ("POST", "/api/v1/materials/consume"): response_factory(200, json_body={"id": "mc-1"}),
        ("PATCH", "/api/v1/ncrs/ncr-9/status"): response_factory(200, json_body={"id": "ncr-9"}),
    }


@pytest.fixture
def layer(tmp_path, backend, session_factory, response_factory):
    def handler(request):
        key = (request.method, urlsplit(request.url).path)
        return backend.get(key, response_factory(404, reason="Not Found"))

    settings = Settings(
        api_base_url="http://mes.test",
        cache_db_path=tmp_path / "transport_cache.db",
        query_gc_interval_seconds=0,
    )
    return DataAccessLayer(
        settings,
        session=session_factory(handler=handler),
        sleep=lambda seconds: None,
    )


@pytest.fixture
def client(layer):
    app = create_app(app_settings=layer.settings, layer=layer)
    with TestClient(app) as client:
        yield client


def test_health_endpoint_returns_200(client):
    """Test that /health returns HTTP 200"""
    response = client.get("/health")
    assert response.status_code == 200


def test_health_endpoint_returns_ok_status(client):
    """Test that /health returns status: ok"""
    data = client.get("/health").json()
    assert data["status"] == "ok"


def test_version_endpoint(client):
    data = client.get("/version").json()
    assert data["name"] == "Operator Dashboard"
    assert data["full"].startswith("Operator Dashboard v")


def test_query_route_returns_data_and_meta(client):
    """Test that a read returns data plus cache metadata"""
    response = client.get("/operations/op-7/labor")
    assert response.status_code == 200

    body = response.json()
    assert body["data"][0]["id"] == "a-1"
    assert body["meta"]["status"] == "fresh"
    assert body["meta"]["lastUpdated"].endswith("Z")


def test_repeated_query_uses_cache(client, layer):
    client.get("/operations/op-7/labor")
    client.get("/operations/op-7/labor")
    assert layer.session.call_count == 1


def test_upstream_status_is_passed_through(client):
    response = client.get("/operations/unknown/ncrs")
    assert response.status_code == 404
    assert response.json()["error"]["status"] == 404


def test_unreachable_backend_maps_to_503(client, layer):
    response = client.get("/operations/offline/labor")
    assert response.status_code == 503
    assert response.json()["error"]["kind"] == "network"
    # First attempt plus three retries
    assert layer.session.call_count == 4


def test_clock_in_sends_idempotency_key(client, layer):
    response = client.post("/labor/a-1/clock-in")
    assert response.status_code == 200
    assert response.json() == {"data": {"id": "a-1"}}
    assert layer.session.requests[0].headers["Idempotency-Key"]


def test_material_payload_is_validated(client, layer):
    response = client.post(
        "/materials/consume",
        json={"operationId": "op-7", "materialId": "M-1", "consumedQuantity": 0},
    )
    assert response.status_code == 422
    assert layer.session.call_count == 0


def test_material_consumption_is_forwarded(client, layer):
    response = client.post(
        "/materials/consume",
        json={"operationId": "op-7", "materialId": "M-1", "consumedQuantity": 2.5},
    )
    assert response.status_code == 200
    sent = json.loads(layer.session.requests[0].body)
    assert sent == {"operationId": "op-7", "materialId": "M-1", "consumedQuantity": 2.5}


def test_ncr_status_update_invalidates_ncr_queries(client, layer):
    client.get("/operations/op-7/ncrs")
    response = client.patch("/ncrs/ncr-9/status", json={"status": "closed"})
    assert response.status_code == 200

    meta = client.get("/operations/op-7/ncrs").json()["meta"]
    assert meta["status"] == "stale"


def test_focus_event(client):
    client.get("/operations/op-7/labor")
    response = client.post("/events/focus")
    assert response.status_code == 200
    # No subscribers in a request/response surface
    assert response.json() == {"revalidating": 0}


def test_cache_stats(client):
    client.get("/operations/op-7/labor")
    stats = client.get("/cache/stats").json()

    assert stats["queries"]["entries"] == 1
    assert stats["store"] == {"api-cache": 1}
    assert stats["transport"]["enabled"] is True
    assert stats["mutations"]["policy"]["max_attempts"] == 2


def test_layer_is_shut_down_with_the_app(layer):
    app = create_app(app_settings=layer.settings, layer=layer)
    with TestClient(app):
        assert layer.started
    assert not layer.started
    assert layer.session.closed is False
