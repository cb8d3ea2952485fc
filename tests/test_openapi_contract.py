import json
from pathlib import Path

from sqlalchemy.exc import IntegrityError


def test_openapi_paths_snapshot(test_context):
    client, _services = test_context
    snapshot_path = Path(__file__).parent / "snapshots" / "openapi_paths_snapshot.json"
    expected_paths = json.loads(snapshot_path.read_text(encoding="utf-8"))
    actual_paths = sorted(client.app.openapi()["paths"].keys())
    assert actual_paths == expected_paths


def test_health_and_readiness(test_context):
    client, _services = test_context

    assert client.get("/health").json() == {"ok": True}
    assert client.get("/ready").json() == {"ok": True}
    root = client.get("/").json()
    assert root["docs"] == "/docs"


def test_responses_carry_request_id(test_context):
    client, _services = test_context

    res = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert res.headers["X-Request-ID"] == "req-123"


def test_error_envelope_shape(test_context):
    client, _services = test_context

    res = client.get(
        "/campaigns/does-not-exist",
        headers={"X-Shopify-Shop-Domain": "demo-store.myshopify.com", "X-Request-ID": "req-404"},
    )

    assert res.status_code == 404
    error = res.json()["error"]
    assert error["code"] == "not_found"
    assert error["request_id"] == "req-404"
    assert error["path"] == "/campaigns/does-not-exist"


def test_duplicate_entry_maps_to_conflict(test_context):
    client, _services = test_context

    @client.app.get("/duplicate-entry")
    def duplicate_entry():
        raise IntegrityError("INSERT INTO contacts ...", {}, Exception("UNIQUE constraint failed"))

    res = client.get("/duplicate-entry")

    assert res.status_code == 409
    assert res.json()["error"]["code"] == "conflict"
    assert res.json()["error"]["message"] == "Duplicate entry"
