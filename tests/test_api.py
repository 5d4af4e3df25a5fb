from __future__ import annotations

import inspect

from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from conftest import ASSET_ID, OTHER_ASSET_ID, PLAYBACK_ID, UPLOAD_ID
from glint_video.api import create_app
from glint_video.models import FailureReason, ResolutionResult
from glint_video.services import build_services

CANONICAL = f"https://stream.mux.com/{PLAYBACK_ID}.m3u8"


def _mk_client(settings, provider) -> TestClient:
    svc = build_services(settings, provider=provider)
    return TestClient(create_app(settings, services=svc))


def test_health_and_index(settings, provider):
    client = _mk_client(settings, provider)
    assert client.get("/health").json() == {"ok": True}
    payload = client.get("/").json()
    assert payload["endpoints"]["webhook"] == "/webhooks/mux"


def test_resolve_endpoint(settings, provider):
    client = _mk_client(settings, provider)

    r = client.get("/resolve", params={"ref": ASSET_ID})
    assert r.status_code == 200
    payload = r.json()
    assert payload["kind"] == "asset_id"
    assert payload["result"]["outcome"] == "resolved"
    assert payload["result"]["playback_url"] == CANONICAL

    r = client.get("/resolve", params={"ref": "??"})
    assert r.json()["result"]["reason"] == "malformed"


def test_create_and_list_records(settings, provider):
    client = _mk_client(settings, provider)

    r = client.post("/records", json={"owner_id": "owner-1", "raw_reference": UPLOAD_ID, "record_id": "r1"})
    assert r.status_code == 200
    assert r.json()["record"]["lifecycle_status"] == "pending"

    assert client.post("/records", json={"owner_id": "owner-1", "raw_reference": UPLOAD_ID, "record_id": "r1"}).status_code == 409
    assert client.post("/records", json={"owner_id": "", "raw_reference": UPLOAD_ID}).status_code == 400

    listing = client.get("/records", params={"owner_id": "owner-1", "limit": 9999}).json()
    assert listing["limit"] == 500
    assert [r["record_id"] for r in listing["records"]] == ["r1"]


def test_get_record_resolves_lazily_and_patches_in_background(settings, provider):
    svc = build_services(settings, provider=provider)
    svc.repo.insert_record("owner-1", ASSET_ID, record_id="r1")

    with TestClient(create_app(settings, services=svc)) as client:
        r = client.get("/records/r1")
        assert r.status_code == 200
        payload = r.json()
        assert payload["playback_url"] == CANONICAL
        assert payload["resolution"]["outcome"] == "resolved"

    # Shutdown drains the background patch.
    rec = svc.repo.get_record("r1")
    assert rec.playback_url == CANONICAL
    assert rec.lifecycle_status.value == "ready"


def test_get_record_for_terminal_and_missing(settings, provider):
    svc = build_services(settings, provider=provider)
    svc.repo.insert_record("owner-1", OTHER_ASSET_ID, record_id="r1")
    svc.repo.apply_resolution("r1", ResolutionResult.failed(FailureReason.ASSET_DELETED))
    client = TestClient(create_app(settings, services=svc))

    payload = client.get("/records/r1").json()
    assert payload["playback_url"] is None
    assert payload["message"] == "This video needs to be re-uploaded."
    assert provider.asset_calls == []

    assert client.get("/records/ghost").status_code == 404


def test_resolve_record_endpoint_writes(settings, provider):
    svc = build_services(settings, provider=provider)
    svc.repo.insert_record("owner-1", OTHER_ASSET_ID, record_id="gone")
    client = TestClient(create_app(settings, services=svc))

    payload = client.post("/records/gone/resolve").json()
    assert payload["resolution"]["reason"] == "asset_deleted"
    assert payload["resolution"]["message"] == "This video needs to be re-uploaded."
    assert payload["write"] == "marked_terminal"
    assert payload["record"]["lifecycle_status"] == "deleted"


def test_webhook_endpoint(settings, provider):
    svc = build_services(settings, provider=provider)
    svc.repo.insert_record("owner-1", UPLOAD_ID, record_id="r1")
    client = TestClient(create_app(settings, services=svc))
    event = {
        "type": "video.asset.ready",
        "data": {
            "id": ASSET_ID,
            "upload_id": UPLOAD_ID,
            "status": "ready",
            "playback_ids": [{"id": PLAYBACK_ID, "policy": "public"}],
        },
    }

    r = client.post("/webhooks/mux", json=event)
    assert r.status_code == 200
    assert r.json()["accepted"] is True
    assert r.json()["write"] == "patched"
    assert svc.repo.get_record("r1").playback_url == CANONICAL

    r = client.post("/webhooks/mux", content=b"{nope", headers={"Content-Type": "application/json"})
    assert r.status_code == 200
    assert r.json() == {**r.json(), "accepted": False, "reason": "unrecognized_event"}


def test_reconcile_and_stats(settings, provider):
    svc = build_services(settings, provider=provider)
    svc.repo.insert_record("owner-1", ASSET_ID, record_id="r1")
    svc.repo.insert_record("owner-2", OTHER_ASSET_ID, record_id="r2")
    client = TestClient(create_app(settings, services=svc))

    dry = client.post("/reconcile", json={"dry_run": True}).json()
    assert dry["dry_run"] is True
    assert dry["patched"] == 1
    assert svc.repo.get_record("r1").lifecycle_status.value == "pending"

    real = client.post("/reconcile", json={"owner_id": "owner-1"}).json()
    assert real["scanned"] == 1
    assert real["patched_ids"] == ["r1"]

    stats = client.get("/stats").json()
    assert stats["counts"]["records"] == 2
    assert stats["counts"]["ready"] == 1
    assert stats["cache"]["resolved"] >= 1


def test_store_only_routes_run_in_the_threadpool(settings, provider):
    app = create_app(settings, services=build_services(settings, provider=provider))
    endpoints = {
        (route.path, method): route.endpoint
        for route in app.routes
        if isinstance(route, APIRoute)
        for method in route.methods
    }

    for key in [("/health", "GET"), ("/", "GET"), ("/stats", "GET"), ("/records", "GET"), ("/records", "POST")]:
        assert not inspect.iscoroutinefunction(endpoints[key]), key
    for key in [("/records/{record_id}", "GET"), ("/reconcile", "POST"), ("/webhooks/mux", "POST")]:
        assert inspect.iscoroutinefunction(endpoints[key]), key


def test_webhook_patches_record_stored_as_stream_url(settings, provider):
    svc = build_services(settings, provider=provider)
    client = TestClient(create_app(settings, services=svc))
    created = client.post(
        "/records",
        json={"owner_id": "owner-1", "raw_reference": f"https://stream.mux.com/{ASSET_ID}.m3u8", "record_id": "r1"},
    ).json()
    assert created["record"]["asset_id"] == ASSET_ID

    event = {
        "type": "video.asset.ready",
        "data": {"id": ASSET_ID, "status": "ready", "playback_ids": [{"id": PLAYBACK_ID, "policy": "public"}]},
    }
    r = client.post("/webhooks/mux", json=event).json()

    assert r["record_id"] == "r1"
    assert r["write"] == "patched"
    assert svc.repo.get_record("r1").playback_url == CANONICAL
