import uuid
from unittest import mock

import pytest
from fastapi.testclient import TestClient

from api import server
from api.db import CredentialError
from conftest import FakeStore, read_fixture
from jobs.poll import RunSummary
from rules.sources import ConfigError


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(server, "require_write_access", lambda: "postgresql://service_role@db/postgres")
    monkeypatch.setattr(server, "store_factory", FakeStore)
    return TestClient(server.app)


@pytest.fixture
def captured(monkeypatch):
    calls = []

    def fake_run(cfg, store, request):
        calls.append((cfg, request))
        return RunSummary(poller=cfg.poller, session_id=request.session_id, records_processed=3, new_items_found=1)

    monkeypatch.setattr(server, "run_poller", fake_run)
    return calls


def test_livez(client):
    assert client.get("/livez").json() == {"ok": True}


def test_preflight_reflects_allowed_origin(client):
    r = client.options("/kava-poller", headers={"Origin": "https://thynkflow-git-main.vercel.app"})
    assert r.status_code == 204
    assert r.headers["access-control-allow-origin"] == "https://thynkflow-git-main.vercel.app"
    assert r.headers["access-control-allow-methods"] == "GET, POST, PUT, DELETE, OPTIONS"
    assert r.headers["access-control-allow-headers"] == "authorization, x-client-info, apikey, content-type"
    assert r.headers["access-control-allow-credentials"] == "true"
    assert r.headers["access-control-max-age"] == "86400"


@pytest.mark.parametrize("origin,expected", [
    ("http://localhost:5173", "http://localhost:5173"),
    ("https://www.thynkflow.io", "https://www.thynkflow.io"),
    ("https://evil.example.com", "https://thynkflow.io"),
    ("https://evil.vercel.app.example.com", "https://thynkflow.io"),
    (None, "https://thynkflow.io"),
])
def test_cors_origin_selection(client, captured, origin, expected):
    headers = {"Origin": origin} if origin else {}
    r = client.post("/kava-poller", json={}, headers=headers)
    assert r.headers["access-control-allow-origin"] == expected


def test_trigger_runs_the_named_poller(client, captured):
    r = client.post("/kratom-poller", json={"stateCode": "TX", "fullScan": True, "sourceName": "Kratom"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["recordsProcessed"] == 3
    assert body["newItemsFound"] == 1
    (cfg, req), = captured
    assert cfg.name == "kratom"
    assert (req.state_code, req.full_scan, req.source_name) == ("TX", True, "Kratom")


def test_unknown_poller_is_404(client, captured):
    r = client.post("/tobacco-poller", json={})
    assert r.status_code == 404
    assert r.json()["success"] is False
    assert captured == []


def test_broken_domain_config_is_json_500(client, captured, monkeypatch):
    def broken():
        raise ConfigError("Domain config 'kava' is missing 'poller'")
    monkeypatch.setattr(server, "pollers", broken)
    r = client.post("/kava-poller", json={})
    assert r.status_code == 500
    assert r.json() == {"success": False, "error": "Domain config 'kava' is missing 'poller'"}
    assert r.headers["access-control-allow-origin"] == "https://thynkflow.io"
    assert captured == []


@pytest.mark.parametrize("raw", [b"", b"{not json", b"[1, 2]"])
def test_unparseable_body_is_treated_as_empty(client, captured, raw):
    r = client.post("/kava-poller", content=raw, headers={"Content-Type": "application/json"})
    assert r.status_code == 200
    (_, req), = captured
    assert req.state_code is None and req.full_scan is False


def test_wrong_field_types_are_400(client, captured):
    r = client.post("/kava-poller", json={"fullScan": "sometimes"})
    assert r.status_code == 400
    assert r.json()["success"] is False
    r = client.post("/kava-poller", json={"stateCode": ["TX"]})
    assert r.status_code == 400
    assert captured == []


def test_public_role_is_403(client, monkeypatch, captured):
    def deny():
        raise CredentialError("Service-role database credential required")
    monkeypatch.setattr(server, "require_write_access", deny)
    r = client.post("/cannabis-hemp-poller", json={})
    assert r.status_code == 403
    assert r.json() == {"success": False, "error": "Service-role database credential required"}
    assert captured == []


def test_missing_database_is_500(client, monkeypatch, captured):
    def missing():
        raise ConfigError("Database not configured")
    monkeypatch.setattr(server, "require_write_access", missing)
    r = client.post("/cannabis-hemp-poller", json={})
    assert r.status_code == 500
    assert r.json()["error"] == "Database not configured"


def test_unhandled_error_is_500(client, monkeypatch):
    def boom(cfg, store, request):
        raise RuntimeError("boom")
    monkeypatch.setattr(server, "run_poller", boom)
    r = client.post("/kava-poller", json={})
    assert r.status_code == 500
    assert r.json() == {"success": False, "error": "boom"}
    assert "access-control-allow-origin" in r.headers


def test_end_to_end_vermont(client):
    feed = read_fixture("vt_feed.xml")

    def get(url, **kwargs):
        r = mock.Mock()
        if url == "https://ccb.vermont.gov/feed":
            r.ok, r.status_code, r.text = True, 200, feed
        else:
            r.ok, r.status_code, r.text = False, 404, ""
        return r

    with mock.patch("requests.Session.get", side_effect=get):
        r = client.post("/cannabis-hemp-poller", json={"stateCode": "VT", "sessionId": "abc"})

    assert r.status_code == 200
    body = r.json()
    assert body["newItemsFound"] == 2
    assert body["statesProcessed"] == 1
    assert body["status"] == "partial"
    assert all("fetch failed" in e for e in body["errors"])
    assert uuid.UUID(body["sessionId"])
    assert {i["type"] for i in body["recentItems"]} >= {"emergency_rule"}
