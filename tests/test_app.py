"""Tests for the FastAPI routes using TestClient and fake services."""

import pytest
from fastapi.testclient import TestClient

from errors import AuthenticationError, UpstreamTransportError
from models import DiamondRecord, UpstreamQueryResult
from resolver import CertificateResolver
from tests.conftest import nivoda_item


class FakeUpstream:
    auth_mode = "bearer"

    def __init__(self, matches=None, error=None, probe_error=None):
        self.matches = matches or {}
        self.error = error
        self.probe_error = probe_error
        self.calls = []

    async def query_certificates(self, certificates):
        self.calls.append(list(certificates))
        if self.error:
            raise self.error
        records = [DiamondRecord.from_upstream(i) for c in certificates for i in self.matches.get(c, [])]
        return UpstreamQueryResult(status=200, total_count=len(records), records=records)

    async def probe(self):
        if self.probe_error:
            raise self.probe_error
        return {"authMode": "bearer", "tokenCached": True, "status": 200, "totalCount": 7}


class FakeStorefront:
    async def resolve_url(self, record, matched_variant):
        return f"https://shop.test/products/{matched_variant}"


@pytest.fixture
def wire():
    """Install fake services on the app and hand back a (client, upstream) pair."""
    import app as app_module

    def _wire(upstream):
        resolver = CertificateResolver(upstream, FakeStorefront())
        app_module.app.state.services = app_module.Services(
            upstream=upstream, storefront=FakeStorefront(), resolver=resolver
        )
        return TestClient(app_module.app, raise_server_exceptions=False)

    yield _wire
    app_module.app.state.services = None


class TestHealth:
    def test_health(self, wire):
        client = wire(FakeUpstream())
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"ok": True}


class TestSearch:
    def test_match(self, wire):
        upstream = FakeUpstream(matches={"628496664": [nivoda_item("628496664")]})
        response = wire(upstream).get("/search", params={"certificate": " LG628496664 "})

        assert response.status_code == 200
        data = response.json()
        assert data["found"] is True
        assert data["variantMatched"] == "628496664"
        assert data["redirectUrl"] == "https://shop.test/products/628496664"
        assert data["diamond"]["certificate"]["certNumber"] == "628496664"
        assert [a["variant"] for a in data["attempts"]] == ["LG628496664", "lg628496664", "628496664"]

    def test_not_found(self, wire):
        response = wire(FakeUpstream()).get("/search", params={"certificate": "7235275727"})

        assert response.status_code == 200
        data = response.json()
        assert data["found"] is False
        assert len(data["attempts"]) == 1
        assert "error" not in data

    @pytest.mark.parametrize("params", [{}, {"certificate": ""}, {"certificate": "   "}, {"certificate": "ab"}])
    def test_invalid_certificate_is_400_without_upstream_calls(self, wire, params):
        upstream = FakeUpstream()
        response = wire(upstream).get("/search", params=params)

        assert response.status_code == 400
        assert "error" in response.json()
        assert upstream.calls == []

    def test_authentication_failure_is_generic_500(self, wire):
        upstream = FakeUpstream(error=AuthenticationError("password test-pass rejected"))
        response = wire(upstream).get("/search", params={"certificate": "7235275727"})

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "upstream authentication failed"
        assert "test-pass" not in response.text
        assert "trace" not in body

    def test_upstream_down_is_502_with_attempts(self, wire):
        upstream = FakeUpstream(error=UpstreamTransportError("connection refused"))
        response = wire(upstream).get("/search", params={"certificate": "7235275727"})

        assert response.status_code == 502
        body = response.json()
        assert body["found"] is False
        assert body["error"] == "upstream unavailable"
        assert body["attempts"][0]["errorKind"] == "transport"

    def test_unhandled_error_is_500_with_error_id(self, wire):
        upstream = FakeUpstream(error=RuntimeError("kaboom"))
        response = wire(upstream).get("/search", params={"certificate": "7235275727"})

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "Internal Server Error"
        assert "error_id" in body
        assert "kaboom" not in response.text

    def test_debug_mode_adds_trace(self, wire, monkeypatch):
        from settings import settings

        monkeypatch.setattr(settings, "debug", True)
        upstream = FakeUpstream(error=AuthenticationError("denied"))
        response = wire(upstream).get("/search", params={"certificate": "7235275727"})

        assert response.status_code == 500
        assert "AuthenticationError" in response.json()["trace"]


class TestDiagnostics:
    def test_debug_auth(self, wire):
        response = wire(FakeUpstream()).get("/debug-auth")
        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "authMode": "bearer",
            "tokenCached": True,
            "status": 200,
            "totalCount": 7,
        }

    def test_debug_auth_upstream_error(self, wire):
        upstream = FakeUpstream(probe_error=UpstreamTransportError("refused"))
        response = wire(upstream).get("/debug-auth")
        assert response.status_code == 502
        assert response.json()["ok"] is False

    def test_single_certificate(self, wire):
        upstream = FakeUpstream(matches={"628496664": [nivoda_item("628496664")]})
        response = wire(upstream).get("/test/LG628496664")

        assert response.status_code == 200
        [result] = response.json()["results"]
        assert result["certificate"] == "LG628496664"
        assert result["found"] is True
        assert "628496664" in result["variants"]

    def test_known_certificates(self, wire):
        response = wire(FakeUpstream()).get("/test-known")

        assert response.status_code == 200
        results = response.json()["results"]
        assert [r["certificate"] for r in results] == ["7235275727", "6385008601", "2233521189"]
        assert all(r["found"] is False for r in results)

    def test_disabled_diagnostics_are_404(self, wire, monkeypatch):
        from settings import settings

        monkeypatch.setattr(settings, "diagnostics_enabled", False)
        client = wire(FakeUpstream())
        assert client.get("/debug-auth").status_code == 404
        assert client.get("/test-known").status_code == 404
        assert client.get("/test/7235275727").status_code == 404
