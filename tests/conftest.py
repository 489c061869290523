"""Shared fixtures for the certificate proxy test suite."""

import json
import os

import httpx
import pytest

# Ensure required settings exist before any module imports `settings`
os.environ.setdefault("NIVODA_API", "https://nivoda.test/api/diamonds")
os.environ.setdefault("NIVODA_USER", "test-user")
os.environ.setdefault("NIVODA_PASS", "test-pass")
os.environ.setdefault("SHOPIFY_STORE", "shop.test")
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("LOG_LEVEL", "WARNING")

NIVODA_URL = "https://nivoda.test/api/diamonds"


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def nivoda_item(cert_number="628496664", **overrides):
    """One `diamonds_by_query.items[]` entry as Nivoda returns it."""
    certificate = {
        "certNumber": cert_number,
        "lab": "IGI",
        "shape": "ROUND",
        "carats": 1.01,
        "color": "F",
        "clarity": "VS1",
        "cut": "EX",
        "polish": "EX",
        "symmetry": "VG",
    }
    certificate.update(overrides.pop("certificate", {}))
    item = {
        "id": f"item-{cert_number}",
        "diamond": {
            "id": f"diamond-{cert_number}",
            "image": "https://img.test/d.jpg",
            "video": None,
            "certificate": certificate,
            "measurements": {"length": 6.45, "width": 6.48, "height": "3.98"},
        },
        "price": 152000,
        "availability": "AVAILABLE",
    }
    item.update(overrides)
    return item


def auth_payload(token="tok-1"):
    return {"data": {"authenticate": {"username_and_password": {"token": token}}}}


def query_payload(items, *, bearer=True, total=None):
    block = {"total_count": len(items) if total is None else total, "items": items}
    data = {"as": {"diamonds_by_query": block}} if bearer else {"diamonds_by_query": block}
    return {"data": data}


class NivodaStub:
    """Scriptable Nivoda endpoint for httpx.MockTransport.

    `tokens` are handed out by successive authenticate calls; `on_query` maps
    a request (parsed JSON body + headers) to an httpx.Response.
    """

    def __init__(self, on_query=None, tokens=("tok-1", "tok-2", "tok-3")):
        self.tokens = list(tokens)
        self.on_query = on_query or (lambda body, headers: httpx.Response(200, json=query_payload([])))
        self.auth_calls = 0
        self.queries: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if "authenticate" in body["query"]:
            self.auth_calls += 1
            return httpx.Response(200, json=auth_payload(self.tokens.pop(0)))
        self.queries.append(body)
        return self.on_query(body, request.headers)


@pytest.fixture
def make_http():
    def _make(handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _make
