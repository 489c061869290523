"""
certproxy.app
=============
FastAPI entry-point for the diamond certificate proxy.

Shopper types a lab certificate number on the storefront → `/search` resolves
it against Nivoda → the widget redirects to the matching product page.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from certproxy_log import RequestLogMiddleware, logger
from errors import CertificateValidationError, UpstreamError
from middleware.error import ErrorMiddleware, error_body, register_exception_handlers
from models import ResolutionResult
from resolver import CertificateResolver
from services.nivoda import NivodaClient
from services.shopify import StorefrontResolver
from settings import settings


# ─────────────────────────────────────────────────────────────────────────────
# Process-wide services (one credential cache per process)
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class Services:
    upstream: NivodaClient
    storefront: StorefrontResolver
    resolver: CertificateResolver


def build_services(http: httpx.AsyncClient) -> Services:
    upstream = NivodaClient.from_settings(http, settings)
    storefront = StorefrontResolver.from_settings(http, settings)
    resolver = CertificateResolver.from_settings(upstream, storefront, settings)
    return Services(upstream=upstream, storefront=storefront, resolver=resolver)


@asynccontextmanager
async def lifespan(app: FastAPI):
    http: httpx.AsyncClient | None = None
    if getattr(app.state, "services", None) is None:
        http = httpx.AsyncClient(
            timeout=settings.upstream_timeout,
            headers={"User-Agent": "certproxy/1.0"},
        )
        app.state.services = build_services(http)
    logger.info(
        f"Certificate proxy ready (upstream={settings.nivoda_api}, "
        f"basic_auth={settings.use_basic_auth}, store={settings.shopify_store}, "
        f"strategy={settings.query_strategy})"
    )
    try:
        yield
    finally:
        if http is not None:
            await http.aclose()


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI setup
# ─────────────────────────────────────────────────────────────────────────────
app = FastAPI(title="Certificate proxy", docs_url=None, redoc_url=None, lifespan=lifespan)
app.add_middleware(ErrorMiddleware)
app.add_middleware(RequestLogMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["*"],
)
register_exception_handlers(app)


def _services(request: Request) -> Services:
    return request.app.state.services


def _require_certificate(raw: str | None) -> str:
    cert = (raw or "").strip()
    if not cert:
        raise CertificateValidationError("certificate query param required")
    if len(cert) < settings.cert_min_length:
        raise CertificateValidationError(
            f"certificate must be at least {settings.cert_min_length} characters"
        )
    return cert


def _search_response(result: ResolutionResult) -> JSONResponse:
    body = result.wire()
    if result.found:
        return JSONResponse(body)

    miss = {
        "found": False,
        "attempts": body["attempts"],
        "deadlineExceeded": result.deadline_exceeded,
    }
    if result.upstream_unavailable:
        return JSONResponse(error_body("upstream unavailable", **miss), status_code=502)
    return JSONResponse(miss)


# ─────────────────────────────────────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────────────────────────────────────
@app.get("/health")
async def health():
    return {"ok": True}


@app.get("/search")
async def search(request: Request, certificate: str | None = None):
    cert = _require_certificate(certificate)
    result = await _services(request).resolver.resolve(cert)
    return _search_response(result)


# ── diagnostics: one helper, several inputs ─────────────────────────────────
def _diagnostics_enabled() -> None:
    if not settings.diagnostics_enabled:
        raise HTTPException(status_code=404, detail="Not Found")


async def _diagnose(services: Services, certificates: List[str]) -> List[dict]:
    results = []
    for cert in certificates:
        result = await services.resolver.resolve(cert)
        results.append(
            {
                "certificate": cert,
                "variants": services.resolver.variants(cert),
                "upstreamUnavailable": result.upstream_unavailable,
                **result.wire(),
            }
        )
    return results


@app.get("/debug-auth")
async def debug_auth(request: Request):
    _diagnostics_enabled()
    upstream = _services(request).upstream
    try:
        probe = await upstream.probe()
    except UpstreamError as exc:
        return JSONResponse(
            error_body(str(exc), ok=False, authMode=upstream.auth_mode),
            status_code=502,
        )
    return {"ok": True, **probe}


@app.get("/test/{cert}")
async def test_certificate(request: Request, cert: str):
    _diagnostics_enabled()
    certificate = _require_certificate(cert)
    return {"results": await _diagnose(_services(request), [certificate])}


@app.get("/test-known")
async def test_known(request: Request):
    _diagnostics_enabled()
    return {"results": await _diagnose(_services(request), settings.known_certificates)}


if __name__ == "__main__":
    uvicorn.run(app, host=settings.app_host, port=settings.app_port, log_config=None)
