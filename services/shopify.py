"""
certproxy.services.shopify
~~~~~~~~~~~~~~~~~~~~~~~~~~
Maps a resolved diamond onto a storefront product URL.

Strategies, tried in order:

1. catalog lookup   – Storefront GraphQL ``products(query: <cert>)``, first
                      hit's handle (only when a storefront token is set)
2. create product   – optional one-shot Admin REST call when the catalog has
                      nothing (``SHOPIFY_CREATE_MISSING`` + admin token)
3. slug synthesis   – deterministic handle from carat/shape/lab/colour/
                      clarity/certificate
4. fixed fallback   – template embedding only the matched certificate

`resolve_url()` never raises; lookup failures are logged and skipped.
"""

from __future__ import annotations

import re
from typing import List
from urllib.parse import quote, quote_plus

import backoff
import httpx

from certproxy_log import logger
from errors import StorefrontLookupError
from models import DiamondRecord

STOREFRONT_API_VERSION = "2024-04"
ADMIN_API_VERSION = "2025-04"

# ── 1.  Slug synthesis ──────────────────────────────────────────────────────
_NOT_SLUG = re.compile(r"[^a-z0-9\s-]")
_WS = re.compile(r"\s+")
_DASHES = re.compile(r"-{2,}")


def slugify(text: str) -> str:
    s = _NOT_SLUG.sub("", text.lower())
    s = _WS.sub("-", s.strip())
    s = _DASHES.sub("-", s)
    return s.strip("-")


def _fmt_carats(carats: float) -> str:
    return f"{carats:g}ct"


def product_title(record: DiamondRecord) -> str:
    """Human-readable title: carat, shape, lab, colour, clarity, certificate."""
    c = record.certificate
    parts: List[str] = [
        _fmt_carats(c.carats) if c.carats else "",
        c.shape or "",
        c.lab or "",
        c.color or "",
        c.clarity or "",
        c.cert_number or "",
    ]
    return " ".join(p.strip() for p in parts if p and p.strip())


def product_handle(record: DiamondRecord) -> str:
    return slugify(product_title(record))


# ── 2.  Back-off helpers (shared) ────────────────────────────────────────────
def _backoff_hdl(details):
    logger.warning(
        f"Shopify call retry {details['tries']} after {details['wait']:0.1f}s "
        f"(function={details['target'].__name__})"
    )


def _giveup(exc: Exception):
    # give up on 4xx except 429
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code < 500 and exc.response.status_code != 429


_PRODUCT_BY_QUERY_Q = """
query ($q: String!) {
  products(first: 1, query: $q) {
    edges { node { handle onlineStoreUrl } }
  }
}
"""


# ── 3.  Resolver ─────────────────────────────────────────────────────────────
class StorefrontResolver:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        store: str,
        product_base_url: str | None = None,
        fallback_template: str | None = None,
        storefront_token: str | None = None,
        admin_token: str | None = None,
        create_missing: bool = False,
    ) -> None:
        self._http = http
        self._store = store
        self._base = product_base_url or f"https://{store}/products/"
        if not self._base.endswith("/"):
            self._base += "/"
        self._fallback = fallback_template or f"https://{store}/search?q={{certificate}}"
        self._storefront_token = storefront_token
        self._admin_token = admin_token
        self._create_missing = create_missing and bool(admin_token)

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient, settings) -> "StorefrontResolver":
        return cls(
            http,
            store=settings.shopify_store,
            product_base_url=settings.products_url,
            fallback_template=settings.fallback_template,
            storefront_token=(
                settings.storefront_token.get_secret_value() if settings.storefront_token else None
            ),
            admin_token=(
                settings.shop_admin_token.get_secret_value() if settings.shop_admin_token else None
            ),
            create_missing=settings.create_missing_products,
        )

    @property
    def catalog_enabled(self) -> bool:
        return bool(self._storefront_token)

    def product_url(self, handle: str) -> str:
        return self._base + quote(handle)

    def fallback_url(self, certificate: str) -> str:
        return self._fallback.replace("{certificate}", quote_plus(certificate))

    # -- remote calls -----------------------------------------------------------
    @backoff.on_exception(
        backoff.expo,
        (httpx.HTTPStatusError, httpx.ReadTimeout),
        giveup=_giveup,
        on_backoff=_backoff_hdl,
        max_time=10,
    )
    async def _storefront_gql(self, query: str, variables: dict) -> dict:
        r = await self._http.post(
            f"https://{self._store}/api/{STOREFRONT_API_VERSION}/graphql.json",
            json={"query": query, "variables": variables},
            headers={
                "X-Shopify-Storefront-Access-Token": self._storefront_token or "",
                "Content-Type": "application/json",
            },
        )
        r.raise_for_status()
        data = r.json()
        if not isinstance(data, dict):
            raise StorefrontLookupError(f"unexpected Storefront body: {type(data).__name__}")
        if "errors" in data:
            raise StorefrontLookupError(str(data["errors"]))
        inner = data.get("data")
        if not isinstance(inner, dict):
            raise StorefrontLookupError("Storefront response has no data object")
        return inner

    async def lookup_handle(self, certificate: str) -> str | None:
        """First catalog product matching ``certificate`` as free text, if any."""
        try:
            data = await self._storefront_gql(_PRODUCT_BY_QUERY_Q, {"q": certificate})
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            raise StorefrontLookupError(f"catalog lookup failed: {exc.__class__.__name__}") from exc
        products = data.get("products")
        edges = products.get("edges") if isinstance(products, dict) else None
        if not isinstance(edges, list) or not edges:
            return None
        node = edges[0].get("node") if isinstance(edges[0], dict) else None
        if not isinstance(node, dict):
            return None
        return node.get("handle") or None

    async def create_product(self, record: DiamondRecord) -> str | None:
        """One-shot Admin REST create; returns the new handle. No retries."""
        handle = product_handle(record)
        c = record.certificate
        payload = {
            "product": {
                "title": product_title(record) or f"Diamond {c.cert_number or record.id}",
                "handle": handle or None,
                "product_type": "Diamond",
                "status": "active",
                "tags": ",".join(t for t in ("diamond", c.lab, c.shape, c.cert_number) if t),
                "variants": [{"price": f"{record.price:.2f}"}] if record.price is not None else [],
                "images": [{"src": record.media.image}] if record.media.image else [],
            }
        }
        try:
            r = await self._http.post(
                f"https://{self._store}/admin/api/{ADMIN_API_VERSION}/products.json",
                json=payload,
                headers={
                    "X-Shopify-Access-Token": self._admin_token or "",
                    "Content-Type": "application/json",
                },
            )
            r.raise_for_status()
            body = r.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise StorefrontLookupError(f"product create failed: {exc.__class__.__name__}") from exc
        product = body.get("product") if isinstance(body, dict) else None
        if not isinstance(product, dict):
            raise StorefrontLookupError("product create returned no product object")
        logger.info(f"Created storefront product {product.get('id')} handle={product.get('handle')}")
        return product.get("handle")

    # -- public -----------------------------------------------------------------
    async def resolve_url(self, record: DiamondRecord, matched_variant: str) -> str:
        certificate = record.certificate.cert_number or matched_variant

        if self.catalog_enabled:
            try:
                handle = await self.lookup_handle(certificate)
                if handle:
                    logger.info(f"Storefront catalog hit for {certificate}: {handle}")
                    return self.product_url(handle)
                logger.info(f"Storefront catalog has no product for {certificate}")
                if self._create_missing:
                    handle = await self.create_product(record)
                    if handle:
                        return self.product_url(handle)
            except StorefrontLookupError as exc:
                logger.warning(f"Storefront lookup unavailable, using synthesized URL: {exc}")

        handle = product_handle(record)
        if handle:
            return self.product_url(handle)

        logger.info(f"Record {record.id!r} has no usable fields; using fallback URL")
        return self.fallback_url(matched_variant)
