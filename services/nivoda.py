"""
certproxy.services.nivoda
~~~~~~~~~~~~~~~~~~~~~~~~~
Async client for the supplier's diamond-inventory GraphQL API.

Key features
------------
* Two auth modes: pre-shared Basic header, or a session token obtained via
  ``authenticate`` and passed as ``as(token: …)``. Basic is tried first when
  enabled; if upstream rejects it the client switches to bearer for the rest
  of the process.
* Bearer tokens come from an owned :class:`CredentialCache`; a token the
  upstream rejects mid-life is dropped and re-issued once, transparently.
* Every outcome is normalised: a parsed answer (possibly zero records) or one
  of the ``Upstream*Error`` types. Zero matches is never an error.
* Retries 429 / 502 / 503 / 504 with exponential back-off.
* GraphQL values travel as variables; nothing is string-interpolated.

Usage
-----
>>> client = NivodaClient.from_settings(http, settings)
>>> result = await client.query_certificates(["628496664"])
"""

from __future__ import annotations

import base64
import time
from typing import Any, Callable, Sequence

import backoff
import httpx

from certproxy_log import logger
from errors import (
    AuthenticationError,
    UpstreamApplicationError,
    UpstreamProtocolError,
    UpstreamTimeoutError,
    UpstreamTransportError,
)
from models import DiamondRecord, UpstreamQueryResult
from services.credentials import Clock, CredentialCache

# ── 1.  GraphQL documents ─────────────────────────────────────────────────────
_AUTH_Q = """
query ($username: String!, $password: String!) {
  authenticate {
    username_and_password(username: $username, password: $password) { token }
  }
}
"""

_RESULT_FIELDS = """
  total_count
  items {
    id
    diamond {
      id
      image
      video
      certificate {
        certNumber lab shape carats color clarity cut polish symmetry
      }
      measurements { length width height }
    }
    price
    availability
  }
"""

_BY_CERT_BASIC_Q = (
    "query ($certs: [String!]!, $limit: Int!) {"
    "  diamonds_by_query(query: {certificate_numbers: $certs}, limit: $limit) {"
    + _RESULT_FIELDS
    + "}}"
)

_BY_CERT_BEARER_Q = (
    "query ($token: String!, $certs: [String!]!, $limit: Int!) {"
    "  as(token: $token) {"
    "    diamonds_by_query(query: {certificate_numbers: $certs}, limit: $limit) {"
    + _RESULT_FIELDS
    + "}}}"
)

_PROBE_BASIC_Q = "query { diamonds_by_query(query: {}, limit: 1) { total_count } }"
_PROBE_BEARER_Q = (
    "query ($token: String!) {"
    "  as(token: $token) { diamonds_by_query(query: {}, limit: 1) { total_count } }"
    "}"
)


# ── 2.  Auth-failure classification ──────────────────────────────────────────
AuthFailureClassifier = Callable[[int, Any, str], bool]

_AUTH_STATUSES = {401, 403}
_AUTH_CODES = {"UNAUTHENTICATED", "FORBIDDEN", "UNAUTHORIZED"}

# Compatibility shim: some upstream builds send auth errors with no code.
_AUTH_MARKERS = (
    "unauthorized",
    "unauthorised",
    "unauthenticated",
    "not authenticated",
    "authentication required",
    "invalid token",
    "token expired",
    "jwt",
    "forbidden",
)


def _graphql_errors(payload: Any) -> list[dict]:
    if not isinstance(payload, dict):
        return []
    errors = payload.get("errors") or []
    return [e for e in errors if isinstance(e, dict)] if isinstance(errors, list) else []


def looks_like_auth_failure(status: int, payload: Any, body: str) -> bool:
    """Decide whether an upstream response means "your credential is no good".

    Structured signals first (HTTP status, GraphQL ``extensions.code``); body
    substring sniffing is the last resort and only runs on responses that are
    already unsuccessful or carry errors.
    """
    if status in _AUTH_STATUSES:
        return True
    errors = _graphql_errors(payload)
    for err in errors:
        code = str((err.get("extensions") or {}).get("code") or "").upper()
        if code in _AUTH_CODES:
            return True
    if 200 <= status < 300 and not errors:
        return False
    text = body.lower()
    return any(marker in text for marker in _AUTH_MARKERS)


# ── 3.  Back-off helpers ─────────────────────────────────────────────────────
_RETRY_STATUSES = {429, 502, 503, 504}


def _backoff_hdl(details):
    logger.warning(
        f"Nivoda call retry {details['tries']} after {details['wait']:0.1f}s "
        f"(function={details['target'].__name__})"
    )


def _giveup(exc: Exception) -> bool:
    return not (
        isinstance(exc, httpx.HTTPStatusError)
        and exc.response.status_code in _RETRY_STATUSES
    )


def _snippet(text: str, limit: int = 200) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[:limit] + "…"


def _dig(payload: Any, *path: str) -> Any:
    node = payload
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


# ── 4.  Client ───────────────────────────────────────────────────────────────
class NivodaClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        url: str,
        username: str,
        password: str,
        use_basic_auth: bool = False,
        token_ttl: float = 5 * 3600,
        limit: int = 5,
        clock: Clock = time.monotonic,
        classify_auth: AuthFailureClassifier = looks_like_auth_failure,
        credentials: CredentialCache | None = None,
    ) -> None:
        self._http = http
        self._url = url
        self._username = username
        self._password = password
        self._basic_enabled = use_basic_auth
        self._limit = limit
        self._classify_auth = classify_auth
        self.credentials = credentials or CredentialCache(
            self.authenticate, ttl=token_ttl, clock=clock
        )

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient, settings) -> "NivodaClient":
        return cls(
            http,
            url=str(settings.nivoda_api),
            username=settings.nivoda_user.get_secret_value(),
            password=settings.nivoda_pass.get_secret_value(),
            use_basic_auth=settings.use_basic_auth,
            token_ttl=settings.token_ttl_seconds,
            limit=settings.query_limit,
        )

    @property
    def auth_mode(self) -> str:
        return "basic" if self._basic_enabled else "bearer"

    # -- transport ------------------------------------------------------------
    @backoff.on_exception(
        backoff.expo,
        httpx.HTTPStatusError,
        giveup=_giveup,
        on_backoff=_backoff_hdl,
        max_tries=3,
        max_time=20,
    )
    async def _post(self, body: dict, headers: dict | None = None) -> httpx.Response:
        resp = await self._http.post(self._url, json=body, headers=headers)
        if resp.status_code in _RETRY_STATUSES:
            resp.raise_for_status()
        return resp

    async def _send(self, body: dict, headers: dict | None = None) -> tuple[httpx.Response, Any]:
        try:
            resp = await self._post(body, headers)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(f"no response within timeout ({exc.__class__.__name__})") from exc
        except httpx.HTTPStatusError as exc:
            raise UpstreamTransportError(
                "upstream unavailable after retries", status=exc.response.status_code
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamTransportError(str(exc) or exc.__class__.__name__) from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = None
        return resp, payload

    def _is_auth_failure(self, resp: httpx.Response, payload: Any) -> bool:
        return self._classify_auth(resp.status_code, payload, resp.text)

    def _basic_headers(self) -> dict:
        pair = f"{self._username}:{self._password}".encode()
        return {"Authorization": "Basic " + base64.b64encode(pair).decode()}

    # -- authentication -------------------------------------------------------
    async def authenticate(self) -> str:
        """Exchange username/password for a session token.

        Raises ``AuthenticationError`` on any failure; never retried here.
        """
        body = {
            "query": _AUTH_Q,
            "variables": {"username": self._username, "password": self._password},
        }
        try:
            resp = await self._post(body)
        except httpx.HTTPError as exc:
            raise AuthenticationError(
                f"authentication request failed ({exc.__class__.__name__})"
            ) from exc

        if not resp.is_success:
            raise AuthenticationError(f"authentication rejected (HTTP {resp.status_code})")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise AuthenticationError("authentication response is not JSON") from exc

        token = _dig(payload, "data", "authenticate", "username_and_password", "token")
        if not isinstance(token, str) or not token:
            messages = [e.get("message", "") for e in _graphql_errors(payload)]
            raise AuthenticationError(
                "authentication response carried no token"
                + (f": {'; '.join(messages)}" if messages else "")
            )
        logger.info("Nivoda authentication succeeded")
        return token

    # -- queries --------------------------------------------------------------
    async def _execute(self, basic_q: str, bearer_q: str, variables: dict, path: tuple[str, ...]):
        if self._basic_enabled:
            resp, payload = await self._send(
                {"query": basic_q, "variables": variables}, self._basic_headers()
            )
            if not self._is_auth_failure(resp, payload):
                return self._parse(resp, payload, path)
            logger.warning("Nivoda rejected basic auth; switching to bearer token mode")
            self._basic_enabled = False

        cred = await self.credentials.get()
        resp, payload = await self._send(
            {"query": bearer_q, "variables": {**variables, "token": cred.token}}
        )
        if self._is_auth_failure(resp, payload):
            logger.warning("Nivoda rejected cached token; re-authenticating once")
            self.credentials.invalidate(cred)
            cred = await self.credentials.get()
            resp, payload = await self._send(
                {"query": bearer_q, "variables": {**variables, "token": cred.token}}
            )
            if self._is_auth_failure(resp, payload):
                raise AuthenticationError("upstream rejected a freshly issued token")
        return self._parse(resp, payload, ("as",) + path)

    def _parse(self, resp: httpx.Response, payload: Any, path: tuple[str, ...]) -> UpstreamQueryResult:
        status = resp.status_code
        if not isinstance(payload, dict):
            if not resp.is_success:
                raise UpstreamTransportError("non-success status", status=status)
            raise UpstreamProtocolError(
                f"response is not a JSON object: {_snippet(resp.text)}", status=status
            )

        errors = _graphql_errors(payload)
        if errors:
            messages = "; ".join(str(e.get("message", "unknown error")) for e in errors)
            raise UpstreamApplicationError(_snippet(messages), status=status)
        if not resp.is_success:
            raise UpstreamTransportError("non-success status", status=status)

        block = _dig(payload, "data", *path)
        if not isinstance(block, dict):
            raise UpstreamProtocolError(f"missing data.{'.'.join(path)}", status=status)

        items = block.get("items") or []
        records = [DiamondRecord.from_upstream(i) for i in items if isinstance(i, dict)]
        total = block.get("total_count")
        return UpstreamQueryResult(
            status=status,
            total_count=total if isinstance(total, int) else len(records),
            records=records,
        )

    async def query_certificates(self, certificates: Sequence[str]) -> UpstreamQueryResult:
        """One round trip filtering on every string in ``certificates``."""
        certs = list(certificates)
        logger.debug(f"Nivoda query certificate_numbers={certs} mode={self.auth_mode}")
        return await self._execute(
            _BY_CERT_BASIC_Q,
            _BY_CERT_BEARER_Q,
            {"certs": certs, "limit": self._limit * max(1, len(certs))},
            ("diamonds_by_query",),
        )

    async def probe(self) -> dict:
        """Trivial authenticated round trip for the diagnostics endpoint.

        Reports mode and reachability only; the token itself is never returned.
        """
        result = await self._execute(_PROBE_BASIC_Q, _PROBE_BEARER_Q, {}, ("diamonds_by_query",))
        return {
            "authMode": self.auth_mode,
            "tokenCached": self.credentials.cached,
            "status": result.status,
            "totalCount": result.total_count,
        }
