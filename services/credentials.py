"""
certproxy.services.credentials
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
In-memory bearer-credential cache.

• one instance per process, owned by the upstream client (never module state)
• lazy: first `get()` authenticates, later calls reuse until `expires_at`
• expired credentials are *replaced*, never mutated
• single-flight: concurrent callers during a refresh share one auth round trip
• clock + credential source are injected, so tests drive expiry by hand
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from certproxy_log import logger
from models import Credential

CredentialSource = Callable[[], Awaitable[str]]
Clock = Callable[[], float]


class CredentialCache:
    def __init__(
        self,
        source: CredentialSource,
        *,
        ttl: float,
        clock: Clock = time.monotonic,
    ) -> None:
        self._source = source
        self._ttl = ttl
        self._clock = clock
        self._credential: Credential | None = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> bool:
        """True while a fresh credential is held (no network call needed)."""
        return self._credential is not None and self._credential.is_fresh(self._clock())

    async def get(self) -> Credential:
        """Return a fresh credential, authenticating at most once per expiry.

        Raises whatever the source raises (``AuthenticationError``); nothing is
        retried here.
        """
        cred = self._credential
        if cred is not None and cred.is_fresh(self._clock()):
            return cred

        async with self._lock:
            # another task may have refreshed while we waited
            cred = self._credential
            if cred is not None and cred.is_fresh(self._clock()):
                return cred

            logger.info("Upstream credential missing or expired; authenticating")
            token = await self._source()
            cred = Credential(token=token, expires_at=self._clock() + self._ttl)
            self._credential = cred
            logger.info(f"Upstream credential cached for {self._ttl / 3600:.1f}h")
            return cred

    def invalidate(self, stale: Credential | None = None) -> None:
        """Drop the cached credential.

        When ``stale`` is given, only drop it if it is still the cached one, so
        a credential freshly issued by another task survives.
        """
        if stale is None or self._credential is stale:
            self._credential = None
