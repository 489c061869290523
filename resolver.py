"""
certproxy.resolver
==================
Certificate-resolution pipeline.

    START → NORMALIZING → QUERYING(variant i) → MATCHED | EXHAUSTED

* variants are tried strictly in generator order; the first variant that
  reports any match wins, and its first record is used
* every attempt (hit, miss or upstream error) lands in ``attempts``
* upstream errors are attempt-scoped; ``AuthenticationError`` is not and
  aborts the whole resolution
* an overall deadline bounds the loop; the attempt that runs out of budget
  is recorded as a timeout
"""

from __future__ import annotations

import asyncio
import enum
import time
from functools import partial
from typing import Callable, List, Literal, Protocol, Sequence

from certproxy_log import logger
from errors import UpstreamError, UpstreamTimeoutError
from models import AttemptRecord, DiamondRecord, ResolutionResult, UpstreamQueryResult
from variants import generate_variants, normalise_for_compare

QueryStrategy = Literal["sequential", "batched"]


class UpstreamClient(Protocol):
    async def query_certificates(self, certificates: Sequence[str]) -> UpstreamQueryResult: ...


class UrlResolver(Protocol):
    async def resolve_url(self, record: DiamondRecord, matched_variant: str) -> str: ...


class ResolutionState(str, enum.Enum):
    START = "start"
    NORMALIZING = "normalizing"
    QUERYING = "querying"
    MATCHED = "matched"
    EXHAUSTED = "exhausted"


class CertificateResolver:
    def __init__(
        self,
        upstream: UpstreamClient,
        storefront: UrlResolver,
        *,
        generate: Callable[[str], List[str]] = generate_variants,
        strategy: QueryStrategy = "sequential",
        deadline: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._upstream = upstream
        self._storefront = storefront
        self._generate = generate
        self._strategy = strategy
        self._deadline = deadline
        self._clock = clock

    @classmethod
    def from_settings(cls, upstream, storefront, settings) -> "CertificateResolver":
        return cls(
            upstream,
            storefront,
            generate=partial(
                generate_variants,
                lab_prefixes=settings.lab_prefixes,
                min_length=settings.cert_min_length,
                pad_width=settings.cert_pad_width,
            ),
            strategy=settings.query_strategy,
            deadline=settings.pipeline_deadline,
        )

    def variants(self, raw: str) -> List[str]:
        return self._generate(raw)

    # ------------------------------------------------------------------ #
    async def resolve(self, raw: str) -> ResolutionResult:
        logger.info(f"[{ResolutionState.START.value}] resolving certificate {raw!r}")

        state = ResolutionState.NORMALIZING
        variants = self._generate(raw)
        logger.debug(f"[{state.value}] variants={variants}")
        if not variants:
            logger.info(f"[{ResolutionState.EXHAUSTED.value}] no usable variants for {raw!r}")
            return ResolutionResult(found=False)

        state = ResolutionState.QUERYING
        started = self._clock()
        if self._strategy == "batched":
            outcome = await self._query_batched(variants, started)
            if outcome is None:
                logger.info("Batched matches not attributable to a variant; retrying sequentially")
                outcome = await self._query_sequential(variants, started)
        else:
            outcome = await self._query_sequential(variants, started)

        attempts, match, deadline_exceeded = outcome
        if match is None:
            state = ResolutionState.EXHAUSTED
            logger.info(
                f"[{state.value}] {raw!r}: no match across {len(attempts)} attempt(s)"
                + (" (deadline exceeded)" if deadline_exceeded else "")
            )
            return ResolutionResult(
                found=False, attempts=attempts, deadline_exceeded=deadline_exceeded
            )

        state = ResolutionState.MATCHED
        variant, record = match
        logger.info(f"[{state.value}] {raw!r} matched via {variant!r} → diamond {record.id}")
        url = await self._storefront.resolve_url(record, variant)
        return ResolutionResult(
            found=True,
            variant_matched=variant,
            redirect_url=url,
            diamond=record,
            attempts=attempts,
        )

    # ------------------------------------------------------------------ #
    def _remaining(self, started: float) -> float:
        return self._deadline - (self._clock() - started)

    async def _query_once(self, certs: Sequence[str], started: float) -> UpstreamQueryResult:
        remaining = self._remaining(started)
        if remaining <= 0:
            raise UpstreamTimeoutError("pipeline deadline exceeded before attempt")
        try:
            return await asyncio.wait_for(self._upstream.query_certificates(certs), timeout=remaining)
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeoutError("pipeline deadline exceeded during attempt") from exc

    async def _query_sequential(self, variants: List[str], started: float):
        attempts: List[AttemptRecord] = []
        for variant in variants:
            try:
                result = await self._query_once([variant], started)
            except UpstreamError as exc:
                logger.warning(f"Attempt {variant!r} failed: {exc}")
                attempts.append(
                    AttemptRecord(
                        variant=variant, status=exc.status, error_kind=exc.kind, error=exc.detail
                    )
                )
                if self._remaining(started) <= 0:
                    return attempts, None, True
                continue

            attempts.append(
                AttemptRecord(variant=variant, status=result.status, total=result.total_count)
            )
            if result.total_count > 0 and result.records:
                return attempts, (variant, result.records[0]), False
        return attempts, None, False

    async def _query_batched(self, variants: List[str], started: float):
        """Single round trip; ``None`` means matches exist but can't be attributed."""
        try:
            result = await self._query_once(variants, started)
        except UpstreamError as exc:
            logger.warning(f"Batched attempt failed: {exc}")
            attempts = [
                AttemptRecord(variant=v, status=exc.status, error_kind=exc.kind, error=exc.detail)
                for v in variants
            ]
            return attempts, None, self._remaining(started) <= 0

        exact: dict[str, List[DiamondRecord]] = {}
        loose: set[str] = set()
        for record in result.records:
            cert = record.certificate.cert_number or ""
            exact.setdefault(cert, []).append(record)
            loose.add(normalise_for_compare(cert))

        attempts: List[AttemptRecord] = []
        match = None
        for variant in variants:
            hits = exact.get(variant, [])
            if not hits and normalise_for_compare(variant) in loose:
                # upstream may have matched this spelling too; only a
                # per-variant round trip can tell
                return None
            attempts.append(AttemptRecord(variant=variant, status=result.status, total=len(hits)))
            if hits:
                match = (variant, hits[0])
                break

        if match is None and result.total_count > 0:
            return None
        return attempts, match, False
