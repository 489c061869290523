"""
Certificate variant generator.

Shoppers type certificate numbers inconsistently: lower-case, with spaces or
dashes, with or without the lab's prefix, with leading zeros dropped. The
supplier stores one canonical form. Rather than fuzzy matching, we try a small
fixed set of rewrites in a fixed order:

    raw → upper → lower → no-whitespace → alphanumeric-only → no-leading-zeros
        → lab-prefix-stripped → prefix-stripped-no-leading-zeros
        → zero-padded → digits-only

Certificates that need any other rewrite are not found; that is a known
limitation of the approach.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Sequence

DEFAULT_LAB_PREFIXES: tuple[str, ...] = ("LG", "GIA", "IGI", "HRD")
DEFAULT_MIN_LENGTH = 3
DEFAULT_PAD_WIDTH = 10

_WS = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^0-9A-Za-z]+")
_NON_DIGIT = re.compile(r"\D+")


def _strip_prefix(value: str, prefixes: Sequence[str]) -> str:
    upper = value.upper()
    # longest prefix first so "IGI" is not shadowed by a shorter code
    for prefix in sorted(prefixes, key=len, reverse=True):
        if prefix and upper.startswith(prefix) and len(value) > len(prefix):
            return value[len(prefix):]
    return value


def _dedupe(candidates: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for c in candidates:
        if c not in seen:
            seen.add(c)
            out.append(c)
    return out


def generate_variants(
    raw: str,
    *,
    lab_prefixes: Sequence[str] = DEFAULT_LAB_PREFIXES,
    min_length: int = DEFAULT_MIN_LENGTH,
    pad_width: int = DEFAULT_PAD_WIDTH,
) -> List[str]:
    """Return the ordered, de-duplicated candidate list for ``raw``.

    The trimmed input is always first (when it passes the length filter).
    Never raises; an empty input yields an empty list.
    """
    cert = (raw or "").strip()
    if not cert:
        return []

    compact = _WS.sub("", cert)
    alnum = _NON_ALNUM.sub("", cert)
    unprefixed = _strip_prefix(alnum, lab_prefixes)
    unprefixed_unpadded = unprefixed.lstrip("0")
    digits = _NON_DIGIT.sub("", cert)

    padded = ""
    if unprefixed_unpadded.isdigit() and len(unprefixed_unpadded) < pad_width:
        padded = unprefixed_unpadded.zfill(pad_width)

    candidates = [
        cert,
        cert.upper(),
        cert.lower(),
        compact,
        alnum,
        alnum.lstrip("0"),
        unprefixed,
        unprefixed_unpadded,
        padded,
        digits,
    ]
    return [c for c in _dedupe(candidates) if len(c) >= min_length]


def normalise_for_compare(value: str | None) -> str:
    """Case- and punctuation-insensitive key used to attribute batched matches."""
    return _NON_ALNUM.sub("", value or "").upper()
