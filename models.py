"""
certproxy.models
~~~~~~~~~~~~~~~~
Pydantic shapes for everything that flows through the resolution pipeline.

Wire-facing models serialise with camelCase aliases (``variantMatched``,
``redirectUrl`` ...) because that is what the storefront widget reads.
"""

from __future__ import annotations

from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ─────────────────────────────────────────────────────────────────────────────
# Credential
# ─────────────────────────────────────────────────────────────────────────────
class Credential(BaseModel):
    """Bearer token plus the clock reading after which it is stale."""

    model_config = ConfigDict(frozen=True)

    token: str = Field(repr=False)
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


# ─────────────────────────────────────────────────────────────────────────────
# Upstream diamond record (read-only projection)
# ─────────────────────────────────────────────────────────────────────────────
def _lenient_float(v: Any) -> Any:
    if v in ("", None):
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


class CertificateDetails(_Wire):
    cert_number: str | None = None
    lab: str | None = None
    shape: str | None = None
    carats: float | None = None
    color: str | None = None
    clarity: str | None = None
    cut: str | None = None
    polish: str | None = None
    symmetry: str | None = None

    @field_validator("carats", mode="before")
    @classmethod
    def _lenient_carats(cls, v: Any) -> Any:
        return _lenient_float(v)


class Measurements(_Wire):
    """Stone dimensions in millimetres."""

    length: float | None = None
    width: float | None = None
    height: float | None = None

    @field_validator("length", "width", "height", mode="before")
    @classmethod
    def _lenient_mm(cls, v: Any) -> Any:
        return _lenient_float(v)


class Media(_Wire):
    image: str | None = None
    video: str | None = None


class DiamondRecord(_Wire):
    id: str
    certificate: CertificateDetails = Field(default_factory=CertificateDetails)
    measurements: Measurements = Field(default_factory=Measurements)
    price: float | None = None
    availability: str | None = None
    media: Media = Field(default_factory=Media)

    @classmethod
    def from_upstream(cls, item: dict) -> "DiamondRecord":
        """Build from one ``diamonds_by_query.items[]`` entry.

        Every nested field is optional; upstream omits freely.
        """
        diamond = item.get("diamond") or {}
        cert = diamond.get("certificate") or {}
        mm = diamond.get("measurements") or {}
        price = item.get("price")
        return cls(
            id=str(item.get("id") or diamond.get("id") or ""),
            certificate=CertificateDetails(
                cert_number=cert.get("certNumber"),
                lab=cert.get("lab"),
                shape=cert.get("shape"),
                carats=cert.get("carats"),
                color=cert.get("color"),
                clarity=cert.get("clarity"),
                cut=cert.get("cut"),
                polish=cert.get("polish"),
                symmetry=cert.get("symmetry"),
            ),
            measurements=Measurements(
                length=mm.get("length"), width=mm.get("width"), height=mm.get("height")
            ),
            price=float(price) if isinstance(price, (int, float)) else None,
            availability=item.get("availability"),
            media=Media(image=diamond.get("image"), video=diamond.get("video")),
        )


class UpstreamQueryResult(BaseModel):
    """Successful (parsed, error-free) upstream answer; may hold zero records."""

    status: int
    total_count: int = 0
    records: List[DiamondRecord] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# Pipeline output
# ─────────────────────────────────────────────────────────────────────────────
class AttemptRecord(_Wire):
    variant: str
    status: int | None = None
    total: int = 0
    error_kind: str | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error_kind is not None


class ResolutionResult(_Wire):
    found: bool
    variant_matched: str | None = None
    redirect_url: str | None = None
    diamond: DiamondRecord | None = None
    attempts: List[AttemptRecord] = Field(default_factory=list)
    deadline_exceeded: bool = False

    @model_validator(mode="after")
    def _match_is_complete(self) -> "ResolutionResult":
        if self.found and (self.diamond is None or not self.redirect_url):
            raise ValueError("a found result needs both a diamond and a redirect URL")
        return self

    @property
    def upstream_unavailable(self) -> bool:
        """True when nothing was found *because* every attempt errored."""
        return not self.found and bool(self.attempts) and all(a.failed for a in self.attempts)
