"""
certproxy.errors
~~~~~~~~~~~~~~~~
Exception taxonomy shared by the pipeline and the HTTP layer.

    CertProxyError
    ├── CertificateValidationError   caller input rejected (400)
    ├── AuthenticationError          no usable upstream credential (fatal)
    ├── StorefrontLookupError        storefront API failure (always absorbed)
    └── UpstreamError                attempt-scoped, recorded per variant
        ├── UpstreamTransportError
        ├── UpstreamProtocolError
        ├── UpstreamApplicationError
        └── UpstreamTimeoutError
"""

from __future__ import annotations


class CertProxyError(Exception):
    """Base class for every error raised on purpose by this service."""


class CertificateValidationError(CertProxyError):
    pass


class AuthenticationError(CertProxyError):
    """Upstream refused (or could not issue) a credential.

    The message is safe to log but is never sent to HTTP callers verbatim.
    """


class StorefrontLookupError(CertProxyError):
    pass


class UpstreamError(CertProxyError):
    kind = "upstream"

    def __init__(self, detail: str, *, status: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status = status

    def __str__(self) -> str:
        if self.status is None:
            return f"{self.kind}: {self.detail}"
        return f"{self.kind} (HTTP {self.status}): {self.detail}"


class UpstreamTransportError(UpstreamError):
    kind = "transport"


class UpstreamProtocolError(UpstreamError):
    kind = "protocol"


class UpstreamApplicationError(UpstreamError):
    kind = "application"


class UpstreamTimeoutError(UpstreamError):
    kind = "timeout"
