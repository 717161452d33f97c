"""Error taxonomy for upstream source access and product import."""

from __future__ import annotations

from typing import Optional

import httpx


class SourceError(RuntimeError):
    """Base class for failures talking to the upstream catalog source."""
    pass


class EndpointNotAvailableError(SourceError):
    """Raised when a first-party API endpoint has not been discovered yet."""

    def __init__(self, endpoint: str):
        self.endpoint = endpoint
        super().__init__(f"API endpoint not available: {endpoint}")


class SourceNetworkError(SourceError):
    """Transport-level failure against the source (DNS, refused, timeout, TLS)."""

    def __init__(self, message: str, kind: str = "other", url: Optional[str] = None):
        self.kind = kind
        self.url = url
        super().__init__(message)


class PageLoadError(SourceNetworkError):
    """Browser navigation failed or timed out."""

    def __init__(self, url: str, reason: str, kind: str = "other"):
        self.reason = reason
        super().__init__(f"Failed to load {url}: {reason}", kind=kind, url=url)


class SourceAuthError(SourceError):
    """Login was rejected or could not be confirmed."""
    pass


class ProductValidationError(ValueError):
    """Raised when a scraped record fails schema validation."""

    def __init__(self, product_id: Optional[str], errors: list[str]):
        self.product_id = product_id
        self.errors = errors
        super().__init__(f"Invalid product {product_id or '<unknown>'}: {', '.join(errors)}")


class CategoryResolutionError(ValueError):
    """Raised when no category label can be derived for a product."""
    pass


# Substring markers checked against lowercased exception text
_DNS_MARKERS = ("name or service not known", "nodename nor servname", "getaddrinfo", "enotfound", "name resolution")
_REFUSED_MARKERS = ("connection refused", "econnrefused")
_TLS_MARKERS = ("ssl", "tls", "certificate")
_TIMEOUT_MARKERS = ("timed out", "timeout")


def classify_network_error(exc: BaseException) -> str:
    """
    Classify a transport exception for diagnostics.

    Returns one of: dns, connection_refused, timeout, tls, http, other.
    """
    if isinstance(exc, SourceNetworkError):
        return exc.kind
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.HTTPStatusError):
        return "http"

    text = str(exc).lower()
    if isinstance(exc, httpx.ConnectError) or isinstance(exc, OSError):
        if any(marker in text for marker in _DNS_MARKERS):
            return "dns"
        if any(marker in text for marker in _REFUSED_MARKERS):
            return "connection_refused"
        if any(marker in text for marker in _TLS_MARKERS):
            return "tls"
    if any(marker in text for marker in _TIMEOUT_MARKERS):
        return "timeout"
    if any(marker in text for marker in _TLS_MARKERS):
        return "tls"
    return "other"
