from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

ALLOWED_METHODS = "GET, POST, DELETE, OPTIONS"
ALLOWED_HEADERS = "Content-Type, Authorization, X-Request-ID"

_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}

SECURITY_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-store",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "same-origin",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains",
}


@dataclass(frozen=True)
class OriginDecision:
    allowed: bool
    allow_origin: Optional[str] = None

    def cors_headers(self) -> Dict[str, str]:
        if not self.allowed or not self.allow_origin:
            return {}
        return {
            "Access-Control-Allow-Origin": self.allow_origin,
            "Access-Control-Allow-Credentials": "true",
            "Access-Control-Allow-Methods": ALLOWED_METHODS,
            "Access-Control-Allow-Headers": ALLOWED_HEADERS,
            "Vary": "Origin",
        }


def _parse(origin: str) -> Optional[Tuple[str, str]]:
    """Split an origin into ``(scheme, host)``; ``None`` if it is not a URL origin."""
    try:
        parts = urlsplit(origin.strip())
        parts.port  # raises ValueError on a malformed port
    except ValueError:
        return None
    host = (parts.hostname or "").strip("[]").lower()
    if not parts.scheme or not host:
        return None
    return parts.scheme.lower(), host


def is_loopback(origin: str) -> bool:
    parsed = _parse(origin)
    return parsed is not None and parsed[1] in _LOOPBACK_HOSTS


class OriginPolicy:
    """Decides whether a browser origin may receive a response."""

    def __init__(self, allowed_origins: Iterable[str]) -> None:
        self.allowed: List[str] = [o.strip().rstrip("/") for o in allowed_origins if o.strip()]
        self.wildcard = "*" in self.allowed

    def resolve(self, origin: Optional[str]) -> OriginDecision:
        if origin is None or not origin.strip():
            return OriginDecision(allowed=True)
        origin = origin.strip()
        parsed = _parse(origin)
        if parsed is None:
            return OriginDecision(allowed=False)
        # Loopback on any port is allowed, which also covers allowlisted
        # loopback entries that differ only in host spelling.
        if parsed[1] in _LOOPBACK_HOSTS:
            return OriginDecision(allowed=True, allow_origin=origin)
        if origin.rstrip("/") in self.allowed or self.wildcard:
            # echo the caller's origin; "*" is invalid with credentials
            return OriginDecision(allowed=True, allow_origin=origin)
        return OriginDecision(allowed=False)
