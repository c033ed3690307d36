"""
Browser cookie helpers — _fbc (click cookie) and _fbp (referral cookie).

Formats:
  _fbc  →  fb.{subdomain_index}.{creation_ms}.{fbclid}
  _fbp  →  fb.{subdomain_index}.{creation_ms}.{random}

- subdomain_index → 0..2 (number of domain labels the cookie was set on)
- creation_ms     → unix time in milliseconds
- fbclid/random   → opaque token, kept verbatim (case-sensitive)

Pages that could not read the real cookie sometimes send placeholders
containing "FALLBACK"; those never count as evidence.
"""

import re
import time
from dataclasses import dataclass

from funnelcast.core.evidence import clean_str

_COOKIE_RE = re.compile(r"^fb\.(\d)\.(\d{10,13})\.(.+)$")


@dataclass(frozen=True)
class BrowserCookie:
    subdomain_index: int
    created_ms: int
    token: str

    def __str__(self) -> str:
        return f"fb.{self.subdomain_index}.{self.created_ms}.{self.token}"


def parse_cookie(raw: str | None) -> BrowserCookie | None:
    """Parse a _fbc/_fbp value. Returns None for anything malformed."""
    value = clean_str(raw)
    if value is None or "fallback" in value.lower():
        return None
    match = _COOKIE_RE.match(value)
    if not match:
        return None
    index, created, token = match.groups()
    if int(index) > 2 or not token.strip():
        return None
    return BrowserCookie(subdomain_index=int(index), created_ms=int(created), token=token)


def is_valid_cookie(raw: str | None) -> bool:
    return parse_cookie(raw) is not None


def click_cookie_from_fbclid(fbclid: str | None, now: float | None = None) -> str | None:
    """Derive a _fbc value from a raw fbclid URL parameter."""
    token = clean_str(fbclid)
    if token is None or "fallback" in token.lower():
        return None
    created_ms = int((now if now is not None else time.time()) * 1000)
    return str(BrowserCookie(subdomain_index=1, created_ms=created_ms, token=token))
