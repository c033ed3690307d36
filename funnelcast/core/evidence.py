"""
Evidence hygiene — decides which raw tracking signals are worth keeping.

Server-side triggers (payment webhooks, the bot process, the cron sweep)
often carry their own IP and HTTP-library user agent instead of the buyer's.
Those values look like evidence but identify our infrastructure, so they are
scrubbed to "absent" before any merge or payload build.

Signals:
  1. Loopback / private-network IPs          → absent
  2. Automation or HTTP-library user agents  → absent
  3. Crawler user agents (user-agents lib)   → absent
  4. Placeholder cookies ("FALLBACK")        → absent (see cookies.py)
"""

import hashlib
import ipaddress
import re

from user_agents import parse as parse_ua

# --- Server-side HTTP clients (never a real buyer) ---
SERVER_UA_PATTERNS: list[re.Pattern] = [
    re.compile(p, re.IGNORECASE) for p in [
        r"^axios/",
        r"^node-fetch",
        r"^undici",
        r"^got \(",
        r"python-requests",
        r"python-httpx",
        r"python-urllib",
        r"aiohttp",
        r"Go-http-client",
        r"^curl/",
        r"^wget/",
        r"okhttp",
        r"java/",
        r"HeadlessChrome",
        r"TelegramBot",
    ]
]


def clean_str(value) -> str | None:
    """Trim; empty or non-string → None."""
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    return value or None


def is_server_ip(ip: str | None) -> bool:
    """True for addresses that can only be our own infrastructure."""
    if not ip:
        return True
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return True
    return addr.is_loopback or addr.is_private or addr.is_unspecified or addr.is_link_local


def is_server_user_agent(ua: str | None) -> bool:
    """True for HTTP libraries, headless browsers and crawlers."""
    if not ua:
        return True
    for pattern in SERVER_UA_PATTERNS:
        if pattern.search(ua):
            return True
    return parse_ua(ua).is_bot


def clean_ip(value) -> str | None:
    ip = clean_str(value)
    if ip is None or is_server_ip(ip):
        return None
    return ip


def clean_user_agent(value) -> str | None:
    ua = clean_str(value)
    if ua is None or is_server_user_agent(ua):
        return None
    return ua


def mask(value) -> str | None:
    """Log-safe fingerprint of an identifier (never log raw ids or PII)."""
    if value is None or value == "":
        return None
    return hashlib.sha256(str(value).encode("utf-8")).hexdigest()[:12]
