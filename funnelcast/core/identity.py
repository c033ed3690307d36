"""
Identity Snapshot — one user's freshest tracking evidence.

Quality:
  real      → at least one genuine browser cookie (_fbc or _fbp)
  fallback  → anything else (IP/UA only, or nothing)

Precedence when merging (merge() is pure and total):
  - A real snapshot is never downgraded by fallback evidence.
  - New campaign tags always propagate, even when quality can't improve.
  - A present value is never replaced by an absent one.
"""

from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone

from funnelcast.core.cookies import click_cookie_from_fbclid, is_valid_cookie
from funnelcast.core.evidence import clean_ip, clean_str, clean_user_agent
from funnelcast.core.types import Quality

CAMPAIGN_FIELDS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")
STRONG_FIELDS = ("click_cookie", "referral_cookie")
DEVICE_FIELDS = ("client_ip", "user_agent")


@dataclass(frozen=True)
class IdentitySnapshot:
    click_cookie: str | None = None      # _fbc
    referral_cookie: str | None = None   # _fbp
    client_ip: str | None = None
    user_agent: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None
    updated_at: datetime | None = None

    @property
    def quality(self) -> Quality:
        if self.click_cookie or self.referral_cookie:
            return Quality.REAL
        return Quality.FALLBACK

    @property
    def campaign(self) -> tuple[str | None, ...]:
        return tuple(getattr(self, f) for f in CAMPAIGN_FIELDS)

    @property
    def has_campaign(self) -> bool:
        return any(self.campaign)

    @property
    def is_empty(self) -> bool:
        return not any(
            getattr(self, f.name) for f in fields(self) if f.name != "updated_at"
        )

    def evidence_flags(self) -> dict[str, bool]:
        """Presence map for logging (never log the values themselves)."""
        return {
            "fbc": bool(self.click_cookie),
            "fbp": bool(self.referral_cookie),
            "ip": bool(self.client_ip),
            "ua": bool(self.user_agent),
            "utm": self.has_campaign,
        }

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def build_snapshot(
    *,
    fbc: str | None = None,
    fbp: str | None = None,
    fbclid: str | None = None,
    client_ip: str | None = None,
    user_agent: str | None = None,
    utm_source: str | None = None,
    utm_medium: str | None = None,
    utm_campaign: str | None = None,
    utm_term: str | None = None,
    utm_content: str | None = None,
    observed_at: datetime | None = None,
) -> IdentitySnapshot:
    """Normalize raw trigger evidence into a snapshot.

    Placeholder/malformed cookies, server IPs and library user agents are
    dropped. A bare fbclid is promoted to a click cookie when no valid
    _fbc came along with it.
    """
    observed_at = as_utc(observed_at) or datetime.now(timezone.utc)

    click_cookie = clean_str(fbc) if is_valid_cookie(fbc) else None
    if click_cookie is None and fbclid:
        click_cookie = click_cookie_from_fbclid(fbclid, now=observed_at.timestamp())

    return IdentitySnapshot(
        click_cookie=click_cookie,
        referral_cookie=clean_str(fbp) if is_valid_cookie(fbp) else None,
        client_ip=clean_ip(client_ip),
        user_agent=clean_user_agent(user_agent),
        utm_source=clean_str(utm_source),
        utm_medium=clean_str(utm_medium),
        utm_campaign=clean_str(utm_campaign),
        utm_term=clean_str(utm_term),
        utm_content=clean_str(utm_content),
        updated_at=observed_at,
    )


def as_utc(value: datetime | None) -> datetime | None:
    """Naive datetimes are taken as UTC; aware ones are converted to it."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _first(*values):
    for value in values:
        if value:
            return value
    return None


def _later(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(as_utc(a), as_utc(b))


def merge(current: IdentitySnapshot | None, incoming: IdentitySnapshot | None) -> IdentitySnapshot:
    """Fuse two snapshots following the quality-precedence rule."""
    if current is None and incoming is None:
        return IdentitySnapshot()
    if current is None:
        return incoming
    if incoming is None:
        return current

    # Campaign tags: a different, non-empty tag set always wins field-wise.
    if incoming.has_campaign and incoming.campaign != current.campaign:
        campaign = {f: _first(getattr(incoming, f), getattr(current, f)) for f in CAMPAIGN_FIELDS}
    else:
        campaign = {f: getattr(current, f) for f in CAMPAIGN_FIELDS}

    evidence_fields = STRONG_FIELDS + DEVICE_FIELDS
    if incoming.quality is Quality.REAL:
        # Fresher strong evidence; gaps keep what we had.
        evidence = {f: _first(getattr(incoming, f), getattr(current, f)) for f in evidence_fields}
    elif current.quality is Quality.REAL:
        # Weaker update: only fill holes.
        evidence = {f: _first(getattr(current, f), getattr(incoming, f)) for f in evidence_fields}
    else:
        evidence = {f: _first(getattr(incoming, f), getattr(current, f)) for f in evidence_fields}

    return replace(
        current,
        **evidence,
        **campaign,
        updated_at=_later(current.updated_at, incoming.updated_at),
    )
