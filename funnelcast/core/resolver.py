"""
Identity Resolver — one canonical snapshot per user, per trigger.

Order (cheapest first, freshest last):
  1. Identity Cache        — in-process, volatile
  2. Durable identity      — only when the cache has nothing strong
  3. Trigger's evidence    — merged on top with the precedence rule
  4. Write-back            — cache always; durable only on quality upgrade

Always returns a snapshot, even an empty one: an event can still be
attempted with whatever the payload builder finds usable.
"""

from sqlalchemy.exc import SQLAlchemyError

from funnelcast.core.evidence import mask
from funnelcast.core.identity import IdentitySnapshot, merge
from funnelcast.core.identity_cache import IdentityCache
from funnelcast.core.identity_store import IdentityStore
from funnelcast.core.types import Quality

import structlog

logger = structlog.get_logger()


class IdentityResolver:
    def __init__(self, cache: IdentityCache, store: IdentityStore | None = None):
        self.cache = cache
        self.store = store

    async def resolve(self, user_id: str, evidence: IdentitySnapshot | None = None) -> IdentitySnapshot:
        cached = self.cache.get(user_id)

        durable = None
        consulted = self.store is not None and (cached is None or cached.quality is Quality.FALLBACK)
        if consulted:
            try:
                durable = await self.store.load(user_id)
            except (SQLAlchemyError, OSError) as exc:
                logger.warning("identity_store_unavailable", user=mask(user_id), error=str(exc))

        base = merge(durable, cached)
        candidate = merge(base, evidence)

        # The cache re-merges against its latest entry under its lock, so a
        # concurrent put for the same user is folded in rather than lost.
        resolved = self.cache.put(user_id, candidate)

        # A real cache entry means the durable copy was written when it became real.
        baseline = durable if consulted else cached
        if self.store is not None and _improved(baseline, resolved):
            try:
                await self.store.save(user_id, resolved)
            except (SQLAlchemyError, OSError) as exc:
                logger.warning("identity_store_write_failed", user=mask(user_id), error=str(exc))

        logger.debug(
            "identity_resolved",
            user=mask(user_id),
            quality=resolved.quality.value,
            from_cache=cached is not None,
            from_store=durable is not None,
            **resolved.evidence_flags(),
        )
        return resolved


def _improved(before: IdentitySnapshot | None, after: IdentitySnapshot) -> bool:
    if after.is_empty:
        return False
    if before is None:
        return True
    return before.quality is Quality.FALLBACK and after.quality is Quality.REAL
