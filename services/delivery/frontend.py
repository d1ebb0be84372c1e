from __future__ import annotations

import logging
from typing import Tuple

from services.delivery.cache import TTLCache
from services.delivery.origin import OriginClient, OriginObject
from services.media.store import normalize_key

logger = logging.getLogger("bookstore.delivery.frontend")


class DeliveryFrontEnd:
    """Caching edge in front of the private asset store."""

    def __init__(self, origin: OriginClient, cache: TTLCache[OriginObject]):
        self.origin = origin
        self.cache = cache

    async def get(self, key: str) -> Tuple[OriginObject, bool]:
        """Return the object and whether it came from cache."""
        key = normalize_key(key)
        cached = self.cache.get(key)
        if cached is not None:
            return cached, True
        obj = await self.origin.fetch(key)
        self.cache.put(key, obj)
        logger.info("origin fetch", extra={"resource": key, "version_id": obj.version_id})
        return obj, False
