from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any

from redis import Redis


@dataclass(frozen=True)
class RedisClient:
    url: str

    def connect(self) -> Any:
        # decode_responses=True keeps values as str which simplifies comparisons.
        return Redis.from_url(self.url, decode_responses=True)


class GrantLedger:
    """Records redeemed upload-grant ids until the grant would have expired anyway.

    With Redis configured the ledger is shared across replicas (SET NX + EX);
    without it the ledger is process-local.
    """

    def __init__(self, *, redis_url: str | None, prefix: str = "bookstore:grants"):
        self._redis_url = redis_url
        self._prefix = prefix
        self._local: dict[str, float] = {}
        self._lock = threading.Lock()

    def _key(self, grant_id: str) -> str:
        return f"{self._prefix}:used:{grant_id}"

    def redeem(self, grant_id: str, *, expires_at: float, now: float | None = None) -> bool:
        """Mark ``grant_id`` used. Returns False when it was already redeemed."""
        grant_id = (grant_id or "").strip()
        if not grant_id:
            return False
        now = time.time() if now is None else now
        ttl_seconds = max(1, int(expires_at - now) + 1)

        if self._redis_url:
            r = RedisClient(self._redis_url).connect()
            # NX makes the first redeemer win; value doesn't matter.
            return bool(r.set(self._key(grant_id), "1", ex=ttl_seconds, nx=True))

        with self._lock:
            # drop entries whose grant has expired; they can never be presented again
            for gid, exp in list(self._local.items()):
                if exp <= now:
                    del self._local[gid]
            if grant_id in self._local:
                return False
            self._local[grant_id] = expires_at
            return True

    def is_redeemed(self, grant_id: str) -> bool:
        grant_id = (grant_id or "").strip()
        if not grant_id:
            return False
        if self._redis_url:
            r = RedisClient(self._redis_url).connect()
            return bool(r.exists(self._key(grant_id)))
        with self._lock:
            return grant_id in self._local
