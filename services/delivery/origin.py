"""HTTP client the delivery front end uses to read from the asset store.

Every request carries a freshly minted origin-access token; that token is the
only credential the asset store accepts for reads.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote

import httpx

from services.media.identity import OriginAccessTokens
from services.shared.errors import ObjectNotFound


class OriginError(Exception):
    """The asset store answered with something the front end cannot serve."""


@dataclass(frozen=True)
class OriginObject:
    key: str
    body: bytes
    content_type: str
    etag: str
    version_id: str


class OriginClient:
    def __init__(
        self,
        base_url: str,
        tokens: OriginAccessTokens,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._tokens = tokens
        self._timeout = timeout
        self._transport = transport

    async def fetch(self, key: str) -> OriginObject:
        url = f"{self._base_url}/internal/objects/{quote(key)}"
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.get(url, headers={"X-Origin-Access": self._tokens.mint()})

        if resp.status_code == 404:
            raise ObjectNotFound(f"no object {key!r}", resource=key)
        if resp.status_code != 200:
            raise OriginError(f"origin returned {resp.status_code} for {key!r}")

        return OriginObject(
            key=key,
            body=resp.content,
            content_type=resp.headers.get("content-type", "application/octet-stream"),
            etag=resp.headers.get("etag", ""),
            version_id=resp.headers.get("x-version-id", ""),
        )
