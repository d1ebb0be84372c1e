from __future__ import annotations

import logging
from typing import Iterable, List
from urllib.parse import quote

from services.media.entitlements import permits
from services.media.grants import GrantSigner, UploadGrant
from services.media.store import normalize_key
from services.shared.config import MediaSettings
from services.shared.errors import Forbidden, InvalidRequest, TtlTooLong
from services.shared.models import GrantVerb

logger = logging.getLogger("bookstore.media.authorizer")


class UploadAuthorizer:
    """Packages a principal's existing rights into a short-lived upload grant.

    It never grants more than the principal's entitlement already allows.
    """

    def __init__(self, settings: MediaSettings, signer: GrantSigner):
        self._settings = settings
        self._signer = signer

    def _verbs(self, verbs: Iterable[GrantVerb | str] | None) -> List[GrantVerb]:
        out: List[GrantVerb] = []
        for v in [GrantVerb.put] if verbs is None else verbs:
            try:
                out.append(v if isinstance(v, GrantVerb) else GrantVerb(str(v).upper()))
            except ValueError:
                raise InvalidRequest(f"verb {v!r} cannot be granted") from None
        if not out:
            raise InvalidRequest("at least one verb is required")
        return out

    def authorize(
        self,
        principal: str,
        key: str,
        verbs: Iterable[GrantVerb | str] | None = None,
        ttl_seconds: int | None = None,
    ) -> UploadGrant:
        key = normalize_key(key)
        wanted = self._verbs(verbs)

        ttl = self._settings.default_grant_ttl_seconds if ttl_seconds is None else int(ttl_seconds)
        if ttl <= 0:
            raise InvalidRequest("ttl must be positive")
        if ttl > self._settings.max_grant_ttl_seconds:
            raise TtlTooLong(f"ttl {ttl}s exceeds maximum {self._settings.max_grant_ttl_seconds}s")

        entitlement = self._settings.entitlements.get(principal)
        if entitlement is None or not permits(entitlement, key, wanted):
            logger.warning(
                "grant refused",
                extra={"principal": principal, "resource": key, "action": ",".join(v.value for v in wanted)},
            )
            raise Forbidden(
                f"{principal} is not entitled to {', '.join(v.value for v in wanted)} on {key}",
                principal=principal,
                resource=key,
                action="authorize",
            )

        grant = self._signer.sign(principal=principal, scope=key, verbs=wanted, ttl_seconds=ttl)
        logger.info("grant issued", extra={"principal": principal, "resource": key})
        return grant

    def upload_url(self, grant: UploadGrant) -> str:
        return f"{self._settings.public_base_url}/uploads/{quote(grant.scope)}?grant={grant.token}"
