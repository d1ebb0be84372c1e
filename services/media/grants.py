from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

import jwt

from services.shared.errors import Forbidden, GrantExpired
from services.shared.models import GrantVerb

GRANT_ISSUER = "bookstore-upload-authorizer"
GRANT_AUDIENCE = "bookstore-asset-store"
GRANT_TYPE = "upload-grant"


@dataclass(frozen=True)
class UploadGrant:
    grant_id: str
    principal: str
    # exact key, or a key prefix when it ends in "/"
    scope: str
    verbs: frozenset[GrantVerb]
    issued_at: float
    expires_at: float
    token: str = field(default="", repr=False)

    def covers(self, key: str) -> bool:
        if self.scope.endswith("/"):
            return key.startswith(self.scope)
        return key == self.scope

    def allows(self, verb: GrantVerb) -> bool:
        return verb in self.verbs


class GrantSigner:
    """HS256-signed upload grants.

    Expiry is checked against the injected clock rather than by PyJWT so the
    validity window follows the same time source that issued the grant.
    """

    def __init__(self, secret: str, *, clock: Callable[[], float] = time.time):
        self._secret = secret
        self._clock = clock

    def sign(self, *, principal: str, scope: str, verbs: Iterable[GrantVerb], ttl_seconds: int) -> UploadGrant:
        now = self._clock()
        verb_set = frozenset(verbs)
        grant_id = secrets.token_urlsafe(16)
        payload = {
            "iss": GRANT_ISSUER,
            "aud": GRANT_AUDIENCE,
            "typ": GRANT_TYPE,
            "sub": principal,
            "scope": scope,
            "verbs": sorted(v.value for v in verb_set),
            "iat": now,
            "exp": now + ttl_seconds,
            "jti": grant_id,
        }
        token = jwt.encode(payload, self._secret, algorithm="HS256")
        return UploadGrant(
            grant_id=grant_id,
            principal=principal,
            scope=scope,
            verbs=verb_set,
            issued_at=now,
            expires_at=now + ttl_seconds,
            token=token,
        )

    def verify(self, token: str | None) -> UploadGrant:
        if not token:
            raise Forbidden("upload grant required", action="PutObject")
        try:
            data = jwt.decode(
                token,
                self._secret,
                algorithms=["HS256"],
                audience=GRANT_AUDIENCE,
                issuer=GRANT_ISSUER,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": ["exp", "iat", "jti", "sub"],
                },
            )
        except jwt.InvalidTokenError as e:
            raise Forbidden(f"invalid upload grant: {e}") from None

        if data.get("typ") != GRANT_TYPE:
            raise Forbidden("token is not an upload grant", principal=data.get("sub"))
        try:
            verbs = frozenset(GrantVerb(v) for v in data.get("verbs") or [])
        except ValueError:
            raise Forbidden("upload grant carries an unknown verb", principal=data.get("sub")) from None

        grant = UploadGrant(
            grant_id=str(data["jti"]),
            principal=str(data["sub"]),
            scope=str(data.get("scope") or ""),
            verbs=verbs,
            issued_at=float(data["iat"]),
            expires_at=float(data["exp"]),
            token=token,
        )
        if self._clock() > grant.expires_at:
            raise GrantExpired(
                "upload grant expired",
                principal=grant.principal,
                resource=grant.scope,
            )
        return grant
