from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Union

import jwt

from services.shared.config import OriginIdentitySettings
from services.shared.errors import ConfigError, Forbidden

ORIGIN_AUDIENCE = "bookstore-asset-store"
ORIGIN_TOKEN_TYPE = "origin-access"


@dataclass(frozen=True)
class Create:
    """Provision a fresh origin identity trusted by ``trust_principal``."""

    trust_principal: str


@dataclass(frozen=True)
class AttachExisting:
    """Reuse an identity that already exists outside this system."""

    role_ref: str


IdentityProvisioning = Union[Create, AttachExisting]


@dataclass(frozen=True)
class OriginIdentity:
    name: str
    provisioning: IdentityProvisioning


def provisioning_from_settings(settings: OriginIdentitySettings) -> IdentityProvisioning:
    if settings.provisioning == "attach":
        if not settings.role_ref:
            raise ConfigError("media.origin_identity.role_ref is required when provisioning=attach")
        return AttachExisting(role_ref=settings.role_ref)
    if not settings.trust_principal:
        raise ConfigError("media.origin_identity.trust_principal is required when provisioning=create")
    return Create(trust_principal=settings.trust_principal)


def resolve_origin_identity(provisioning: IdentityProvisioning, *, environment: str) -> OriginIdentity:
    """Settle the delivery front end's identity once, at startup."""
    if isinstance(provisioning, AttachExisting):
        return OriginIdentity(name=provisioning.role_ref, provisioning=provisioning)
    name = f"bookstore:{environment}:origin-access/{provisioning.trust_principal}"
    return OriginIdentity(name=name, provisioning=provisioning)


class OriginAccessTokens:
    """Short-lived tokens proving a request comes from the delivery front end."""

    def __init__(
        self,
        secret: str,
        identity: OriginIdentity,
        *,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = secret
        self.identity = identity
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def mint(self) -> str:
        now = self._clock()
        payload = {
            "aud": ORIGIN_AUDIENCE,
            "typ": ORIGIN_TOKEN_TYPE,
            "sub": self.identity.name,
            "iat": now,
            "exp": now + self._ttl_seconds,
        }
        return jwt.encode(payload, self._secret, algorithm="HS256")

    def principal_of(self, token: str | None) -> str:
        """Return the authenticated principal behind ``token``; Forbidden otherwise."""
        if not token:
            raise Forbidden("origin access token required", principal="anonymous", action="GetObject")
        try:
            data = jwt.decode(
                token,
                self._secret,
                algorithms=["HS256"],
                audience=ORIGIN_AUDIENCE,
                options={"verify_exp": False, "verify_iat": False, "require": ["exp", "sub"]},
            )
        except jwt.InvalidTokenError as e:
            raise Forbidden(f"invalid origin access token: {e}", principal="anonymous", action="GetObject") from None
        if data.get("typ") != ORIGIN_TOKEN_TYPE:
            raise Forbidden("token is not an origin access token", principal=data.get("sub"), action="GetObject")
        if self._clock() > float(data["exp"]):
            raise Forbidden("origin access token expired", principal=data.get("sub"), action="GetObject")
        return str(data["sub"])
