from __future__ import annotations

from typing import Iterable, Mapping

from passlib.context import CryptContext

from services.shared.config import Entitlement
from services.shared.models import GrantVerb

# Storage actions a backend principal can be provisioned with.
PUT_OBJECT = "PutObject"
ABORT_MULTIPART_UPLOAD = "AbortMultipartUpload"
HEAD_OBJECT = "HeadObject"
GET_OBJECT = "GetObject"

# Action a principal must already hold before the verb can be delegated.
VERB_ACTIONS: Mapping[GrantVerb, str] = {
    GrantVerb.put: PUT_OBJECT,
    GrantVerb.abort_multipart: ABORT_MULTIPART_UPLOAD,
}

# pbkdf2_sha256 avoids bcrypt backend friction in slim images.
api_key_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_api_key(api_key: str) -> str:
    return api_key_context.hash(api_key)


def has_action(entitlement: Entitlement, action: str) -> bool:
    return action in entitlement.actions


def covers_key(entitlement: Entitlement, key: str) -> bool:
    return any(key.startswith(prefix) for prefix in entitlement.prefixes)


def permits(entitlement: Entitlement, scope: str, verbs: Iterable[GrantVerb]) -> bool:
    """True when every verb maps to an action the principal already holds on ``scope``."""
    if not covers_key(entitlement, scope):
        return False
    return all(has_action(entitlement, VERB_ACTIONS[v]) for v in verbs)


class ApiKeyRegistry:
    """Maps a presented backend API key to the principal it was issued to."""

    def __init__(self, entitlements: Mapping[str, Entitlement]):
        self._entitlements = entitlements

    def principal_for(self, api_key: str | None) -> str | None:
        api_key = (api_key or "").strip()
        if not api_key:
            return None
        for ent in self._entitlements.values():
            if ent.api_key_hash and api_key_context.verify(api_key, ent.api_key_hash):
                return ent.principal
        return None
