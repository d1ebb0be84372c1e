from __future__ import annotations

from dataclasses import replace

import pytest
from cryptography.fernet import Fernet

from services.media.authorizer import UploadAuthorizer
from services.media.entitlements import (
    ABORT_MULTIPART_UPLOAD,
    GET_OBJECT,
    HEAD_OBJECT,
    PUT_OBJECT,
    ApiKeyRegistry,
    hash_api_key,
)
from services.media.grants import GrantSigner
from services.media.identity import (
    AttachExisting,
    Create,
    OriginAccessTokens,
    provisioning_from_settings,
    resolve_origin_identity,
)
from services.media.store import AssetStore, FileBackend
from services.shared.config import Entitlement, MediaSettings, OriginIdentitySettings
from services.shared.errors import (
    ConfigError,
    Forbidden,
    GrantExpired,
    InvalidRequest,
    ObjectNotFound,
    TtlTooLong,
    UploadNotFound,
)
from services.shared.models import GrantVerb
from services.shared.redis_helpers import GrantLedger

ORIGIN = "bookstore:test:origin-access/delivery-frontend"
COVER = b"\x89PNG\r\n\x1a\n" + b"cover-bytes" * 10


class FakeClock:
    def __init__(self, t: float = 1_700_000_000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


def _settings(**overrides) -> MediaSettings:
    base = MediaSettings(
        entitlements={
            "backend": Entitlement(
                principal="backend",
                api_key_hash=None,
                prefixes=("covers/",),
                actions=frozenset({PUT_OBJECT, ABORT_MULTIPART_UPLOAD, HEAD_OBJECT, GET_OBJECT}),
            ),
            "uploader": Entitlement(
                principal="uploader",
                api_key_hash=None,
                prefixes=("covers/",),
                actions=frozenset({PUT_OBJECT}),
            ),
        },
    )
    return replace(base, **overrides)


def _pipeline(clock, backend=None, cipher=None, **overrides):
    settings = _settings(**overrides)
    signer = GrantSigner("grant-secret", clock=clock)
    store = AssetStore(
        settings=settings,
        origin_identity=ORIGIN,
        signer=signer,
        cipher=cipher or Fernet(Fernet.generate_key()),
        backend=backend,
        ledger=GrantLedger(redis_url=None),
        clock=clock,
    )
    return UploadAuthorizer(settings, signer), store


def test_grant_valid_for_its_window_then_forbidden():
    clock = FakeClock()
    authz, store = _pipeline(clock, single_use_grants=False)

    grant = authz.authorize("backend", "covers/123.jpg", [GrantVerb.put], 300)
    clock.advance(300)
    version = store.put("covers/123.jpg", COVER, "image/jpeg", grant_token=grant.token)
    assert version.principal == "backend"

    clock.advance(1)
    with pytest.raises(Forbidden) as exc:
        store.put("covers/123.jpg", COVER, "image/jpeg", grant_token=grant.token)
    assert isinstance(exc.value, GrantExpired)


def test_upload_then_origin_read_round_trip():
    clock = FakeClock()
    authz, store = _pipeline(clock)
    grant = authz.authorize("backend", "covers/9.png", ["PUT"], 60)
    version = store.put("covers/9.png", COVER, "image/png", grant_token=grant.token)

    obj = store.get("covers/9.png", principal=ORIGIN)
    assert obj.data == COVER
    assert obj.content_type == "image/png"
    assert obj.version_id == version.version_id


def test_reads_from_anyone_but_the_origin_identity_are_forbidden():
    clock = FakeClock()
    authz, store = _pipeline(clock)
    grant = authz.authorize("backend", "covers/1.jpg", ["PUT"], 60)
    store.put("covers/1.jpg", COVER, "image/jpeg", grant_token=grant.token)

    for principal in ("backend", "anonymous", "bookstore:test:origin-access/someone-else"):
        with pytest.raises(Forbidden):
            store.get("covers/1.jpg", principal=principal)
        with pytest.raises(Forbidden):
            store.versions("covers/1.jpg", principal=principal)


def test_grant_for_one_key_does_not_cover_another():
    clock = FakeClock()
    authz, store = _pipeline(clock)
    grant = authz.authorize("backend", "covers/123.jpg", ["PUT"], 60)
    with pytest.raises(Forbidden):
        store.put("covers/999.jpg", COVER, "image/jpeg", grant_token=grant.token)
    with pytest.raises(Forbidden):
        store.put("covers/123.jpg.bak", COVER, "image/jpeg", grant_token=grant.token)


def test_prefix_grant_covers_keys_beneath_it():
    clock = FakeClock()
    authz, store = _pipeline(clock, single_use_grants=False)
    grant = authz.authorize("backend", "covers/series-7/", ["PUT"], 60)
    store.put("covers/series-7/a.jpg", COVER, "image/jpeg", grant_token=grant.token)
    with pytest.raises(Forbidden):
        store.put("covers/series-8/a.jpg", COVER, "image/jpeg", grant_token=grant.token)


def test_single_use_grant_cannot_be_replayed():
    clock = FakeClock()
    authz, store = _pipeline(clock)
    grant = authz.authorize("backend", "covers/2.jpg", ["PUT"], 60)
    store.put("covers/2.jpg", COVER, "image/jpeg", grant_token=grant.token)
    with pytest.raises(Forbidden):
        store.put("covers/2.jpg", COVER, "image/jpeg", grant_token=grant.token)


def test_tampered_or_missing_grant_is_forbidden():
    clock = FakeClock()
    authz, store = _pipeline(clock)
    grant = authz.authorize("backend", "covers/3.jpg", ["PUT"], 60)
    other_signer = GrantSigner("someone-elses-secret", clock=clock)
    forged = other_signer.sign(principal="backend", scope="covers/3.jpg", verbs=[GrantVerb.put], ttl_seconds=60)

    with pytest.raises(Forbidden):
        store.put("covers/3.jpg", COVER, "image/jpeg", grant_token=forged.token)
    with pytest.raises(Forbidden):
        store.put("covers/3.jpg", COVER, "image/jpeg", grant_token=grant.token[:-4] + "AAAA")
    with pytest.raises(Forbidden):
        store.put("covers/3.jpg", COVER, "image/jpeg", grant_token=None)


def test_upload_grant_is_not_an_origin_credential():
    clock = FakeClock()
    authz, _ = _pipeline(clock)
    grant = authz.authorize("backend", "covers/4.jpg", ["PUT"], 60)
    identity = resolve_origin_identity(Create("delivery-frontend"), environment="test")
    tokens = OriginAccessTokens("origin-secret", identity, clock=clock)
    with pytest.raises(Forbidden):
        tokens.principal_of(grant.token)
    assert tokens.principal_of(tokens.mint()) == ORIGIN


def test_ttl_is_bounded():
    authz, _ = _pipeline(FakeClock(), max_grant_ttl_seconds=600)
    with pytest.raises(TtlTooLong):
        authz.authorize("backend", "covers/5.jpg", ["PUT"], 601)
    with pytest.raises(InvalidRequest):
        authz.authorize("backend", "covers/5.jpg", ["PUT"], 0)
    assert authz.authorize("backend", "covers/5.jpg", ["PUT"], 600).expires_at > 0


def test_authorizer_never_exceeds_existing_entitlement():
    authz, _ = _pipeline(FakeClock())
    with pytest.raises(Forbidden):
        authz.authorize("stranger", "covers/6.jpg", ["PUT"], 60)
    with pytest.raises(Forbidden):
        authz.authorize("backend", "avatars/6.jpg", ["PUT"], 60)
    with pytest.raises(Forbidden):
        authz.authorize("uploader", "covers/6.jpg", ["PUT", "ABORT_MULTIPART"], 60)
    with pytest.raises(InvalidRequest):
        authz.authorize("backend", "covers/6.jpg", ["GET"], 60)


def test_versions_are_retained_and_last_write_is_current():
    clock = FakeClock()
    authz, store = _pipeline(clock, single_use_grants=False)
    grant = authz.authorize("backend", "covers/7.jpg", ["PUT"], 60)
    v1 = store.put("covers/7.jpg", b"first", "image/jpeg", grant_token=grant.token)
    v2 = store.put("covers/7.jpg", b"second", "image/jpeg", grant_token=grant.token)

    assert store.get("covers/7.jpg", principal=ORIGIN).data == b"second"
    assert store.get("covers/7.jpg", principal=ORIGIN, version_id=v1.version_id).data == b"first"
    assert [v.version_id for v in store.versions("covers/7.jpg", principal=ORIGIN)] == [v1.version_id, v2.version_id]

    v3 = store.rollback("covers/7.jpg", v1.version_id, grant_token=grant.token)
    assert store.get("covers/7.jpg", principal=ORIGIN).version_id == v3.version_id
    assert store.get("covers/7.jpg", principal=ORIGIN).data == b"first"
    assert len(store.versions("covers/7.jpg", principal=ORIGIN)) == 3


def test_missing_object_and_version():
    _, store = _pipeline(FakeClock())
    with pytest.raises(ObjectNotFound):
        store.get("covers/none.jpg", principal=ORIGIN)


def test_content_type_and_size_are_checked():
    clock = FakeClock()
    authz, store = _pipeline(clock, max_object_bytes=16)
    grant = authz.authorize("backend", "covers/8.jpg", ["PUT"], 60)
    with pytest.raises(InvalidRequest):
        store.put("covers/8.jpg", b"<html>", "text/html", grant_token=grant.token)
    with pytest.raises(InvalidRequest):
        store.put("covers/8.jpg", b"x" * 17, "image/jpeg", grant_token=grant.token)


def test_objects_are_encrypted_on_disk_and_survive_restart(tmp_path):
    clock = FakeClock()
    cipher = Fernet(Fernet.generate_key())
    authz, store = _pipeline(clock, backend=FileBackend(tmp_path), cipher=cipher)
    grant = authz.authorize("backend", "covers/disk.png", ["PUT"], 60)
    version = store.put("covers/disk.png", COVER, "image/png", grant_token=grant.token)

    blobs = list((tmp_path / "objects").rglob("*.bin"))
    assert len(blobs) == 1
    assert b"cover-bytes" not in blobs[0].read_bytes()

    _, reopened = _pipeline(clock, backend=FileBackend(tmp_path), cipher=cipher)
    obj = reopened.get("covers/disk.png", principal=ORIGIN)
    assert obj.data == COVER
    assert obj.version_id == version.version_id


def test_multipart_upload_and_abort():
    clock = FakeClock()
    authz, store = _pipeline(clock)

    put_grant = authz.authorize("backend", "covers/big.jpg", ["PUT"], 60)
    upload_id = store.create_multipart("covers/big.jpg", grant_token=put_grant.token)
    store.upload_part(upload_id, 2, b"-tail", grant_token=put_grant.token)
    store.upload_part(upload_id, 1, b"head", grant_token=put_grant.token)
    store.complete_multipart(upload_id, "image/jpeg", grant_token=put_grant.token)
    assert store.get("covers/big.jpg", principal=ORIGIN).data == b"head-tail"

    both = authz.authorize("backend", "covers/big2.jpg", ["PUT", "ABORT_MULTIPART"], 60)
    upload_id = store.create_multipart("covers/big2.jpg", grant_token=both.token)
    with pytest.raises(Forbidden):
        store.abort_multipart(upload_id, grant_token=put_grant.token)
    store.abort_multipart(upload_id, grant_token=both.token)
    with pytest.raises(ObjectNotFound):
        store.get("covers/big2.jpg", principal=ORIGIN)


def test_bad_keys_are_rejected():
    authz, _ = _pipeline(FakeClock())
    for key in ("", "/covers/a.jpg", "covers/../secrets", "covers//a.jpg"):
        with pytest.raises(InvalidRequest):
            authz.authorize("backend", key, ["PUT"], 60)


def test_origin_identity_provisioning_strategies():
    created = resolve_origin_identity(
        provisioning_from_settings(OriginIdentitySettings(provisioning="create", trust_principal="cdn")),
        environment="prod",
    )
    assert created.name == "bookstore:prod:origin-access/cdn"
    assert isinstance(created.provisioning, Create)

    attached = resolve_origin_identity(
        provisioning_from_settings(OriginIdentitySettings(provisioning="attach", role_ref="arn:role/existing-cdn")),
        environment="prod",
    )
    assert attached.name == "arn:role/existing-cdn"
    assert isinstance(attached.provisioning, AttachExisting)

    with pytest.raises(ConfigError):
        provisioning_from_settings(OriginIdentitySettings(provisioning="attach", role_ref=None))


def test_api_keys_resolve_to_principals():
    key_hash = hash_api_key("backend-api-key")
    registry = ApiKeyRegistry(
        {"backend": Entitlement(principal="backend", api_key_hash=key_hash, prefixes=("covers/",), actions=frozenset())}
    )
    assert registry.principal_for("backend-api-key") == "backend"
    assert registry.principal_for("wrong") is None
    assert registry.principal_for(None) is None


def test_empty_verb_list_is_rejected():
    authz, _ = _pipeline(FakeClock())
    with pytest.raises(InvalidRequest):
        authz.authorize("backend", "covers/v.jpg", [], 60)
    assert authz.authorize("backend", "covers/v.jpg", None, 60).verbs == frozenset({GrantVerb.put})


def test_multipart_parts_cannot_outgrow_the_object_limit():
    clock = FakeClock()
    authz, store = _pipeline(clock, max_object_bytes=16)
    grant = authz.authorize("backend", "covers/parts.jpg", ["PUT"], 60)
    upload_id = store.create_multipart("covers/parts.jpg", grant_token=grant.token)

    store.upload_part(upload_id, 1, b"x" * 10, grant_token=grant.token)
    with pytest.raises(InvalidRequest):
        store.upload_part(upload_id, 2, b"y" * 10, grant_token=grant.token)
    # replacing a part counts only the new bytes
    store.upload_part(upload_id, 1, b"z" * 16, grant_token=grant.token)
    store.complete_multipart(upload_id, "image/jpeg", grant_token=grant.token)
    assert store.get("covers/parts.jpg", principal=ORIGIN).data == b"z" * 16


def test_open_multipart_uploads_are_capped_per_grant():
    clock = FakeClock()
    authz, store = _pipeline(clock, max_open_uploads_per_grant=2)
    grant = authz.authorize("backend", "covers/many/", ["PUT"], 60)
    store.create_multipart("covers/many/1.jpg", grant_token=grant.token)
    store.create_multipart("covers/many/2.jpg", grant_token=grant.token)
    with pytest.raises(InvalidRequest):
        store.create_multipart("covers/many/3.jpg", grant_token=grant.token)

    other = authz.authorize("backend", "covers/many/", ["PUT"], 60)
    assert store.create_multipart("covers/many/3.jpg", grant_token=other.token)


def test_multipart_uploads_expire_with_their_grant():
    clock = FakeClock()
    authz, store = _pipeline(clock)
    old = authz.authorize("backend", "covers/stale.jpg", ["PUT"], 60)
    stale_id = store.create_multipart("covers/stale.jpg", grant_token=old.token)
    store.upload_part(stale_id, 1, b"part", grant_token=old.token)

    clock.advance(61)
    fresh = authz.authorize("backend", "covers/stale.jpg", ["PUT"], 60)
    store.create_multipart("covers/stale.jpg", grant_token=fresh.token)
    with pytest.raises(UploadNotFound):
        store.upload_part(stale_id, 2, b"more", grant_token=fresh.token)


def test_multipart_upload_belongs_to_the_principal_that_opened_it():
    clock = FakeClock()
    authz, store = _pipeline(clock)
    owner = authz.authorize("backend", "covers/mine.jpg", ["PUT"], 60)
    upload_id = store.create_multipart("covers/mine.jpg", grant_token=owner.token)
    store.upload_part(upload_id, 1, b"head", grant_token=owner.token)

    intruder = authz.authorize("uploader", "covers/mine.jpg", ["PUT"], 60)
    with pytest.raises(Forbidden):
        store.upload_part(upload_id, 2, b"evil", grant_token=intruder.token)
    with pytest.raises(Forbidden):
        store.complete_multipart(upload_id, "image/jpeg", grant_token=intruder.token)

    store.complete_multipart(upload_id, "image/jpeg", grant_token=owner.token)
    assert store.get("covers/mine.jpg", principal=ORIGIN).data == b"head"
