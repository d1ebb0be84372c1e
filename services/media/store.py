"""Private, versioned, encrypted object storage for cover images.

Writes need an upload grant scoped to the key; reads are reserved for the
delivery front end's origin identity. Every write adds a version and moves
the key's "current" pointer (last writer wins); older versions are kept.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol
from urllib.parse import quote

from cryptography.fernet import Fernet, InvalidToken

from services.media.grants import GrantSigner, UploadGrant
from services.shared.config import MediaSettings
from services.shared.errors import Forbidden, InvalidRequest, ObjectNotFound, UploadNotFound
from services.shared.models import GrantVerb
from services.shared.redis_helpers import GrantLedger

logger = logging.getLogger("bookstore.media.store")


def normalize_key(key: str) -> str:
    k = (key or "").strip()
    if not k or k.startswith("/") or "\\" in k:
        raise InvalidRequest(f"invalid object key {key!r}")
    if any(part in {"", ".", ".."} for part in k.rstrip("/").split("/")):
        raise InvalidRequest(f"invalid object key {key!r}")
    return k


@dataclass(frozen=True)
class StoredVersion:
    key: str
    version_id: str
    etag: str
    content_type: str
    size: int
    created_at: datetime
    principal: str


@dataclass(frozen=True)
class AssetObject:
    data: bytes
    version: StoredVersion

    @property
    def content_type(self) -> str:
        return self.version.content_type

    @property
    def etag(self) -> str:
        return self.version.etag

    @property
    def version_id(self) -> str:
        return self.version.version_id


class ObjectBackend(Protocol):
    def write_blob(self, version: StoredVersion, blob: bytes) -> None: ...

    def read_blob(self, version: StoredVersion) -> bytes: ...

    def load_index(self) -> List[StoredVersion]: ...


class MemoryBackend:
    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}

    def write_blob(self, version: StoredVersion, blob: bytes) -> None:
        self._blobs[version.version_id] = blob

    def read_blob(self, version: StoredVersion) -> bytes:
        return self._blobs[version.version_id]

    def load_index(self) -> List[StoredVersion]:
        return []


class FileBackend:
    """Blobs under ``<root>/objects/<quoted key>/<version>.bin`` plus a JSONL version index."""

    def __init__(self, root: str | Path):
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._index = self._root / "versions.jsonl"

    def _blob_path(self, version: StoredVersion) -> Path:
        return self._root / "objects" / quote(version.key, safe="") / f"{version.version_id}.bin"

    def write_blob(self, version: StoredVersion, blob: bytes) -> None:
        path = self._blob_path(version)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(blob)
        row = asdict(version)
        row["created_at"] = version.created_at.isoformat()
        with self._index.open("a", encoding="utf-8") as f:
            f.write(json.dumps(row, ensure_ascii=False) + "\n")

    def read_blob(self, version: StoredVersion) -> bytes:
        return self._blob_path(version).read_bytes()

    def load_index(self) -> List[StoredVersion]:
        if not self._index.exists():
            return []
        out: List[StoredVersion] = []
        for line in self._index.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            row = json.loads(line)
            row["created_at"] = datetime.fromisoformat(row["created_at"])
            out.append(StoredVersion(**row))
        return out


@dataclass
class _MultipartUpload:
    upload_id: str
    key: str
    principal: str
    grant_id: str
    # purged once the grant that opened the upload has expired
    expires_at: float
    parts: Dict[int, bytes] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return sum(len(p) for p in self.parts.values())


class AssetStore:
    def __init__(
        self,
        *,
        settings: MediaSettings,
        origin_identity: str,
        signer: GrantSigner,
        cipher: Fernet,
        backend: ObjectBackend | None = None,
        ledger: GrantLedger | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings
        self._origin_identity = origin_identity
        self._signer = signer
        self._cipher = cipher
        self._backend = backend or MemoryBackend()
        self._ledger = ledger
        self._clock = clock
        self._lock = threading.Lock()
        self._versions: Dict[str, List[StoredVersion]] = {}
        self._uploads: Dict[str, _MultipartUpload] = {}
        for v in self._backend.load_index():
            self._versions.setdefault(v.key, []).append(v)

    @property
    def origin_identity(self) -> str:
        return self._origin_identity

    # --- authorization ---

    def _check_grant(self, token: str | None, key: str, verb: GrantVerb) -> UploadGrant:
        try:
            grant = self._signer.verify(token)
            if not grant.allows(verb):
                raise Forbidden(f"grant does not allow {verb.value}", principal=grant.principal, resource=key, action=verb.value)
            if not grant.covers(key):
                raise Forbidden(
                    f"grant scoped to {grant.scope!r} does not cover {key!r}",
                    principal=grant.principal,
                    resource=key,
                    action=verb.value,
                )
        except Forbidden as exc:
            logger.warning(
                "write denied",
                extra={
                    "principal": exc.context.get("principal"),
                    "resource": key,
                    "action": verb.value,
                },
            )
            raise
        return grant

    def _redeem(self, grant: UploadGrant, key: str) -> None:
        if not self._settings.single_use_grants or self._ledger is None:
            return
        if not self._ledger.redeem(grant.grant_id, expires_at=grant.expires_at, now=self._clock()):
            logger.warning("grant replay", extra={"principal": grant.principal, "resource": key, "action": "PUT"})
            raise Forbidden("upload grant already used", principal=grant.principal, resource=key, action="PUT")

    def _check_reader(self, principal: str, key: str) -> None:
        if principal != self._origin_identity:
            logger.warning("read denied", extra={"principal": principal, "resource": key, "action": "GetObject"})
            raise Forbidden(
                "only the delivery front end may read from the asset store",
                principal=principal,
                resource=key,
                action="GetObject",
            )

    def _check_body(self, data: bytes, content_type: str) -> str:
        ct = (content_type or "").split(";", 1)[0].strip().lower()
        if self._settings.allowed_content_types and ct not in self._settings.allowed_content_types:
            raise InvalidRequest(f"content type {ct or '<none>'!r} is not accepted")
        if len(data) > self._settings.max_object_bytes:
            raise InvalidRequest(f"object exceeds {self._settings.max_object_bytes} bytes")
        return ct

    # --- writes ---

    def _write(self, key: str, data: bytes, content_type: str, principal: str) -> StoredVersion:
        version = StoredVersion(
            key=key,
            version_id=uuid.uuid4().hex,
            etag=hashlib.md5(data).hexdigest(),
            content_type=content_type,
            size=len(data),
            created_at=datetime.now(timezone.utc),
            principal=principal,
        )
        self._backend.write_blob(version, self._cipher.encrypt(data))
        with self._lock:
            self._versions.setdefault(key, []).append(version)
        logger.info("object stored", extra={"principal": principal, "resource": key, "version_id": version.version_id})
        return version

    def put(self, key: str, data: bytes, content_type: str, *, grant_token: str | None) -> StoredVersion:
        key = normalize_key(key)
        grant = self._check_grant(grant_token, key, GrantVerb.put)
        ct = self._check_body(data, content_type)
        self._redeem(grant, key)
        return self._write(key, data, ct, grant.principal)

    def rollback(self, key: str, version_id: str, *, grant_token: str | None) -> StoredVersion:
        """Make an older version current again by writing it as a new version."""
        key = normalize_key(key)
        grant = self._check_grant(grant_token, key, GrantVerb.put)
        old = self._find(key, version_id)
        data = self._decrypt(old)
        self._redeem(grant, key)
        return self._write(key, data, old.content_type, grant.principal)

    # --- multipart ---

    def _purge_stale_uploads(self, now: float) -> None:
        with self._lock:
            for uid, upload in list(self._uploads.items()):
                if upload.expires_at < now:
                    del self._uploads[uid]
                    logger.info("multipart expired", extra={"principal": upload.principal, "resource": upload.key})

    def create_multipart(self, key: str, *, grant_token: str | None) -> str:
        key = normalize_key(key)
        grant = self._check_grant(grant_token, key, GrantVerb.put)
        self._purge_stale_uploads(self._clock())
        upload = _MultipartUpload(
            upload_id=uuid.uuid4().hex,
            key=key,
            principal=grant.principal,
            grant_id=grant.grant_id,
            expires_at=grant.expires_at,
        )
        with self._lock:
            open_for_grant = sum(1 for u in self._uploads.values() if u.grant_id == grant.grant_id)
            if open_for_grant >= self._settings.max_open_uploads_per_grant:
                raise InvalidRequest(
                    f"grant already has {open_for_grant} open multipart uploads",
                    principal=grant.principal,
                    resource=key,
                )
            self._uploads[upload.upload_id] = upload
        return upload.upload_id

    def _upload(self, upload_id: str) -> _MultipartUpload:
        self._purge_stale_uploads(self._clock())
        upload = self._uploads.get(upload_id)
        if upload is None:
            raise UploadNotFound(f"no multipart upload {upload_id!r}", resource=upload_id)
        return upload

    def _check_owner(self, upload: _MultipartUpload, grant: UploadGrant, verb: GrantVerb) -> None:
        if grant.principal != upload.principal:
            logger.warning(
                "write denied",
                extra={"principal": grant.principal, "resource": upload.key, "action": verb.value},
            )
            raise Forbidden(
                f"multipart upload {upload.upload_id} belongs to another principal",
                principal=grant.principal,
                resource=upload.key,
                action=verb.value,
            )

    def upload_part(self, upload_id: str, part_number: int, data: bytes, *, grant_token: str | None) -> str:
        upload = self._upload(upload_id)
        grant = self._check_grant(grant_token, upload.key, GrantVerb.put)
        self._check_owner(upload, grant, GrantVerb.put)
        if part_number < 1:
            raise InvalidRequest("part numbers start at 1")
        with self._lock:
            total = upload.size - len(upload.parts.get(part_number, b"")) + len(data)
            if total > self._settings.max_object_bytes:
                raise InvalidRequest(f"object exceeds {self._settings.max_object_bytes} bytes", resource=upload.key)
            upload.parts[part_number] = data
        return hashlib.md5(data).hexdigest()

    def complete_multipart(self, upload_id: str, content_type: str, *, grant_token: str | None) -> StoredVersion:
        upload = self._upload(upload_id)
        grant = self._check_grant(grant_token, upload.key, GrantVerb.put)
        self._check_owner(upload, grant, GrantVerb.put)
        if not upload.parts:
            raise InvalidRequest("multipart upload has no parts")
        data = b"".join(upload.parts[n] for n in sorted(upload.parts))
        ct = self._check_body(data, content_type)
        self._redeem(grant, upload.key)
        with self._lock:
            self._uploads.pop(upload_id, None)
        return self._write(upload.key, data, ct, grant.principal)

    def abort_multipart(self, upload_id: str, *, grant_token: str | None) -> None:
        upload = self._upload(upload_id)
        grant = self._check_grant(grant_token, upload.key, GrantVerb.abort_multipart)
        self._check_owner(upload, grant, GrantVerb.abort_multipart)
        with self._lock:
            self._uploads.pop(upload_id, None)
        logger.info("multipart aborted", extra={"resource": upload.key})

    # --- reads (origin identity only) ---

    def _find(self, key: str, version_id: Optional[str] = None) -> StoredVersion:
        versions = self._versions.get(key) or []
        if not versions:
            raise ObjectNotFound(f"no object {key!r}", resource=key)
        if version_id is None:
            return versions[-1]
        for v in versions:
            if v.version_id == version_id:
                return v
        raise ObjectNotFound(f"no version {version_id!r} of {key!r}", resource=key)

    def _decrypt(self, version: StoredVersion) -> bytes:
        try:
            return self._cipher.decrypt(self._backend.read_blob(version))
        except InvalidToken:
            # written under a different storage key
            logger.error("object undecryptable", extra={"resource": version.key, "version_id": version.version_id})
            raise

    def get(self, key: str, *, principal: str, version_id: Optional[str] = None) -> AssetObject:
        key = normalize_key(key)
        self._check_reader(principal, key)
        version = self._find(key, version_id)
        return AssetObject(data=self._decrypt(version), version=version)

    def versions(self, key: str, *, principal: str) -> List[StoredVersion]:
        key = normalize_key(key)
        self._check_reader(principal, key)
        return list(self._versions.get(key) or [])
