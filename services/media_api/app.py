from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from cryptography.fernet import Fernet
from fastapi import FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from services.media.authorizer import UploadAuthorizer
from services.media.entitlements import ApiKeyRegistry
from services.media.grants import GrantSigner
from services.media.identity import OriginAccessTokens, provisioning_from_settings, resolve_origin_identity
from services.media.store import AssetStore, FileBackend, MemoryBackend, StoredVersion
from services.shared.config import ConfigStore, Settings
from services.shared.errors import Forbidden
from services.shared.models import (
    AuthorizeRequest,
    MultipartStarted,
    ObjectVersionInfo,
    UploadGrantResponse,
    UploadResult,
    VersionListResponse,
)
from services.shared.otel import setup_otel
from services.shared.redis_helpers import GrantLedger
from services.shared.runtime import RuntimeConfig, get_runtime_config, setup_logging
from services.shared.web import install_common

SERVICE_NAME = "media-api"

logger = logging.getLogger("bookstore.media_api")


@dataclass(frozen=True)
class MediaComponents:
    authorizer: UploadAuthorizer
    store: AssetStore
    api_keys: ApiKeyRegistry
    origin_tokens: OriginAccessTokens


def build_components(settings: Settings, runtime: RuntimeConfig, *, clock: Callable[[], float] = time.time) -> MediaComponents:
    media = settings.media
    identity = resolve_origin_identity(provisioning_from_settings(media.origin_identity), environment=settings.environment)

    if runtime.storage_encryption_key:
        cipher = Fernet(runtime.storage_encryption_key.encode("utf-8"))
    else:
        logger.warning("BOOKSTORE_STORAGE_KEY not set; using an ephemeral storage key")
        cipher = Fernet(Fernet.generate_key())

    signer = GrantSigner(runtime.grant_signing_secret, clock=clock)
    store = AssetStore(
        settings=media,
        origin_identity=identity.name,
        signer=signer,
        cipher=cipher,
        backend=FileBackend(media.data_dir) if media.data_dir else MemoryBackend(),
        ledger=GrantLedger(redis_url=runtime.redis_url, prefix=runtime.grant_ledger_prefix),
        clock=clock,
    )
    return MediaComponents(
        authorizer=UploadAuthorizer(media, signer),
        store=store,
        api_keys=ApiKeyRegistry(media.entitlements),
        origin_tokens=OriginAccessTokens(runtime.origin_signing_secret, identity, clock=clock),
    )


def _upload_result(version: StoredVersion) -> JSONResponse:
    body = UploadResult(
        key=version.key,
        version_id=version.version_id,
        etag=version.etag,
        content_type=version.content_type,
        size=version.size,
    )
    return JSONResponse(
        content=body.model_dump(),
        headers={"ETag": f'"{version.etag}"', "X-Version-Id": version.version_id},
    )


def _version_info(v: StoredVersion, current: Optional[str]) -> ObjectVersionInfo:
    return ObjectVersionInfo(
        key=v.key,
        version_id=v.version_id,
        etag=v.etag,
        content_type=v.content_type,
        size=v.size,
        created_at=v.created_at,
        principal=v.principal,
        is_current=v.version_id == current,
    )


def create_app(settings: Settings | None = None, *, clock: Callable[[], float] = time.time) -> FastAPI:
    runtime = get_runtime_config(service_name=SERVICE_NAME)
    settings = settings or ConfigStore().settings(environment=runtime.env)
    media = build_components(settings, runtime, clock=clock)

    app = FastAPI(title="Bookstore Media API")
    app.state.media = media
    install_common(app, runtime=runtime, logger=logger)

    if settings.media.upload_origins:
        # browsers PUT straight to the signed upload URL
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.media.upload_origins),
            allow_methods=["PUT", "POST", "DELETE"],
            allow_headers=["*"],
            expose_headers=["ETag", "X-Version-Id"],
        )

    @app.get("/health")
    def health():
        return {"ok": True, "service": SERVICE_NAME}

    # --- backend only ---

    @app.post("/uploads/authorize", response_model=UploadGrantResponse)
    def authorize(req: AuthorizeRequest, x_api_key: str | None = Header(default=None)):
        principal = media.api_keys.principal_for(x_api_key)
        if principal is None:
            raise Forbidden("backend API key required", principal="anonymous", resource=req.key, action="authorize")
        grant = media.authorizer.authorize(principal, req.key, req.verbs, req.ttl_seconds)
        return UploadGrantResponse(
            url=media.authorizer.upload_url(grant),
            expires_at=datetime.fromtimestamp(grant.expires_at, tz=timezone.utc),
            grant_id=grant.grant_id,
            key=grant.scope,
            verbs=sorted(grant.verbs, key=lambda v: v.value),
        )

    # --- grant holders ---

    @app.put("/uploads/{key:path}")
    async def upload(
        key: str,
        request: Request,
        grant: str | None = None,
        x_upload_grant: str | None = Header(default=None),
    ):
        body = await request.body()
        # encryption and disk writes stay off the event loop
        version = await run_in_threadpool(
            media.store.put,
            key,
            body,
            request.headers.get("content-type", ""),
            grant_token=grant or x_upload_grant,
        )
        return _upload_result(version)

    @app.post("/uploads/{key:path}/rollback")
    def rollback(key: str, version_id: str, grant: str | None = None, x_upload_grant: str | None = Header(default=None)):
        version = media.store.rollback(key, version_id, grant_token=grant or x_upload_grant)
        return _upload_result(version)

    @app.post("/multipart", response_model=MultipartStarted)
    def create_multipart(key: str, grant: str | None = None, x_upload_grant: str | None = Header(default=None)):
        upload_id = media.store.create_multipart(key, grant_token=grant or x_upload_grant)
        return MultipartStarted(key=key, upload_id=upload_id)

    @app.put("/multipart/{upload_id}/parts/{part_number}")
    async def upload_part(
        upload_id: str,
        part_number: int,
        request: Request,
        grant: str | None = None,
        x_upload_grant: str | None = Header(default=None),
    ):
        body = await request.body()
        etag = await run_in_threadpool(
            media.store.upload_part, upload_id, part_number, body, grant_token=grant or x_upload_grant
        )
        return JSONResponse(content={"part_number": part_number, "etag": etag}, headers={"ETag": f'"{etag}"'})

    @app.post("/multipart/{upload_id}/complete")
    def complete_multipart(
        upload_id: str,
        content_type: str,
        grant: str | None = None,
        x_upload_grant: str | None = Header(default=None),
    ):
        version = media.store.complete_multipart(upload_id, content_type, grant_token=grant or x_upload_grant)
        return _upload_result(version)

    @app.delete("/multipart/{upload_id}")
    def abort_multipart(upload_id: str, grant: str | None = None, x_upload_grant: str | None = Header(default=None)):
        media.store.abort_multipart(upload_id, grant_token=grant or x_upload_grant)
        return {"ok": True}

    # --- origin identity only ---

    @app.get("/internal/objects/{key:path}")
    def read_object(key: str, version_id: str | None = None, x_origin_access: str | None = Header(default=None)):
        principal = media.origin_tokens.principal_of(x_origin_access)
        obj = media.store.get(key, principal=principal, version_id=version_id)
        return Response(
            content=obj.data,
            media_type=obj.content_type,
            headers={"ETag": f'"{obj.etag}"', "X-Version-Id": obj.version_id},
        )

    @app.get("/internal/versions/{key:path}", response_model=VersionListResponse)
    def list_versions(key: str, x_origin_access: str | None = Header(default=None)):
        principal = media.origin_tokens.principal_of(x_origin_access)
        versions = media.store.versions(key, principal=principal)
        current = versions[-1].version_id if versions else None
        return VersionListResponse(key=key, versions=[_version_info(v, current) for v in versions])

    return app


setup_logging(service_name=SERVICE_NAME)
setup_otel(service_name=SERVICE_NAME)

app = create_app()
