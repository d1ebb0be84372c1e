from __future__ import annotations

import logging

import httpx
from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from services.delivery.cache import TTLCache
from services.delivery.frontend import DeliveryFrontEnd
from services.delivery.origin import OriginClient, OriginError, OriginObject
from services.media.identity import OriginAccessTokens, provisioning_from_settings, resolve_origin_identity
from services.shared.config import ConfigStore, Settings
from services.shared.otel import setup_otel
from services.shared.runtime import get_runtime_config, setup_logging
from services.shared.web import install_common

SERVICE_NAME = "delivery"

logger = logging.getLogger("bookstore.delivery")


def create_app(settings: Settings | None = None, *, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    runtime = get_runtime_config(service_name=SERVICE_NAME)
    settings = settings or ConfigStore().settings(environment=runtime.env)
    cfg = settings.delivery

    identity = resolve_origin_identity(
        provisioning_from_settings(settings.media.origin_identity), environment=settings.environment
    )
    origin = OriginClient(
        cfg.origin_url,
        OriginAccessTokens(runtime.origin_signing_secret, identity),
        timeout=cfg.origin_timeout_seconds,
        transport=transport,
    )
    cache: TTLCache[OriginObject] = TTLCache(ttl_seconds=cfg.cache_ttl_seconds, max_entries=cfg.cache_max_entries)
    frontend = DeliveryFrontEnd(origin, cache)
    max_age = int(cfg.cache_ttl_seconds)

    app = FastAPI(title="Bookstore Delivery")
    app.state.frontend = frontend
    install_common(app, runtime=runtime, logger=logger)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.cors_allow_origins),
        allow_methods=["GET"],
        allow_headers=["*"],
        expose_headers=["ETag", "X-Cache"],
    )

    @app.get("/health")
    def health():
        return {"ok": True, "service": SERVICE_NAME, "cache": {"entries": len(cache), "hits": cache.stats.hits, "misses": cache.stats.misses}}

    @app.get("/{key:path}")
    async def serve(key: str, if_none_match: str | None = Header(default=None)):
        try:
            obj, hit = await frontend.get(key)
        except (httpx.HTTPError, OriginError) as e:
            # 502 means our upstream dependency (asset store) failed.
            logger.error("origin error", extra={"resource": key})
            raise HTTPException(status_code=502, detail=f"origin error: {e}")

        headers = {
            "Cache-Control": f"public, max-age={max_age}",
            "X-Cache": "Hit" if hit else "Miss",
        }
        if obj.etag:
            headers["ETag"] = obj.etag
            if if_none_match and if_none_match.strip() == obj.etag:
                return Response(status_code=304, headers=headers)
        return Response(content=obj.body, media_type=obj.content_type, headers=headers)

    return app


setup_logging(service_name=SERVICE_NAME)
setup_otel(service_name=SERVICE_NAME)

app = create_app()
