from urllib.parse import urlsplit

import httpx
from fastapi.testclient import TestClient

from services.delivery.app import create_app as create_delivery_app
from services.media.entitlements import PUT_OBJECT, hash_api_key
from services.media_api.app import create_app as create_media_app
from services.shared.config import DeliverySettings, Entitlement, MediaSettings, Settings

API_KEY = "backend-api-key"
PNG = b"\x89PNG\r\n\x1a\n" + b"cover" * 20


def _settings() -> Settings:
    return Settings(
        environment="test",
        media=MediaSettings(
            entitlements={
                "backend": Entitlement(
                    principal="backend",
                    api_key_hash=hash_api_key(API_KEY),
                    prefixes=("covers/",),
                    actions=frozenset({PUT_OBJECT}),
                )
            },
        ),
        delivery=DeliverySettings(cache_ttl_seconds=60),
    )


def _stack():
    settings = _settings()
    media_app = create_media_app(settings)
    delivery_app = create_delivery_app(settings, transport=httpx.ASGITransport(app=media_app))
    return TestClient(media_app), TestClient(delivery_app)


def _upload(media: TestClient, key: str, body: bytes) -> dict:
    grant = media.post("/uploads/authorize", json={"key": key, "ttl_seconds": 300}, headers={"X-Api-Key": API_KEY}).json()
    parts = urlsplit(grant["url"])
    r = media.put(f"{parts.path}?{parts.query}", content=body, headers={"Content-Type": "image/png"})
    assert r.status_code == 200, r.text
    return r.json()


def test_upload_then_serve_through_the_edge():
    media, edge = _stack()
    uploaded = _upload(media, "covers/123.png", PNG)

    first = edge.get("/covers/123.png")
    assert first.status_code == 200
    assert first.content == PNG
    assert first.headers["content-type"] == "image/png"
    assert first.headers["x-cache"] == "Miss"
    assert first.headers["etag"] == f'"{uploaded["etag"]}"'
    assert first.headers["cache-control"] == "public, max-age=60"

    second = edge.get("/covers/123.png")
    assert second.headers["x-cache"] == "Hit"
    assert second.content == PNG


def test_any_origin_may_read_through_the_edge():
    media, edge = _stack()
    _upload(media, "covers/cors.png", PNG)
    r = edge.get("/covers/cors.png", headers={"Origin": "https://anywhere.example"})
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == "*"


def test_conditional_get_returns_304():
    media, edge = _stack()
    _upload(media, "covers/etag.png", PNG)
    etag = edge.get("/covers/etag.png").headers["etag"]
    r = edge.get("/covers/etag.png", headers={"If-None-Match": etag})
    assert r.status_code == 304
    assert r.content == b""


def test_missing_object_is_a_404():
    _, edge = _stack()
    r = edge.get("/covers/missing.png")
    assert r.status_code == 404
    assert r.json()["error"] == "ObjectNotFound"


def test_direct_reads_from_the_store_are_forbidden():
    media, _ = _stack()
    _upload(media, "covers/direct.png", PNG)
    assert media.get("/internal/objects/covers/direct.png").status_code == 403


def test_health_reports_cache_counters():
    media, edge = _stack()
    _upload(media, "covers/h.png", PNG)
    edge.get("/covers/h.png")
    edge.get("/covers/h.png")
    cache = edge.get("/health").json()["cache"]
    assert cache == {"entries": 1, "hits": 1, "misses": 1}
