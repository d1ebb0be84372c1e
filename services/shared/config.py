from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from services.shared.errors import ConfigError
from services.shared.models import Capability


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_seconds: float = 0.2
    max_delay_seconds: float = 5.0

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(0, attempt - 1)))


@dataclass(frozen=True)
class QueuePolicy:
    visibility_timeout_seconds: float = 30.0
    retention_seconds: float = 4 * 24 * 3600
    max_depth: int = 10_000
    # 0 disables the redrive to the dead-letter path.
    max_receive_count: int = 5


@dataclass(frozen=True)
class FanoutSettings:
    topic_name: str = "book-{capability}-topic"
    queue_name: str = "book-{capability}-queue"
    dead_letter_name: str = "book-{capability}-dlq"
    max_visibility_timeout_seconds: float = 12 * 3600
    outbox_size: int = 1000
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    default_queue: QueuePolicy = field(default_factory=QueuePolicy)
    queue_overrides: Mapping[Capability, QueuePolicy] = field(default_factory=dict)
    dead_letters: Mapping[Capability, str] = field(default_factory=dict)

    def topic_for(self, capability: Capability) -> str:
        return self.topic_name.format(capability=capability.value)

    def queue_for(self, capability: Capability) -> str:
        return self.queue_name.format(capability=capability.value)

    def dead_letter_for(self, capability: Capability) -> str:
        return self.dead_letters.get(capability) or self.dead_letter_name.format(capability=capability.value)

    def queue_policy(self, capability: Capability) -> QueuePolicy:
        return self.queue_overrides.get(capability, self.default_queue)


@dataclass(frozen=True)
class Entitlement:
    """Pre-provisioned rights of one backend principal."""

    principal: str
    api_key_hash: str | None
    prefixes: tuple[str, ...]
    actions: frozenset[str]


@dataclass(frozen=True)
class OriginIdentitySettings:
    provisioning: str = "create"
    trust_principal: str = "delivery-frontend"
    role_ref: str | None = None


@dataclass(frozen=True)
class MediaSettings:
    upload_origins: tuple[str, ...] = ()
    max_grant_ttl_seconds: int = 900
    default_grant_ttl_seconds: int = 300
    public_base_url: str = "http://localhost:8201"
    single_use_grants: bool = True
    max_object_bytes: int = 10 * 1024 * 1024
    max_open_uploads_per_grant: int = 4
    allowed_content_types: tuple[str, ...] = ("image/jpeg", "image/png", "image/webp", "image/gif")
    data_dir: str | None = None
    entitlements: Mapping[str, Entitlement] = field(default_factory=dict)
    origin_identity: OriginIdentitySettings = field(default_factory=OriginIdentitySettings)


@dataclass(frozen=True)
class DeliverySettings:
    origin_url: str = "http://localhost:8201"
    origin_timeout_seconds: float = 5.0
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 1024
    cors_allow_origins: tuple[str, ...] = ("*",)


@dataclass(frozen=True)
class Settings:
    environment: str = "dev"
    fanout: FanoutSettings = field(default_factory=FanoutSettings)
    media: MediaSettings = field(default_factory=MediaSettings)
    delivery: DeliverySettings = field(default_factory=DeliverySettings)


def _capability(name: Any) -> Capability:
    try:
        return Capability(str(name))
    except ValueError:
        raise ConfigError(f"unknown capability in config: {name!r}") from None


def _queue_policy(raw: Mapping[str, Any], base: QueuePolicy) -> QueuePolicy:
    return QueuePolicy(
        visibility_timeout_seconds=float(raw.get("visibility_timeout_seconds", base.visibility_timeout_seconds)),
        retention_seconds=float(raw.get("retention_seconds", base.retention_seconds)),
        max_depth=int(raw.get("max_depth", base.max_depth)),
        max_receive_count=int(raw.get("max_receive_count", base.max_receive_count)),
    )


def _fanout(raw: Mapping[str, Any]) -> FanoutSettings:
    defaults = FanoutSettings()
    retry_raw = raw.get("retry") or {}
    retry = RetryPolicy(
        max_attempts=int(retry_raw.get("max_attempts", defaults.retry.max_attempts)),
        base_delay_seconds=float(retry_raw.get("base_delay_seconds", defaults.retry.base_delay_seconds)),
        max_delay_seconds=float(retry_raw.get("max_delay_seconds", defaults.retry.max_delay_seconds)),
    )
    if retry.max_attempts < 1:
        raise ConfigError("fanout.retry.max_attempts must be >= 1")

    default_queue = _queue_policy(raw.get("queue") or {}, defaults.default_queue)
    overrides = {
        _capability(cap): _queue_policy(q or {}, default_queue) for cap, q in (raw.get("queues") or {}).items()
    }
    dead_letters = {_capability(cap): str(name) for cap, name in (raw.get("dead_letters") or {}).items()}

    max_vis = float(raw.get("max_visibility_timeout_seconds", defaults.max_visibility_timeout_seconds))
    for name, policy in [("default", default_queue)] + [(c.value, p) for c, p in overrides.items()]:
        if policy.visibility_timeout_seconds <= 0:
            raise ConfigError(f"queue {name}: visibility timeout must be positive")
        if policy.visibility_timeout_seconds > max_vis:
            raise ConfigError(
                f"queue {name}: visibility timeout {policy.visibility_timeout_seconds}s exceeds maximum {max_vis}s"
            )

    return FanoutSettings(
        topic_name=str(raw.get("topic_name", defaults.topic_name)),
        queue_name=str(raw.get("queue_name", defaults.queue_name)),
        dead_letter_name=str(raw.get("dead_letter_name", defaults.dead_letter_name)),
        max_visibility_timeout_seconds=max_vis,
        outbox_size=int(raw.get("outbox_size", defaults.outbox_size)),
        retry=retry,
        default_queue=default_queue,
        queue_overrides=overrides,
        dead_letters=dead_letters,
    )


def _media(raw: Mapping[str, Any]) -> MediaSettings:
    defaults = MediaSettings()

    entitlements: dict[str, Entitlement] = {}
    for principal, ent in (raw.get("entitlements") or {}).items():
        ent = ent or {}
        entitlements[str(principal)] = Entitlement(
            principal=str(principal),
            api_key_hash=ent.get("api_key_hash"),
            prefixes=tuple(str(p) for p in (ent.get("prefixes") or [])),
            actions=frozenset(str(a) for a in (ent.get("actions") or [])),
        )

    oi = raw.get("origin_identity") or {}
    origin_identity = OriginIdentitySettings(
        provisioning=str(oi.get("provisioning", "create")).lower(),
        trust_principal=str(oi.get("trust_principal", "delivery-frontend")),
        role_ref=oi.get("role_ref"),
    )
    if origin_identity.provisioning not in {"create", "attach"}:
        raise ConfigError(f"media.origin_identity.provisioning must be create|attach, got {origin_identity.provisioning!r}")

    settings = MediaSettings(
        upload_origins=tuple(raw.get("upload_origins") or defaults.upload_origins),
        max_grant_ttl_seconds=int(raw.get("max_grant_ttl_seconds", defaults.max_grant_ttl_seconds)),
        default_grant_ttl_seconds=int(raw.get("default_grant_ttl_seconds", defaults.default_grant_ttl_seconds)),
        public_base_url=str(raw.get("public_base_url", defaults.public_base_url)).rstrip("/"),
        single_use_grants=bool(raw.get("single_use_grants", defaults.single_use_grants)),
        max_object_bytes=int(raw.get("max_object_bytes", defaults.max_object_bytes)),
        max_open_uploads_per_grant=int(raw.get("max_open_uploads_per_grant", defaults.max_open_uploads_per_grant)),
        allowed_content_types=tuple(raw.get("allowed_content_types") or defaults.allowed_content_types),
        data_dir=raw.get("data_dir"),
        entitlements=entitlements,
        origin_identity=origin_identity,
    )
    if settings.default_grant_ttl_seconds > settings.max_grant_ttl_seconds:
        raise ConfigError("media.default_grant_ttl_seconds exceeds media.max_grant_ttl_seconds")
    if settings.max_open_uploads_per_grant < 1:
        raise ConfigError("media.max_open_uploads_per_grant must be >= 1")
    return settings


def _delivery(raw: Mapping[str, Any]) -> DeliverySettings:
    defaults = DeliverySettings()
    return DeliverySettings(
        origin_url=str(raw.get("origin_url", defaults.origin_url)).rstrip("/"),
        origin_timeout_seconds=float(raw.get("origin_timeout_seconds", defaults.origin_timeout_seconds)),
        cache_ttl_seconds=float(raw.get("cache_ttl_seconds", defaults.cache_ttl_seconds)),
        cache_max_entries=int(raw.get("cache_max_entries", defaults.cache_max_entries)),
        cors_allow_origins=tuple(raw.get("cors_allow_origins") or defaults.cors_allow_origins),
    )


def load_settings(data: Mapping[str, Any] | None, *, environment: str | None = None) -> Settings:
    data = data or {}
    return Settings(
        environment=str(environment or data.get("environment") or "dev"),
        fanout=_fanout(data.get("fanout") or {}),
        media=_media(data.get("media") or {}),
        delivery=_delivery(data.get("delivery") or {}),
    )


class ConfigStore:
    """File-backed YAML config.

    The raw mapping is re-read when the file changes on disk; typed
    ``Settings`` are built once per service at startup because the routing
    table they describe is static.
    """

    def __init__(self, config_path: str | Path | None = None):
        self._path = Path(config_path or os.environ.get("CONFIG_PATH", "/app/config/config.yaml"))
        self._last_mtime: float | None = None
        self._cache: dict[str, Any] = {}

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        with self._path.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def get(self) -> dict[str, Any]:
        try:
            mtime = self._path.stat().st_mtime if self._path.exists() else None
        except OSError:
            mtime = None

        changed = mtime is not None and mtime != self._last_mtime
        if not self._cache or changed:
            self._cache = self._read()
            self._last_mtime = mtime
        return self._cache

    def settings(self, *, environment: str | None = None) -> Settings:
        return load_settings(self.get(), environment=environment)
