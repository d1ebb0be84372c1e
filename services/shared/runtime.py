from __future__ import annotations

import json
import logging
import os
import sys
import time
import uuid
from dataclasses import dataclass
from typing import Any, Mapping


@dataclass(frozen=True)
class RuntimeConfig:
    """Runtime switches shared by every bookstore service.

    Secrets and deployment toggles come from the environment; topology and
    policies live in the YAML file read by ``ConfigStore``.
    """

    env: str
    log_level: str
    log_format: str
    request_id_header: str

    # Signing keys
    grant_signing_secret: str
    origin_signing_secret: str
    storage_encryption_key: str | None

    # Redis (optional)
    redis_url: str | None
    grant_ledger_prefix: str

    # Observability (optional)
    otel_enabled: bool
    otel_service_name: str
    otel_exporter_otlp_endpoint: str | None


def _env(name: str, default: str | None = None) -> str | None:
    v = os.environ.get(name)
    if v is None:
        return default
    v = str(v).strip()
    return v if v != "" else default


def _env_bool(name: str, default: bool = False) -> bool:
    v = _env(name)
    if v is None:
        return default
    return v.lower() in {"1", "true", "yes", "y", "on"}


def get_runtime_config(*, service_name: str) -> RuntimeConfig:
    env = (_env("BOOKSTORE_ENV", _env("ENV", "dev")) or "dev").lower()

    log_format = (_env("BOOKSTORE_LOG_FORMAT", "json") or "json").lower()
    log_level = (_env("BOOKSTORE_LOG_LEVEL", "INFO") or "INFO").upper()

    request_id_header = (_env("BOOKSTORE_REQUEST_ID_HEADER", "x-request-id") or "x-request-id").lower()

    grant_signing_secret = _env("BOOKSTORE_GRANT_SECRET", "dev-grant-secret-change-me") or "dev-grant-secret-change-me"
    origin_signing_secret = _env("BOOKSTORE_ORIGIN_SECRET", "dev-origin-secret-change-me") or "dev-origin-secret-change-me"
    # Fernet key (urlsafe base64, 32 bytes). Generated per process when unset.
    storage_encryption_key = _env("BOOKSTORE_STORAGE_KEY")

    redis_url = _env("BOOKSTORE_REDIS_URL")
    grant_ledger_prefix = _env("BOOKSTORE_GRANT_LEDGER_PREFIX", f"bookstore:{env}:grants") or f"bookstore:{env}:grants"

    otel_enabled = _env_bool("BOOKSTORE_OTEL_ENABLED", default=False)
    otel_service_name = _env("OTEL_SERVICE_NAME", service_name) or service_name
    otel_exporter_otlp_endpoint = _env("OTEL_EXPORTER_OTLP_ENDPOINT")

    return RuntimeConfig(
        env=env,
        log_level=log_level,
        log_format=log_format,
        request_id_header=request_id_header,
        grant_signing_secret=grant_signing_secret,
        origin_signing_secret=origin_signing_secret,
        storage_encryption_key=storage_encryption_key,
        redis_url=redis_url,
        grant_ledger_prefix=grant_ledger_prefix,
        otel_enabled=otel_enabled,
        otel_service_name=otel_service_name,
        otel_exporter_otlp_endpoint=otel_exporter_otlp_endpoint,
    )


# Extra attributes copied from log records into the JSON body.
_LOG_EXTRA_KEYS = (
    "request_id",
    "path",
    "method",
    "status_code",
    "duration_ms",
    "principal",
    "resource",
    "action",
    "capability",
    "queue",
    "subscription",
    "message_id",
    "attempt",
    "version_id",
)


def _json_log_record(level: str, msg: str, *, extra: Mapping[str, Any] | None = None) -> str:
    body: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "level": level,
        "msg": msg,
    }
    if extra:
        for k, v in extra.items():
            if v is None:
                continue
            body[k] = v
    return json.dumps(body, ensure_ascii=False, default=str)


class JsonFormatter(logging.Formatter):
    def __init__(self, service_name: str):
        super().__init__()
        self._service_name = service_name

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        extra: dict[str, Any] = {
            "logger": record.name,
            "service": self._service_name,
        }
        for key in _LOG_EXTRA_KEYS:
            if hasattr(record, key):
                extra[key] = getattr(record, key)
        if record.exc_info:
            extra["exc"] = self.formatException(record.exc_info)
        return _json_log_record(record.levelname, record.getMessage(), extra=extra)


def setup_logging(*, service_name: str) -> None:
    cfg = get_runtime_config(service_name=service_name)
    root = logging.getLogger()
    root.setLevel(getattr(logging, cfg.log_level, logging.INFO))

    # Clear default handlers (uvicorn adds its own; this keeps tests predictable)
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(stream=sys.stdout)
    if cfg.log_format == "json":
        handler.setFormatter(JsonFormatter(service_name))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root.addHandler(handler)


def ensure_request_id(incoming: str | None = None) -> str:
    """Return a request id; generate if missing."""
    v = (incoming or "").strip()
    if v:
        return v[:128]
    return uuid.uuid4().hex
