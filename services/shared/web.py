from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from services.shared.errors import BookstoreError, Forbidden, Unauthorized
from services.shared.otel import instrument_fastapi
from services.shared.runtime import RuntimeConfig, ensure_request_id


def install_common(app: FastAPI, *, runtime: RuntimeConfig, logger: logging.Logger) -> None:
    """Request-id logging middleware, error rendering and tracing for one service."""

    # OTel instrumentation is a no-op unless BOOKSTORE_OTEL_ENABLED=1.
    instrument_fastapi(app)

    @app.middleware("http")
    async def _request_id_mw(request: Request, call_next):
        rid = ensure_request_id(request.headers.get(runtime.request_id_header))
        started = time.perf_counter()
        request.state.request_id = rid
        resp = await call_next(request)
        resp.headers.setdefault("X-Request-Id", rid)
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "request",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status_code": getattr(resp, "status_code", None),
                "duration_ms": duration_ms,
            },
        )
        return resp

    @app.exception_handler(BookstoreError)
    async def _bookstore_error(request: Request, exc: BookstoreError):
        if isinstance(exc, (Forbidden, Unauthorized)):
            # audit trail: every authorization failure is logged with who and what
            logger.warning(
                "authorization denied",
                extra={
                    "request_id": getattr(request.state, "request_id", None),
                    "principal": exc.context.get("principal"),
                    "resource": exc.context.get("resource"),
                    "action": exc.context.get("action"),
                },
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": exc.code, "detail": exc.message},
        )
