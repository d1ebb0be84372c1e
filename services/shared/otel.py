from __future__ import annotations

from typing import Any

from services.shared.runtime import get_runtime_config


def setup_otel(*, service_name: str) -> None:
    """Best-effort OpenTelemetry initialization.

    Only activates when BOOKSTORE_OTEL_ENABLED=1; the OpenTelemetry packages
    are an optional extra, so a service without them keeps running untraced.
    """

    cfg = get_runtime_config(service_name=service_name)
    if not cfg.otel_enabled:
        return

    try:
        from opentelemetry import trace  # type: ignore
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter  # type: ignore
        from opentelemetry.sdk.resources import Resource  # type: ignore
        from opentelemetry.sdk.trace import TracerProvider  # type: ignore
        from opentelemetry.sdk.trace.export import BatchSpanProcessor  # type: ignore
    except ImportError:
        return

    resource = Resource.create({"service.name": cfg.otel_service_name, "deployment.environment": cfg.env})
    provider = TracerProvider(resource=resource)

    exporter_kwargs: dict[str, Any] = {}
    if cfg.otel_exporter_otlp_endpoint:
        exporter_kwargs["endpoint"] = cfg.otel_exporter_otlp_endpoint

    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    cfg = get_runtime_config(service_name=getattr(app, "title", "bookstore"))
    if not cfg.otel_enabled:
        return
    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor  # type: ignore
    except ImportError:
        return
    FastAPIInstrumentor.instrument_app(app)
