"""OpenTelemetry tracing configuration for idemco.

Spans produced by the coordinator carry the operation tag, outcome and replay
flag so a replay can be told apart from a fresh execution in traces.

Environment Variables:
    IDEMCO_OTEL_ENABLED: Set to "1" to enable tracing (default: disabled)
    IDEMCO_REQUIRE_OTEL: Set to "1" to fail startup if tracing cannot initialize
    IDEMCO_OTEL_SERVICE_NAME: Service name for spans (default: "idemco")
    IDEMCO_OTEL_EXPORTER: Exporter type - "otlp" or "console" (default: "otlp")
    IDEMCO_OTEL_EXPORTER_OTLP_ENDPOINT: OTLP endpoint URL (optional)
    IDEMCO_OTEL_EXPORTER_OTLP_PROTOCOL: "grpc" or "http" (default: "grpc")
    IDEMCO_OTEL_RESOURCE_ATTRS: Comma-separated k=v pairs for resource attributes
    IDEMCO_OTEL_TEST_CAPTURE: Set to "1" to use in-memory exporter for tests

Stored responses, request payloads and idempotency keys are never exported as
span attributes.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
    from opentelemetry.trace import Span

logger = logging.getLogger(__name__)

TRACER_NAME = "idemco"

_tracer_provider: TracerProvider | None = None
_is_configured: bool = False
_test_exporter: Any = None  # Reference to InMemorySpanExporter for testing


class TracingConfigError(Exception):
    """Raised when tracing configuration fails and IDEMCO_REQUIRE_OTEL=1."""


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean from environment variable."""
    val = os.environ.get(key, "").strip().lower()
    if val in ("1", "true", "yes"):
        return True
    return default


def _get_env_str(key: str, default: str = "") -> str:
    """Get string from environment variable."""
    return os.environ.get(key, default).strip()


def _parse_resource_attrs(attrs_str: str) -> dict[str, str]:
    """Parse comma-separated k=v resource attributes."""
    result: dict[str, str] = {}
    if not attrs_str:
        return result
    for pair in attrs_str.split(","):
        pair = pair.strip()
        if "=" in pair:
            k, v = pair.split("=", 1)
            result[k.strip()] = v.strip()
    return result


def _create_otlp_exporter(protocol: str, endpoint: str | None) -> Any:
    """Create OTLP exporter based on protocol."""
    kwargs: dict[str, Any] = {}
    if endpoint:
        kwargs["endpoint"] = endpoint

    if protocol == "http":
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter as HTTPExporter,
        )

        return HTTPExporter(**kwargs)

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
        OTLPSpanExporter as GRPCExporter,
    )

    return GRPCExporter(**kwargs)


def configure_tracing() -> bool:
    """Configure OpenTelemetry tracing.

    Idempotent - safe to call multiple times.

    Returns:
        True if tracing is enabled and configured, False otherwise.

    Raises:
        TracingConfigError: If IDEMCO_REQUIRE_OTEL=1 and configuration fails.
    """
    global _tracer_provider, _is_configured, _test_exporter

    enabled = _get_env_bool("IDEMCO_OTEL_ENABLED", False)
    require_otel = _get_env_bool("IDEMCO_REQUIRE_OTEL", False)
    test_capture = _get_env_bool("IDEMCO_OTEL_TEST_CAPTURE", False)

    if not enabled:
        _is_configured = True
        logger.debug("OpenTelemetry tracing disabled (IDEMCO_OTEL_ENABLED not set)")
        return False

    # the global provider can only be set once per process
    if _test_exporter is not None and test_capture:
        return True

    if _is_configured and _tracer_provider is not None:
        return True

    _is_configured = True

    try:
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
            ConsoleSpanExporter,
            SimpleSpanProcessor,
        )

        service_name = _get_env_str("IDEMCO_OTEL_SERVICE_NAME", "idemco")
        exporter_type = _get_env_str("IDEMCO_OTEL_EXPORTER", "otlp")
        endpoint = _get_env_str("IDEMCO_OTEL_EXPORTER_OTLP_ENDPOINT", "")
        protocol = _get_env_str("IDEMCO_OTEL_EXPORTER_OTLP_PROTOCOL", "grpc")

        resource_attrs = {"service.name": service_name}
        resource_attrs.update(_parse_resource_attrs(_get_env_str("IDEMCO_OTEL_RESOURCE_ATTRS")))
        provider = TracerProvider(resource=Resource.create(resource_attrs))

        if test_capture:
            from opentelemetry.sdk.trace.export.in_memory_span_exporter import (
                InMemorySpanExporter,
            )

            _test_exporter = InMemorySpanExporter()
            provider.add_span_processor(SimpleSpanProcessor(_test_exporter))
        elif exporter_type == "console":
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        else:
            otlp_exporter = _create_otlp_exporter(protocol, endpoint or None)
            provider.add_span_processor(BatchSpanProcessor(otlp_exporter))

        trace.set_tracer_provider(provider)
        _tracer_provider = provider

        logger.info(
            "OpenTelemetry tracing configured: service=%s, exporter=%s",
            service_name,
            exporter_type if not test_capture else "in-memory",
        )
        return True

    except Exception as e:
        logger.error("Failed to configure OpenTelemetry tracing: %s", e)
        if require_otel:
            raise TracingConfigError(
                f"OpenTelemetry tracing required but configuration failed: {e}"
            ) from e
        return False


def instrument_fastapi(app: Any) -> None:
    """Instrument FastAPI application with OpenTelemetry."""
    if not _get_env_bool("IDEMCO_OTEL_ENABLED", False):
        return

    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(app, excluded_urls="health")
        logger.debug("FastAPI instrumented with OpenTelemetry")
    except Exception as e:
        logger.warning("Failed to instrument FastAPI: %s", e)


def instrument_sqlalchemy(engine: Any) -> None:
    """Instrument SQLAlchemy engine with OpenTelemetry."""
    if not _get_env_bool("IDEMCO_OTEL_ENABLED", False):
        return

    try:
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

        SQLAlchemyInstrumentor().instrument(engine=engine, enable_commenter=False)
        logger.debug("SQLAlchemy engine instrumented with OpenTelemetry")
    except Exception as e:
        logger.warning("Failed to instrument SQLAlchemy: %s", e)


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Span]:
    """Start a span as the current span.

    Without a configured provider the API's no-op tracer is used.
    Exceptions raised inside the block are recorded on the span and re-raised.
    """
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(name) as span:
        if attributes:
            set_span_attributes(attributes)
        yield span


def set_span_attributes(attributes: dict[str, Any]) -> None:
    """Set attributes on the current span, skipping None values."""
    span = trace.get_current_span()
    if not span.is_recording():
        return
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, bool | int | float | str):
            span.set_attribute(key, value)
        else:
            span.set_attribute(key, str(value))


def get_test_spans() -> list[ReadableSpan]:
    """Get captured spans from the in-memory exporter (for testing)."""
    if _test_exporter is not None:
        return list(_test_exporter.get_finished_spans())
    return []


def reset_tracing() -> None:
    """Reset tracing configuration (for testing).

    The global TracerProvider cannot be replaced once set, so the test exporter
    is kept and only its captured spans are cleared.
    """
    global _is_configured

    if _test_exporter is not None:
        _test_exporter.clear()
    _is_configured = False
