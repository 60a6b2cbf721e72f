"""Observability: OpenTelemetry tracing for idemco."""

from idemco.observability.tracing import configure_tracing, set_span_attributes, start_span

__all__ = ["configure_tracing", "set_span_attributes", "start_span"]
