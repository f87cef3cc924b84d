"""OpenTelemetry wiring; active only with OBS_TRACING_ENABLED and the `tracing` extra."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from chatwire.settings import settings

try:  # pragma: no cover - optional extra
	from opentelemetry import trace
	from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
	from opentelemetry.instrumentation.asyncpg import AsyncPGInstrumentor
	from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
	from opentelemetry.sdk.resources import Resource
	from opentelemetry.sdk.trace import TracerProvider
	from opentelemetry.sdk.trace.export import BatchSpanProcessor
except ImportError:  # pragma: no cover
	trace = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

_provider = None


def _reason_to_skip() -> str | None:
	if not settings.obs_tracing_enabled:
		return "disabled"
	if trace is None:
		return "opentelemetry not installed"
	if not settings.otel_exporter_otlp_endpoint:
		return "no OTLP endpoint"
	if _provider is not None:
		return "already initialised"
	return None


def init_tracing(app: FastAPI) -> None:
	global _provider
	reason = _reason_to_skip()
	if reason is not None:
		if settings.obs_tracing_enabled:
			logger.warning("tracing not started: %s", reason)
		return

	provider = TracerProvider(
		resource=Resource.create(
			{
				"service.name": settings.service_name,
				"service.version": settings.git_commit,
				"deployment.environment": settings.environment,
			}
		)
	)
	provider.add_span_processor(
		BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True))
	)
	trace.set_tracer_provider(provider)
	FastAPIInstrumentor.instrument_app(app)
	# Store queries and the LISTEN connection show up as child spans.
	AsyncPGInstrumentor().instrument()
	_provider = provider
	logger.info("tracing initialised", extra={"endpoint": settings.otel_exporter_otlp_endpoint})


def shutdown_tracing() -> None:
	global _provider
	if _provider is None:
		return
	_provider.shutdown()
	_provider = None
