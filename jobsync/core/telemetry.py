from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
import logging
import os
from urllib.parse import urlsplit

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from jobsync.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s run_id=%(run_id)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
NOISY_LOGGERS = ("httpx", "httpcore")

_CURRENT_RUN_ID: ContextVar[int | None] = ContextVar("jobsync_run_id", default=None)
_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()
_record_factory_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    httpx_instrumented: bool = False


def configure_logging(level: str = "INFO") -> None:
    _install_record_factory()
    if logging.getLogger().handlers:
        return
    resolved_level = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved_level, int):
        resolved_level = logging.INFO
    logging.basicConfig(level=resolved_level, format=LOG_FORMAT)
    # httpx logs every request at INFO; one run issues thousands of them.
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved_level, logging.WARNING))


@contextmanager
def run_log_context(run_id: int) -> Iterator[None]:
    """Tag every log record emitted inside the block with ``run_id``."""
    token = _CURRENT_RUN_ID.set(run_id)
    try:
        yield
    finally:
        _CURRENT_RUN_ID.reset(token)


def setup_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    if settings.otel_log_correlation:
        _install_record_factory()

    attributes = {
        SERVICE_NAME: settings.otel_service_name,
        DEPLOYMENT_ENVIRONMENT: settings.environment,
    }
    upstream_host = urlsplit(settings.jobroom_base_url).hostname
    if upstream_host:
        attributes["jobsync.upstream.host"] = upstream_host

    provider = TracerProvider(
        resource=Resource.create(attributes),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    _httpx_instrumentor.instrument(tracer_provider=provider)
    return TelemetryRuntime(enabled=True, provider=provider, httpx_instrumented=True)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    if runtime.httpx_instrumented:
        _httpx_instrumentor.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logging.getLogger(__name__).info(
            "no OTLP endpoint configured; scraper spans stay in-process service=%s",
            settings.otel_service_name,
        )
        return None

    headers = parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` exporter headers; malformed pairs are dropped."""
    if not raw:
        return {}
    headers: dict[str, str] = {}
    for pair in raw.split(","):
        name, has_value, value = pair.partition("=")
        name = name.strip()
        if has_value and name:
            headers[name] = value.strip()
    return headers


def _install_record_factory() -> None:
    global _record_factory_installed
    if _record_factory_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
        run_id = _CURRENT_RUN_ID.get()
        record.run_id = "-" if run_id is None else run_id
        span_context = trace.get_current_span().get_span_context()
        record.trace_id = format(span_context.trace_id, "032x") if span_context.is_valid else "0" * 32
        record.span_id = format(span_context.span_id, "016x") if span_context.is_valid else "0" * 16
        return record

    logging.setLogRecordFactory(record_factory)
    _record_factory_installed = True
