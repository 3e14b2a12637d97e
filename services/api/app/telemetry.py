"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics for the interest-vector / feed-cache pipeline

Both are initialised once at startup and injected into FastAPI via middleware.
"""
import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import Counter, Gauge, Histogram

from app.config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────── Prometheus Metrics ───────────────────────────
VECTOR_CALCULATION_LATENCY = Histogram(
    "vector_calculation_seconds",
    "Time spent recomputing a user interest vector",
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
)

VECTOR_RECALCULATIONS_TOTAL = Counter(
    "vector_recalculations_total",
    "Interest vectors recomputed or rebuilt",
    ["reason"],  # 'drift' | 'grade_transition' | 'manual'
)

VECTOR_CACHE_ACCESS_TOTAL = Counter(
    "vector_cache_access_total",
    "Interest vector Redis lookups",
    ["result"],  # 'hit' | 'miss'
)

DRIFT_CHECKS_TOTAL = Counter(
    "drift_checks_total",
    "Concept drift detections run",
    ["outcome"],  # 'drift' | 'stable'
)

FEED_INVALIDATIONS_TOTAL = Counter(
    "feed_invalidations_total",
    "Per-user feed cache invalidations",
    ["mode", "outcome"],  # mode: 'soft' | 'hard'; outcome: 'ok' | 'skipped' | 'error'
)

INVALIDATION_SWEEP_LATENCY = Histogram(
    "invalidation_sweep_seconds",
    "Duration of a staggered invalidation sweep",
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0],
)

STAMPEDES_TOTAL = Counter(
    "cache_stampedes_total",
    "Cache keys that collected too many concurrent waiters",
)

ALGORITHM_ALERTS_TOTAL = Counter(
    "algorithm_alerts_total",
    "Health threshold breaches raised by the monitor",
)

DRIFT_RATE = Gauge(
    "drift_detection_rate",
    "Exponential moving average of drift detections",
)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
def setup_tracing() -> None:
    """Configure the global OTel TracerProvider with OTLP/Jaeger export."""
    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "deployment.environment": settings.environment,
        }
    )

    provider = TracerProvider(resource=resource)

    if settings.otel_enabled:
        try:
            otlp_exporter = OTLPSpanExporter(
                endpoint=settings.otel_exporter_otlp_endpoint,
                insecure=True,
            )
            provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
            logger.info(
                "OTel tracing configured → %s", settings.otel_exporter_otlp_endpoint
            )
        except Exception as exc:
            logger.warning("Could not connect to OTLP exporter: %s — traces disabled", exc)

    trace.set_tracer_provider(provider)

    # Auto-instrument popular libraries so their spans appear in traces
    RedisInstrumentor().instrument()
    SQLAlchemyInstrumentor().instrument()


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    FastAPIInstrumentor.instrument_app(app)
