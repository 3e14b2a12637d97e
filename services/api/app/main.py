"""
Feed Algorithm API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Initialise DB connection pool (TiDB)
  3. Create tables if not present
  4. Connect to Redis
  5. Expose Prometheus /metrics endpoint

Shutdown stops in-progress invalidation sweeps at their next batch boundary
before the Redis connection is closed.
"""
import logging

from contextlib import asynccontextmanager
from fastapi import FastAPI
from prometheus_client import make_asgi_app
from sqlalchemy import text

from app.algorithms.invalidation import smart_cache_manager
from app.clients.redis_client import close_redis, get_redis, init_redis
from app.config import settings
from app.database import AsyncSessionLocal, init_db
from app.errors import AlgorithmError, algorithm_error_handler, unhandled_error_handler
from app.telemetry import setup_tracing, instrument_app
from app.routers import algorithm, cron

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of all external connections."""
    logger.info("Starting Feed Algorithm API (env=%s)", settings.environment)

    await init_db()
    await init_redis()

    logger.info("All services connected. API ready.")
    yield

    logger.info("Shutting down...")
    smart_cache_manager.stop()
    await close_redis()


app = FastAPI(
    title="Feed Algorithm API",
    description=(
        "Interest vectors, concept drift, grade transitions and "
        "stampede-safe feed cache invalidation."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_exception_handler(AlgorithmError, algorithm_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)

# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(algorithm.router, prefix="/algorithm", tags=["Algorithm"])
app.include_router(cron.router, prefix="/cron", tags=["Maintenance"])

# ── Prometheus metrics endpoint ────────────────────────────────────────────
# Mounted at /metrics — scraped by Prometheus
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
instrument_app(app)


@app.get("/health", tags=["Health"])
async def health():
    checks = {}
    status = "ok"

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        logger.warning("Health check: database unavailable: %s", exc)
        checks["database"] = "error"
        status = "unhealthy"

    try:
        await get_redis().ping()
        checks["redis"] = "ok"
    except Exception as exc:
        logger.warning("Health check: redis unavailable: %s", exc)
        checks["redis"] = "error"
        status = "degraded" if status == "ok" else status

    return {
        "status": status,
        "service": settings.service_name,
        "checks": checks,
        "sweeps_in_progress": smart_cache_manager.active_sweeps,
    }
