"""
Algorithm endpoints:
  POST /algorithm/drift-check         — drift check for the caller, recompute on drift
  POST /algorithm/grade-transition    — move the caller to a new grade
  GET  /algorithm/metrics             — health snapshot + threshold alerts (admin)
  POST /algorithm/content-published   — staggered feed invalidation (internal)
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, status
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from app.algorithms.drift import DriftDetector
from app.algorithms.invalidation import Content, smart_cache_manager
from app.algorithms.vector_store import InterestVectorStore
from app.auth import get_current_user, require_admin, verify_service_secret
from app.database import AsyncSessionLocal, get_db
from app.errors import AlgorithmError, DependencyFailure, ValidationError
from app.models import User
from app.monitoring.health_monitor import algorithm_monitor
from app.schemas import (
    ContentAccepted,
    ContentPublished,
    DriftCheckResponse,
    GradeTransitionRequest,
    GradeTransitionResponse,
    MetricsResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)

DEFAULT_GRADE = "General"


@router.post("/drift-check", response_model=DriftCheckResponse)
async def drift_check(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    with tracer.start_as_current_span("drift_check") as span:
        span.set_attribute("user.id", user.user_id)
        store = InterestVectorStore(db)

        try:
            analysis = await DriftDetector().detect_concept_drift(
                user.user_id, store.interactions
            )
            algorithm_monitor.record_drift_detection(analysis.has_drift)

            if analysis.has_drift:
                try:
                    await store.force_recalculate_vector(user.user_id, reason="drift")
                    await store.invalidate_user_feed(user.user_id)
                except Exception as exc:
                    raise DependencyFailure(
                        f"Vector recalculation failed for {user.user_id}: {exc}"
                    ) from exc
        except AlgorithmError:
            algorithm_monitor.record_error()
            raise

        algorithm_monitor.record_success()
        span.set_attribute("drift.detected", analysis.has_drift)
        span.set_attribute("drift.similarity", analysis.similarity)

        return DriftCheckResponse(
            analysis=analysis,
            vector_recalculated=analysis.has_drift,
        )


@router.post("/grade-transition", response_model=GradeTransitionResponse)
async def grade_transition(
    body: Optional[GradeTransitionRequest] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if body is None or not body.new_grade:
        raise ValidationError("New grade is required")

    with tracer.start_as_current_span("grade_transition") as span:
        span.set_attribute("user.id", user.user_id)
        old_grade = user.grade or DEFAULT_GRADE
        new_grade = body.new_grade
        store = InterestVectorStore(db)

        try:
            await DriftDetector().handle_grade_transition(
                user.user_id, old_grade, new_grade, store, store
            )
        except AlgorithmError:
            algorithm_monitor.record_error()
            raise

        algorithm_monitor.record_recalculation("grade_transition")
        algorithm_monitor.record_success()

        user.grade = new_grade
        await db.flush()
        logger.info("User %s moved from %s to %s", user.user_id, old_grade, new_grade)

        return GradeTransitionResponse(
            old_grade=old_grade,
            new_grade=new_grade,
            message="Grade transition completed successfully",
        )


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics(_admin: User = Depends(require_admin)):
    metrics = algorithm_monitor.get_metrics()
    alerts = await algorithm_monitor.check_thresholds_and_alert()
    return MetricsResponse(
        metrics=metrics,
        alerts=alerts,
        timestamp=datetime.now(timezone.utc),
    )


async def run_invalidation_sweep(content: Content) -> None:
    """Background task: owns its own session, the request's is closed by now."""
    try:
        async with AsyncSessionLocal() as db:
            store = InterestVectorStore(db)
            await smart_cache_manager.on_new_content(content, store)
    except Exception:
        logger.exception("Invalidation sweep for content %s failed", content.id)


@router.post(
    "/content-published",
    response_model=ContentAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(verify_service_secret)],
)
async def content_published(body: ContentPublished, background: BackgroundTasks):
    content = Content(id=body.id, subject=body.subject, grade=body.grade)
    background.add_task(run_invalidation_sweep, content)
    logger.info("Scheduled feed invalidation for content %s", content.id)
    return ContentAccepted(content_id=content.id)
