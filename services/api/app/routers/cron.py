"""
Scheduled maintenance trigger:
  GET /cron/algorithm-maintenance?type=daily|weekly

Called by the platform scheduler with `Authorization: Bearer <CRON_SECRET>`.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import verify_service_secret
from app.database import get_db
from app.errors import ValidationError
from app.jobs.maintenance import run_daily_maintenance, run_weekly_maintenance
from app.schemas import MaintenanceResponse

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


@router.get(
    "/algorithm-maintenance",
    response_model=MaintenanceResponse,
    dependencies=[Depends(verify_service_secret)],
)
async def algorithm_maintenance(
    type: str = Query("daily", description="daily | weekly"),
    db: AsyncSession = Depends(get_db),
):
    with tracer.start_as_current_span("algorithm_maintenance") as span:
        span.set_attribute("maintenance.type", type)

        if type == "daily":
            report = await run_daily_maintenance(db)
        elif type == "weekly":
            report = await run_weekly_maintenance(db)
        else:
            raise ValidationError(f"Unknown maintenance type '{type}'")

        return MaintenanceResponse(
            type=type,
            message=f"{type.capitalize()} maintenance completed",
            report=report.to_dict(),
            timestamp=datetime.now(timezone.utc),
        )
