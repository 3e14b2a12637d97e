"""
Pydantic request / response schemas for the API layer.
Kept separate from ORM models to avoid coupling transport to storage.
Field names are camelCase on the wire.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from app.algorithms.drift import DriftAnalysis
from app.monitoring.health_monitor import AlgorithmHealthMetrics


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


# ──────────────────────────── Drift ───────────────────────────────────────

class DriftCheckResponse(CamelModel):
    success: bool = True
    analysis: DriftAnalysis
    vector_recalculated: bool


# ──────────────────────────── Grade transition ────────────────────────────

class GradeTransitionRequest(CamelModel):
    new_grade: Optional[str] = None


class GradeTransitionResponse(CamelModel):
    success: bool = True
    old_grade: str
    new_grade: str
    message: str


# ──────────────────────────── Metrics ─────────────────────────────────────

class MetricsResponse(CamelModel):
    success: bool = True
    metrics: AlgorithmHealthMetrics
    alerts: list[str]
    timestamp: datetime


# ──────────────────────────── Content ─────────────────────────────────────

class ContentPublished(CamelModel):
    id: str
    subject: Optional[str] = None
    grade: Optional[str] = None


class ContentAccepted(CamelModel):
    accepted: bool = True
    content_id: str


# ──────────────────────────── Maintenance ─────────────────────────────────

class MaintenanceResponse(CamelModel):
    success: bool = True
    type: str
    message: str
    report: dict
    timestamp: datetime
