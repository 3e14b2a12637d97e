"""
SQLAlchemy ORM models for TiDB.

Tables:
  users                 — accounts with role, grade and interaction counter
  interactions          — user × content engagement events (VIEW, LIKE, ...)
  user_interest_vectors — one persisted interest vector per user
  similar_users         — collaborative-filtering neighbours (weekly cleanup)
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(20), default="USER", nullable=False)
    # Free-form cohort label, e.g. "10th Grade"
    grade: Mapped[Optional[str]] = mapped_column(String(50))
    total_interactions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        # "active users" scan in the daily maintenance job
        Index("idx_users_updated", "updated_at"),
        Index("idx_users_grade", "grade"),
    )
    # server-side timestamps are loaded on flush
    __mapper_args__ = {"eager_defaults": True}


class Interaction(Base):
    __tablename__ = "interactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    content_id: Mapped[Optional[str]] = mapped_column(String(36))
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # VIEW | LIKE | ...
    subject: Mapped[Optional[str]] = mapped_column(String(100))
    grade: Mapped[Optional[str]] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_interactions_user_created", "user_id", "created_at"),
        Index("idx_interactions_subject", "subject"),
    )
    __mapper_args__ = {"eager_defaults": True}


class UserInterestVector(Base):
    __tablename__ = "user_interest_vectors"

    # user_id as PK: at most one vector per user
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    subjects: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    grades: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    drift_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    diversity_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class SimilarUser(Base):
    __tablename__ = "similar_users"

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    similar_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    similarity: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    __mapper_args__ = {"eager_defaults": True}
