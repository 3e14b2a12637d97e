"""
Concept drift detection & grade transitions.

Drift compares what a user engaged with recently (last 30 days) against what
they engaged with before that (30–90 days ago). Both windows are turned into
subject vectors and compared with cosine similarity:

  similarity ≥ threshold (0.6)  → CONTINUE            stored vector still fits
  similarity <  threshold       → RECALCULATE_VECTOR  interests have moved

Detection is read-only; the caller decides whether to recompute.

A grade change keeps the subject weights (a student who liked chemistry still
likes chemistry) but rebuilds the grade weights around the new grade, with
a light weight kept on the old one for the transition period.
"""
import logging
from typing import Optional, Protocol

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from app.algorithms.interest_vector import (
    Interaction,
    UserInterestVector,
    VectorMetadata,
    calculate_cosine_similarity,
    calculate_user_interest_vector,
    utcnow,
)
from app.config import settings
from app.errors import DependencyFailure

logger = logging.getLogger(__name__)

RECALCULATE = "RECALCULATE_VECTOR"
CONTINUE = "CONTINUE"
OLD_GRADE_WEIGHT = 0.3


class InteractionSource(Protocol):
    async def get_interactions(
        self, user_id: str, start_days: int, end_days: Optional[int] = None
    ) -> list[Interaction]:
        """Interactions older than `start_days` and newer than `end_days` days ago."""


class VectorRepository(Protocol):
    async def get_user_interest_vector(self, user_id: str) -> UserInterestVector: ...

    async def cache_user_interest_vector(
        self, user_id: str, vector: UserInterestVector
    ) -> None: ...


class FeedInvalidator(Protocol):
    async def invalidate_user_feed(self, user_id: str) -> None: ...


class DriftAnalysis(BaseModel):
    has_drift: bool
    drift_severity: float
    similarity: float
    recommendation: str
    affected_subjects: list[str]

    class Config:
        alias_generator = to_camel
        populate_by_name = True


def find_drifting_subjects(
    recent: dict[str, float],
    historical: dict[str, float],
    min_change: float,
) -> list[str]:
    return sorted(
        subject
        for subject in set(recent) | set(historical)
        if abs(recent.get(subject, 0.0) - historical.get(subject, 0.0)) > min_change
    )


class DriftDetector:
    def __init__(
        self,
        threshold: Optional[float] = None,
        recent_days: Optional[int] = None,
        history_days: Optional[int] = None,
        subject_change: Optional[float] = None,
    ) -> None:
        self.threshold = settings.drift_similarity_threshold if threshold is None else threshold
        self.recent_days = recent_days or settings.drift_recent_days
        self.history_days = history_days or settings.drift_history_days
        self.subject_change = (
            settings.drift_subject_change if subject_change is None else subject_change
        )

    async def detect_concept_drift(
        self,
        user_id: str,
        interactions: InteractionSource,
    ) -> DriftAnalysis:
        try:
            recent = await interactions.get_interactions(user_id, 0, self.recent_days)
            historical = await interactions.get_interactions(
                user_id, self.recent_days, self.history_days
            )
        except Exception as exc:
            raise DependencyFailure(
                f"Failed to fetch interactions for {user_id}: {exc}"
            ) from exc

        # One reference time for both windows keeps the result deterministic
        now = utcnow()
        recent_vector = calculate_user_interest_vector(recent, self.recent_days, now=now)
        historical_vector = calculate_user_interest_vector(
            historical, self.history_days, now=now
        )

        if not historical_vector.subjects:
            # No history to compare against: a new user is not drifting.
            # A dormant user (history, nothing recent) scores 0 below.
            similarity = 1.0
        else:
            similarity = calculate_cosine_similarity(
                recent_vector.subjects, historical_vector.subjects
            )

        has_drift = similarity < self.threshold
        return DriftAnalysis(
            has_drift=has_drift,
            drift_severity=round(1.0 - similarity, 4),
            similarity=round(similarity, 4),
            recommendation=RECALCULATE if has_drift else CONTINUE,
            affected_subjects=find_drifting_subjects(
                recent_vector.subjects, historical_vector.subjects, self.subject_change
            ),
        )

    async def handle_grade_transition(
        self,
        user_id: str,
        old_grade: str,
        new_grade: str,
        vectors: VectorRepository,
        feeds: FeedInvalidator,
    ) -> UserInterestVector:
        try:
            old_vector = await vectors.get_user_interest_vector(user_id)
        except Exception as exc:
            raise DependencyFailure(f"Failed to load vector for {user_id}: {exc}") from exc

        grades = {new_grade: 1.0}
        if old_grade and old_grade != new_grade:
            grades[old_grade] = OLD_GRADE_WEIGHT

        new_vector = UserInterestVector(
            subjects=dict(old_vector.subjects),
            grades=grades,
            metadata=VectorMetadata(
                last_updated=utcnow(),
                drift_score=0.0,
                diversity_score=old_vector.metadata.diversity_score,
            ),
        )

        try:
            await vectors.cache_user_interest_vector(user_id, new_vector)
        except Exception as exc:
            raise DependencyFailure(f"Failed to cache vector for {user_id}: {exc}") from exc

        try:
            await feeds.invalidate_user_feed(user_id)
        except Exception as exc:
            logger.error(
                "Grade transition partially applied for %s (%s → %s): "
                "vector cached but feed not invalidated: %s",
                user_id, old_grade, new_grade, exc,
            )
            raise DependencyFailure(
                f"Feed invalidation failed for {user_id} after grade transition: {exc}"
            ) from exc

        logger.info("Grade transition for %s: %s → %s", user_id, old_grade, new_grade)
        return new_vector
