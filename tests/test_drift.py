"""Tests for DriftDetector."""

import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

pytestmark = pytest.mark.asyncio

from app.algorithms.drift import CONTINUE, RECALCULATE, DriftDetector
from app.algorithms.interest_vector import Interaction, UserInterestVector, VectorMetadata, utcnow
from app.errors import DependencyFailure


def make_interactions(subject_counts: dict, days_old: float) -> list[Interaction]:
    created = utcnow() - timedelta(days=days_old)
    return [
        Interaction(id=f"{subject}-{i}", type="LIKE", subject=subject, grade="9th Grade", created_at=created)
        for subject, count in subject_counts.items()
        for i in range(count)
    ]


class FakeInteractions:
    """Serves a fixed recent window (start_days == 0) and historical window."""

    def __init__(self, recent=(), historical=(), error=None):
        self.recent = list(recent)
        self.historical = list(historical)
        self.error = error
        self.calls = []

    async def get_interactions(self, user_id, start_days, end_days=None):
        self.calls.append((user_id, start_days, end_days))
        if self.error:
            raise self.error
        return self.recent if start_days == 0 else self.historical


class TestDetectConceptDrift:
    async def test_changed_interests_are_drift(self):
        source = FakeInteractions(
            recent=make_interactions({"physics": 7, "chemistry": 3}, days_old=5),
            historical=make_interactions({"literature": 9, "history": 1}, days_old=50),
        )

        analysis = await DriftDetector().detect_concept_drift("u1", source)

        assert analysis.has_drift is True
        assert analysis.recommendation == RECALCULATE
        assert analysis.similarity == 0.0
        assert analysis.drift_severity == 1.0
        assert analysis.affected_subjects == ["chemistry", "literature", "physics"]

    async def test_stable_interests_are_not_drift(self):
        source = FakeInteractions(
            recent=make_interactions({"math": 6, "physics": 4}, days_old=3),
            historical=make_interactions({"math": 5, "physics": 5}, days_old=60),
        )

        analysis = await DriftDetector().detect_concept_drift("u1", source)

        assert analysis.has_drift is False
        assert analysis.recommendation == CONTINUE
        assert analysis.similarity > 0.9
        assert analysis.affected_subjects == []

    async def test_windows_requested(self):
        source = FakeInteractions()
        await DriftDetector().detect_concept_drift("u1", source)
        assert source.calls == [("u1", 0, 30), ("u1", 30, 90)]

    async def test_no_history_is_not_drift(self):
        source = FakeInteractions(recent=make_interactions({"math": 3}, days_old=1))
        analysis = await DriftDetector().detect_concept_drift("u1", source)
        assert analysis.has_drift is False
        assert analysis.similarity == 1.0

    async def test_dormant_user_is_drift(self):
        source = FakeInteractions(historical=make_interactions({"math": 5}, days_old=45))
        analysis = await DriftDetector().detect_concept_drift("u1", source)
        assert analysis.has_drift is True
        assert analysis.similarity == 0.0
        assert analysis.recommendation == RECALCULATE
        assert analysis.affected_subjects == ["math"]

    async def test_both_windows_empty_is_not_drift(self):
        analysis = await DriftDetector().detect_concept_drift("u1", FakeInteractions())
        assert analysis.has_drift is False
        assert analysis.similarity == 1.0

    async def test_threshold_is_configurable(self):
        source = FakeInteractions(
            recent=make_interactions({"math": 7, "physics": 3}, days_old=3),
            historical=make_interactions({"math": 3, "physics": 7}, days_old=60),
        )
        # cosine ≈ 0.72
        assert (await DriftDetector(threshold=0.6).detect_concept_drift("u1", source)).has_drift is False
        assert (await DriftDetector(threshold=0.8).detect_concept_drift("u1", source)).has_drift is True

    async def test_deterministic(self):
        source = FakeInteractions(
            recent=make_interactions({"math": 2, "art": 5}, days_old=2),
            historical=make_interactions({"math": 6, "art": 1}, days_old=45),
        )
        detector = DriftDetector()
        first = await detector.detect_concept_drift("u1", source)
        second = await detector.detect_concept_drift("u1", source)
        assert first == second

    async def test_fetch_failure_raises_dependency_failure(self):
        source = FakeInteractions(error=ConnectionError("db down"))
        with pytest.raises(DependencyFailure, match="db down"):
            await DriftDetector().detect_concept_drift("u1", source)

    async def test_serialises_camel_case(self):
        analysis = await DriftDetector().detect_concept_drift("u1", FakeInteractions())
        body = analysis.model_dump(by_alias=True)
        assert set(body) == {"hasDrift", "driftSeverity", "similarity", "recommendation", "affectedSubjects"}


def make_collaborators(subjects=None, diversity=0.7):
    vectors = AsyncMock()
    vectors.get_user_interest_vector.return_value = UserInterestVector(
        subjects=subjects or {"math": 0.6, "physics": 0.4},
        grades={"9th Grade": 1.0},
        metadata=VectorMetadata(drift_score=0.4, diversity_score=diversity),
    )
    feeds = AsyncMock()
    return vectors, feeds


class TestHandleGradeTransition:
    async def test_caches_and_invalidates_exactly_once(self):
        vectors, feeds = make_collaborators()

        await DriftDetector().handle_grade_transition("u1", "9th Grade", "10th Grade", vectors, feeds)

        vectors.cache_user_interest_vector.assert_awaited_once()
        feeds.invalidate_user_feed.assert_awaited_once_with("u1")

    async def test_subjects_kept_grades_rebuilt(self):
        vectors, feeds = make_collaborators()

        await DriftDetector().handle_grade_transition("u1", "9th Grade", "10th Grade", vectors, feeds)

        user_id, cached = vectors.cache_user_interest_vector.await_args.args
        assert user_id == "u1"
        assert cached.subjects == {"math": 0.6, "physics": 0.4}
        assert cached.grades == {"10th Grade": 1.0, "9th Grade": 0.3}
        assert cached.metadata.drift_score == 0.0
        assert cached.metadata.diversity_score == 0.7

    async def test_same_grade_has_single_weight(self):
        vectors, feeds = make_collaborators()
        await DriftDetector().handle_grade_transition("u1", "9th Grade", "9th Grade", vectors, feeds)
        _, cached = vectors.cache_user_interest_vector.await_args.args
        assert cached.grades == {"9th Grade": 1.0}

    async def test_cache_failure_skips_invalidation(self):
        vectors, feeds = make_collaborators()
        vectors.cache_user_interest_vector.side_effect = ConnectionError("redis down")

        with pytest.raises(DependencyFailure):
            await DriftDetector().handle_grade_transition("u1", "9th Grade", "10th Grade", vectors, feeds)

        feeds.invalidate_user_feed.assert_not_awaited()

    async def test_partial_application_is_logged_and_raised(self, caplog):
        vectors, feeds = make_collaborators()
        feeds.invalidate_user_feed.side_effect = ConnectionError("redis down")

        with caplog.at_level(logging.ERROR, logger="app.algorithms.drift"):
            with pytest.raises(DependencyFailure, match="Feed invalidation failed"):
                await DriftDetector().handle_grade_transition(
                    "u1", "9th Grade", "10th Grade", vectors, feeds
                )

        vectors.cache_user_interest_vector.assert_awaited_once()
        assert "partially applied" in caplog.text
