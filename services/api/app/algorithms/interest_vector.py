"""
User interest vectors.

A vector is two sparse weight maps built from a user's interactions:
  subjects — {"math": 0.42, "physics": 0.31, ...}
  grades   — {"10th Grade": 0.9, ...}

Each interaction contributes its type weight (VIEW 1 … ECHO 8); the maps are
normalised by the total weight so they sum to ≤ 1. Vectors are compared with
cosine similarity over the union of keys.
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from pydantic import BaseModel, Field

INTERACTION_WEIGHTS = {
    "VIEW": 1,
    "LIKE": 3,
    "COMMENT": 5,
    "SHARE": 7,
    "ECHO": 8,
}
MAX_SUBJECTS = 50


def utcnow() -> datetime:
    """Naive UTC, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Interaction(BaseModel):
    id: str
    type: str
    subject: str = ""
    grade: str = ""
    created_at: datetime


class VectorMetadata(BaseModel):
    last_updated: datetime = Field(default_factory=utcnow)
    drift_score: float = 0.0
    diversity_score: float = 0.0


class UserInterestVector(BaseModel):
    subjects: dict[str, float] = Field(default_factory=dict)
    grades: dict[str, float] = Field(default_factory=dict)
    metadata: VectorMetadata = Field(default_factory=VectorMetadata)

    @property
    def is_empty(self) -> bool:
        return not self.subjects and not self.grades


def get_interaction_weight(interaction_type: str) -> int:
    return INTERACTION_WEIGHTS.get(interaction_type, 1)


def prune_vector(vector: dict[str, float], max_keys: int) -> dict[str, float]:
    """Keep only the `max_keys` heaviest entries."""
    top = sorted(vector.items(), key=lambda kv: kv[1], reverse=True)[:max_keys]
    return dict(top)


def calculate_diversity_score(subjects: dict[str, float]) -> float:
    """
    Normalised Shannon entropy of the subject weights, in [0, 1].
    1.0 = interest spread evenly across subjects, 0.0 = single subject.
    """
    values = list(subjects.values())
    if not values:
        return 0.0

    entropy = -sum(p * math.log2(p) for p in values if p > 0)
    max_entropy = math.log2(len(values))
    return entropy / max_entropy if max_entropy > 0 else 0.0


def calculate_user_interest_vector(
    interactions: Iterable[Interaction],
    max_age_days: int = 30,
    now: Optional[datetime] = None,
    max_subjects: int = MAX_SUBJECTS,
) -> UserInterestVector:
    now = now or utcnow()
    cutoff = now - timedelta(days=max_age_days)
    recent = [i for i in interactions if i.created_at > cutoff]

    subjects: dict[str, float] = {}
    grades: dict[str, float] = {}
    total_weight = 0

    for interaction in recent:
        weight = get_interaction_weight(interaction.type)
        total_weight += weight
        if interaction.subject:
            subjects[interaction.subject] = subjects.get(interaction.subject, 0) + weight
        if interaction.grade:
            grades[interaction.grade] = grades.get(interaction.grade, 0) + weight

    if total_weight > 0:
        subjects = {k: v / total_weight for k, v in subjects.items()}
        grades = {k: v / total_weight for k, v in grades.items()}

    return UserInterestVector(
        subjects=prune_vector(subjects, max_subjects),
        grades=grades,
        metadata=VectorMetadata(
            last_updated=now,
            diversity_score=calculate_diversity_score(subjects),
        ),
    )


def calculate_cosine_similarity(a: dict[str, float], b: dict[str, float]) -> float:
    keys = set(a) | set(b)

    dot = sum(a.get(k, 0.0) * b.get(k, 0.0) for k in keys)
    mag_a = math.sqrt(sum(v * v for v in a.values()))
    mag_b = math.sqrt(sum(v * v for v in b.values()))

    if mag_a == 0 or mag_b == 0:
        return 0.0
    return dot / (mag_a * mag_b)
