"""
Activity classification → adaptive cache TTL.

Busy users see their feed change quickly, so their cached interest vector
expires sooner; dormant accounts keep theirs for hours.
"""
from enum import Enum


class ActivityLevel(str, Enum):
    VERY_ACTIVE = "very_active"
    ACTIVE = "active"
    MODERATE = "moderate"
    INACTIVE = "inactive"


# seconds
ADAPTIVE_TTL = {
    ActivityLevel.VERY_ACTIVE: 3 * 60,
    ActivityLevel.ACTIVE: 15 * 60,
    ActivityLevel.MODERATE: 60 * 60,
    ActivityLevel.INACTIVE: 4 * 60 * 60,
}
DEFAULT_TTL = 2 * 60 * 60


def get_user_activity_level(total_interactions: int, account_age_days: int) -> ActivityLevel:
    """Classify by average interactions per day of account age."""
    avg_per_day = total_interactions / max(account_age_days, 1)

    if avg_per_day > 20:
        return ActivityLevel.VERY_ACTIVE
    if avg_per_day > 5:
        return ActivityLevel.ACTIVE
    if avg_per_day > 1:
        return ActivityLevel.MODERATE
    return ActivityLevel.INACTIVE


def get_adaptive_ttl(activity) -> int:
    try:
        return ADAPTIVE_TTL[ActivityLevel(activity)]
    except ValueError:
        return DEFAULT_TTL
