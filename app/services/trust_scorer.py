"""
Trust Scorer - system-derived verification score for incidents.

DESIGN PRINCIPLES:
- Score is SYSTEM-DERIVED, NOT user-editable
- Score is always recomputed from scratch, never patched incrementally
- Pure function: deterministic, no I/O, callers persist the result
- Score: 0-100 (higher = more trustworthy)

Factors:
1. Upvote count (community corroboration)
2. Media evidence count
3. Description depth
4. Registered reporter
5. Age decay past a grace period
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from app.core.settings import settings
from app.models.base import utc_now
from app.models.incident import Incident

MIN_SCORE = 0
MAX_SCORE = 100


@dataclass(frozen=True)
class ScoringWeights:
    """Heuristic weights. Tunable through settings; not a contract."""
    upvote_points: int = 5
    upvote_cap: int = 50
    media_points: int = 5
    media_cap: int = 20
    description_tiers: Tuple[int, ...] = (100, 500)
    description_bonus: int = 5
    registered_reporter_bonus: int = 10
    age_grace_days: int = 7
    age_penalty_cap: int = 20

    @classmethod
    def from_settings(cls) -> "ScoringWeights":
        tiers = tuple(
            int(part) for part in settings.SCORE_DESCRIPTION_TIERS.split(",") if part.strip()
        )
        return cls(
            upvote_points=settings.SCORE_UPVOTE_POINTS,
            upvote_cap=settings.SCORE_UPVOTE_CAP,
            media_points=settings.SCORE_MEDIA_POINTS,
            media_cap=settings.SCORE_MEDIA_CAP,
            description_tiers=tiers,
            description_bonus=settings.SCORE_DESCRIPTION_BONUS,
            registered_reporter_bonus=settings.SCORE_REGISTERED_REPORTER_BONUS,
            age_grace_days=settings.SCORE_AGE_GRACE_DAYS,
            age_penalty_cap=settings.SCORE_AGE_PENALTY_CAP,
        )


def _clamp(value: float) -> int:
    return int(max(MIN_SCORE, min(value, MAX_SCORE)))


def age_penalty(created_at: datetime, now: datetime, weights: ScoringWeights) -> float:
    """Points lost once an incident is older than the grace period."""
    age_days = (now - created_at).total_seconds() / 86400
    if age_days <= weights.age_grace_days:
        return 0
    return min(age_days - weights.age_grace_days, weights.age_penalty_cap)


def score(
    incident: Incident,
    now: Optional[datetime] = None,
    weights: Optional[ScoringWeights] = None,
) -> int:
    """
    Compute the verification score (0-100) for an incident.

    Args:
        incident: Incident to score
        now: Reference time for age decay (defaults to current UTC time)
        weights: Scoring weights (defaults to the configured weights)

    Returns:
        Integer score clamped to [0, 100]
    """
    weights = weights or ScoringWeights.from_settings()
    now = now or utc_now()

    total = 0.0
    total += min(len(incident.upvotes) * weights.upvote_points, weights.upvote_cap)
    total += min(len(incident.media) * weights.media_points, weights.media_cap)

    description_length = len(incident.description)
    for tier in weights.description_tiers:
        if description_length > tier:
            total += weights.description_bonus

    if incident.reporter.is_registered:
        total += weights.registered_reporter_bonus

    total -= age_penalty(incident.created_at, now, weights)

    return _clamp(total)
