"""
PRTS (Price-Reliability-Trust Score) Calculator

Five sub-scores in [0, 100], each neutral (50) when its inputs are missing,
combined with fixed weights into a 0-100 total:

    price integrity        0.30   |final - quoted| / quoted
    pickup reliability     0.25   actual pickup - quoted ETA (minutes)
    cancellation behavior  0.20   driver cancellations (75 when nothing reported)
    route integrity        0.15   distance and duration deviation
    support resolution     0.10   outcome of a support request

Scoring is a pure function of the observation's fields; storing replaces any
previous score row, so recomputation is idempotent.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from models import TruthRide, TruthScore

logger = logging.getLogger(__name__)

NEUTRAL = 50
NO_CANCELLATION_DATA = 75

# Integer percentages so the weighted total is exact before rounding
WEIGHT_PERCENT = {
    "price_integrity": 30,
    "pickup_reliability": 25,
    "cancellation": 20,
    "route_integrity": 15,
    "support_resolution": 10,
}
WEIGHTS = {k: v / 100 for k, v in WEIGHT_PERCENT.items()}

DIMENSIONS = tuple(WEIGHT_PERCENT.keys())

# (max deviation, score); first bucket that fits wins
PRICE_BUCKETS: Sequence[Tuple[float, int]] = (
    (0.02, 100), (0.05, 90), (0.10, 75), (0.20, 55), (0.30, 35), (0.50, 15),
)
PRICE_FLOOR = 0

PICKUP_BUCKETS: Sequence[Tuple[float, int]] = (
    (0, 100), (1, 95), (2, 85), (5, 70), (10, 45), (15, 25),
)
PICKUP_FLOOR = 5

DISTANCE_BUCKETS: Sequence[Tuple[float, int]] = (
    (0.05, 100), (0.10, 90), (0.15, 75), (0.25, 55), (0.40, 30),
)
DISTANCE_FLOOR = 10

DURATION_BUCKETS: Sequence[Tuple[float, int]] = (
    (0.10, 100), (0.20, 85), (0.30, 65), (0.50, 40),
)
DURATION_FLOOR = 15

RESOLVED_OUTCOMES = {
    "full_refund": 90,
    "partial_refund": 70,
    "apology_credit": 60,
}
RESOLVED_GENERIC = 80
UNRESOLVED_OUTCOMES = {
    "denied": 15,
    "no_response": 5,
}
UNRESOLVED_OTHER = 25


@dataclass
class PRTSResult:
    price_integrity: int
    pickup_reliability: int
    cancellation: int
    route_integrity: int
    support_resolution: int
    total: int
    explanation: str

    def breakdown(self) -> Dict[str, int]:
        return {d: getattr(self, d) for d in DIMENSIONS}

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (not banker's rounding)."""
    return int(math.floor(value + 0.5))


def _bucket(value: float, buckets: Sequence[Tuple[float, int]], floor: int) -> int:
    for limit, score in buckets:
        if value <= limit:
            return score
    return floor


def _num(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def score_price_integrity(quoted: Optional[float], final: Optional[float]) -> int:
    if quoted is None or final is None or quoted <= 0:
        return NEUTRAL
    return _bucket(abs(final - quoted) / quoted, PRICE_BUCKETS, PRICE_FLOOR)


def score_pickup_reliability(quoted_eta: Optional[float], actual_pickup: Optional[float]) -> int:
    if quoted_eta is None or actual_pickup is None or quoted_eta <= 0:
        return NEUTRAL
    return _bucket(actual_pickup - quoted_eta, PICKUP_BUCKETS, PICKUP_FLOOR)


def score_cancellation(cancelled: Optional[bool], count: Optional[int]) -> int:
    if cancelled is None and count is None:
        return NO_CANCELLATION_DATA
    if not cancelled and not count:
        return 100
    if count is None:
        # Cancelled, but we don't know how many times
        return 40
    if count <= 1:
        return 20
    if count == 2:
        return 10
    return 0


def score_route_integrity(
    expected_km: Optional[float],
    actual_km: Optional[float],
    expected_min: Optional[float],
    actual_min: Optional[float],
) -> int:
    has_distance = expected_km is not None and actual_km is not None and expected_km > 0
    has_duration = expected_min is not None and actual_min is not None and expected_min > 0
    if not has_distance and not has_duration:
        return NEUTRAL

    distance_score = NEUTRAL
    if has_distance:
        distance_score = _bucket(abs(actual_km - expected_km) / expected_km, DISTANCE_BUCKETS, DISTANCE_FLOOR)

    duration_score = NEUTRAL
    if has_duration:
        duration_score = _bucket(abs(actual_min - expected_min) / expected_min, DURATION_BUCKETS, DURATION_FLOOR)

    return round_half_up((distance_score + duration_score) / 2)


def score_support_resolution(resolved: Optional[bool], outcome: Optional[str]) -> int:
    if resolved is None:
        return NEUTRAL
    outcome_key = (outcome or "").strip().lower() or None
    if resolved:
        return RESOLVED_OUTCOMES.get(outcome_key, RESOLVED_GENERIC)
    if outcome_key is None:
        return NEUTRAL
    return UNRESOLVED_OUTCOMES.get(outcome_key, UNRESOLVED_OTHER)


def weighted_total(sub_scores: Dict[str, float]) -> int:
    """Weighted sum of the five dimensions, rounded half-up."""
    if all(float(sub_scores[d]).is_integer() for d in DIMENSIONS):
        # Exact integer arithmetic: avoids 82.4999... style float drift at .5 boundaries
        numerator = sum(int(sub_scores[d]) * WEIGHT_PERCENT[d] for d in DIMENSIONS)
        return (numerator + 50) // 100
    return round_half_up(sum(sub_scores[d] * WEIGHTS[d] for d in DIMENSIONS))


def overall_sentence(total: float) -> str:
    if total >= 80:
        return "This ride was highly reliable overall."
    if total >= 60:
        return "This ride had some reliability issues."
    if total >= 40:
        return "This ride had significant issues."
    return "This ride had major problems."


# dimension -> (clause when >= 80, clause when < 50)
_CLAUSES = {
    "price_integrity": (
        "The final price matched the quoted fare well.",
        "The final price deviated significantly from the quote.",
    ),
    "pickup_reliability": (
        "The driver arrived on time.",
        "The driver arrived much later than promised.",
    ),
    "cancellation": (
        "There were no driver cancellations.",
        "There were driver cancellation issues.",
    ),
    "route_integrity": (
        "The route taken was efficient.",
        "The actual route differed significantly from expected.",
    ),
    "support_resolution": (
        "Support resolved the issue well.",
        "Support resolution was unsatisfactory.",
    ),
}


def generate_explanation(sub_scores: Dict[str, float], total: float) -> str:
    parts = [overall_sentence(total)]
    for dimension in DIMENSIONS:
        value = sub_scores[dimension]
        high, low = _CLAUSES[dimension]
        if value >= 80:
            parts.append(high)
        elif value < 50:
            parts.append(low)
    return " ".join(parts)


def compute_prts(ride: Any) -> PRTSResult:
    """
    Score one observation.

    `ride` is anything exposing the observation attributes (a TruthRide row or
    a PartialObservation); missing attributes count as absent data.
    """
    def get(name):
        return getattr(ride, name, None)

    sub_scores = {
        "price_integrity": score_price_integrity(_num(get("quoted_price")), _num(get("final_price"))),
        "pickup_reliability": score_pickup_reliability(
            _num(get("quoted_eta_minutes")), _num(get("actual_pickup_minutes"))
        ),
        "cancellation": score_cancellation(get("driver_cancelled"), get("cancellation_count")),
        "route_integrity": score_route_integrity(
            _num(get("expected_distance_km")),
            _num(get("actual_distance_km")),
            _num(get("expected_duration_min")),
            _num(get("actual_duration_min")),
        ),
        "support_resolution": score_support_resolution(get("support_resolved"), get("support_outcome")),
    }
    total = weighted_total(sub_scores)
    return PRTSResult(
        total=total,
        explanation=generate_explanation(sub_scores, total),
        **sub_scores,
    )


def compute_and_store_prts(db: Session, ride: TruthRide) -> PRTSResult:
    """Score a persisted observation and replace its score row."""
    result = compute_prts(ride)

    existing = db.query(TruthScore).filter(TruthScore.truth_ride_id == ride.id).first()
    if existing is not None:
        db.delete(existing)
        db.flush()

    db.add(TruthScore(
        truth_ride_id=ride.id,
        price_integrity_score=result.price_integrity,
        pickup_reliability_score=result.pickup_reliability,
        cancellation_score=result.cancellation,
        route_integrity_score=result.route_integrity,
        support_resolution_score=result.support_resolution,
        total_score=result.total,
        explanation=result.explanation,
    ))
    db.flush()
    logger.debug(f"PRTS stored for ride={ride.id} total={result.total}")
    return result
