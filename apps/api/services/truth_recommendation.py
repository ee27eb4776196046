"""
Truth Recommendation Engine

Reads only the aggregation cache. Rankings list every provider whose cached
context has at least AGGREGATION_MIN_SAMPLE qualifying observations, with its
confidence. A recommendation additionally needs confidence >=
RECOMMENDATION_MIN_CONFIDENCE. No eligible provider is a normal
"no recommendation" result, never an error.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.config import settings
from models import TruthProvider, TruthRide, TruthScore
from services.truth_aggregation import ProviderAggregate, get_rankings

logger = logging.getLogger(__name__)

STRENGTH_LABELS = {
    "price_integrity": "price accuracy",
    "pickup_reliability": "pickup timing",
    "cancellation": "low cancellations",
    "route_integrity": "route efficiency",
    "support_resolution": "support quality",
}
STRENGTH_THRESHOLD = 80

MSG_NO_DATA = "Not enough ride data in this area yet. Log rides to help build trust scores."
MSG_BELOW_THRESHOLD = "Data collection in progress. Need at least {min_sample} verified rides per provider."
MSG_SUFFICIENT = "Rankings based on {count} verified rides."


@dataclass
class Recommendation:
    provider_id: object
    provider_name: str
    avg_score: int
    confidence: float
    sample_count: int
    reason: str
    deep_link: Optional[str] = None
    android_package: Optional[str] = None
    ios_url_scheme: Optional[str] = None
    breakdown: Dict[str, int] = field(default_factory=dict)


@dataclass
class ContextualRankings:
    rankings: List[ProviderAggregate]
    total_rides: int
    message: str


def is_eligible(agg: ProviderAggregate) -> bool:
    return (
        agg.confidence >= settings.RECOMMENDATION_MIN_CONFIDENCE
        and agg.sample_count >= settings.AGGREGATION_MIN_SAMPLE
    )


def strengths_of(agg: ProviderAggregate) -> List[str]:
    return [
        STRENGTH_LABELS[name]
        for name, value in agg.dimension_averages().items()
        if value >= STRENGTH_THRESHOLD
    ]


def build_reason(agg: ProviderAggregate) -> str:
    strengths = strengths_of(agg)
    if strengths:
        return (
            f"{agg.provider_name} scores {agg.avg_score}/100 overall, strongest in "
            f"{strengths[0]} based on {agg.sample_count} verified rides."
        )
    return f"{agg.provider_name} has the highest overall reliability score of {agg.avg_score} in this area."


def get_recommendation(
    db: Session,
    city_name: str,
    time_block: Optional[str] = None,
    route_type: Optional[str] = None,
) -> Optional[Recommendation]:
    eligible = [a for a in get_rankings(db, city_name, time_block, route_type) if is_eligible(a)]
    if not eligible:
        logger.debug(f"No recommendation for city={city_name} time_block={time_block} route_type={route_type}")
        return None

    best = eligible[0]
    provider = db.get(TruthProvider, best.provider_id)
    return Recommendation(
        provider_id=best.provider_id,
        provider_name=best.provider_name,
        avg_score=best.avg_score,
        confidence=best.confidence,
        sample_count=best.sample_count,
        reason=build_reason(best),
        deep_link=provider.deep_link if provider else None,
        android_package=provider.android_package if provider else None,
        ios_url_scheme=provider.ios_url_scheme if provider else None,
        breakdown=best.dimension_averages(),
    )


def count_context_rides(
    db: Session,
    city_name: str,
    time_block: Optional[str] = None,
    route_type: Optional[str] = None,
) -> int:
    """Scored, contributing observations in a context across all providers."""
    query = (
        db.query(func.count(TruthRide.id))
        .join(TruthScore, TruthScore.truth_ride_id == TruthRide.id)
        .filter(TruthRide.city_name == city_name, TruthRide.trust_weight > 0)
    )
    if time_block is not None:
        query = query.filter(TruthRide.time_block == time_block)
    if route_type is not None:
        query = query.filter(TruthRide.route_type == route_type)
    return query.scalar() or 0


def get_contextual_rankings(
    db: Session,
    city_name: str,
    time_block: Optional[str] = None,
    route_type: Optional[str] = None,
) -> ContextualRankings:
    # get_rankings enforces the minimum sample; confidence is reported, not gated
    rankings = get_rankings(db, city_name, time_block, route_type)
    total_rides = count_context_rides(db, city_name, time_block, route_type)

    if total_rides == 0:
        message = MSG_NO_DATA
    elif not rankings:
        message = MSG_BELOW_THRESHOLD.format(min_sample=settings.AGGREGATION_MIN_SAMPLE)
    else:
        message = MSG_SUFFICIENT.format(count=total_rides)

    return ContextualRankings(rankings=rankings, total_rides=total_rides, message=message)
