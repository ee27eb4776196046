"""
Truth Aggregation Engine

Per (provider, city, time_block?, route_type?) context:

    1. Fetch every scored observation in the context with trust_weight > 0.
       Fewer than AGGREGATION_MIN_SAMPLE -> no result (not an error).
    2. Trim outliers outside the 5th/95th percentile of total scores.
    3. Weight each survivor by 0.5 ** (age_days / 30) * trust_weight.
    4. Weighted averages of total and the five sub-scores, rounded half-up.

sample_count is the pre-trim count; confidence = min(1, sample_count / 50).

The cache row of a context is always recomputed from source rows and
replaced, never patched, so concurrent refreshes converge on the same value.
A None time_block / route_type means "any" when matching observations and is
stored as NULL in the cache.
"""
from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from core.config import settings
from core.logging import truth_context
from models import TruthAggregation, TruthProvider, TruthRide, TruthScore
from services.prts_scoring import round_half_up

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0

# Sub-score column -> cache column
_DIMENSION_COLUMNS = {
    "price_integrity_score": "price_avg",
    "pickup_reliability_score": "pickup_avg",
    "cancellation_score": "cancellation_avg",
    "route_integrity_score": "route_avg",
    "support_resolution_score": "support_avg",
}


@dataclass
class ProviderAggregate:
    provider_id: UUID
    provider_name: str
    city_name: str
    time_block: Optional[str]
    route_type: Optional[str]
    avg_score: int
    sample_count: int
    confidence: float
    price_avg: int
    pickup_avg: int
    cancellation_avg: int
    route_avg: int
    support_avg: int

    def dimension_averages(self) -> Dict[str, int]:
        return {
            "price_integrity": self.price_avg,
            "pickup_reliability": self.pickup_avg,
            "cancellation": self.cancellation_avg,
            "route_integrity": self.route_avg,
            "support_resolution": self.support_avg,
        }

    @classmethod
    def from_cache(cls, row: TruthAggregation) -> "ProviderAggregate":
        return cls(
            provider_id=row.provider_id,
            provider_name=row.provider.name if row.provider else "",
            city_name=row.city_name,
            time_block=row.time_block,
            route_type=row.route_type,
            avg_score=int(row.avg_score),
            sample_count=row.sample_count,
            confidence=row.confidence,
            price_avg=int(row.price_avg or 0),
            pickup_avg=int(row.pickup_avg or 0),
            cancellation_avg=int(row.cancellation_avg or 0),
            route_avg=int(row.route_avg or 0),
            support_avg=int(row.support_avg or 0),
        )


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def decay_weight(ride_date: datetime, now: datetime, half_life_days: Optional[float] = None) -> float:
    """0.5 ** (age_days / half_life). Future ride dates count as age zero."""
    half_life = half_life_days or settings.AGGREGATION_HALF_LIFE_DAYS
    age_days = (_as_utc(now) - _as_utc(ride_date)).total_seconds() / SECONDS_PER_DAY
    return 0.5 ** (max(age_days, 0.0) / half_life)


def outlier_bounds(scores: Sequence[float]) -> Tuple[float, float]:
    """
    Inclusive 5th/95th percentile bounds of total scores.

    Below the minimum sample there is no trimming: [0, 100].
    """
    if len(scores) < settings.AGGREGATION_MIN_SAMPLE:
        return 0.0, 100.0
    # n=20 cut points land on 5%, 10%, ..., 95%
    cuts = statistics.quantiles(scores, n=20, method="inclusive")
    return cuts[0], cuts[-1]


def confidence_for(sample_count: int) -> float:
    return round(min(1.0, sample_count / settings.AGGREGATION_FULL_CONFIDENCE_SAMPLE), 2)


def _context_filter(column, value):
    """Cache lookup: None matches only the NULL ('any') row."""
    return column.is_(None) if value is None else column == value


def aggregate_scores(
    db: Session,
    provider_id: UUID,
    city_name: str,
    time_block: Optional[str] = None,
    route_type: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[ProviderAggregate]:
    """Aggregate one provider in one context. None when the sample is too small."""
    now = now or datetime.now(timezone.utc)

    query = (
        db.query(TruthRide, TruthScore)
        .join(TruthScore, TruthScore.truth_ride_id == TruthRide.id)
        .filter(
            TruthRide.provider_id == provider_id,
            TruthRide.city_name == city_name,
            TruthRide.trust_weight > 0,
        )
    )
    if time_block is not None:
        query = query.filter(TruthRide.time_block == time_block)
    if route_type is not None:
        query = query.filter(TruthRide.route_type == route_type)

    rows = query.all()
    sample_count = len(rows)
    if sample_count < settings.AGGREGATION_MIN_SAMPLE:
        return None

    low, high = outlier_bounds([score.total_score for _, score in rows])
    kept = [(ride, score) for ride, score in rows if low <= score.total_score <= high]

    total_weight = 0.0
    weighted_total = 0.0
    weighted_dims = {column: 0.0 for column in _DIMENSION_COLUMNS}
    for ride, score in kept:
        weight = decay_weight(ride.ride_date, now) * (ride.trust_weight or 0.0)
        total_weight += weight
        weighted_total += score.total_score * weight
        for column in _DIMENSION_COLUMNS:
            weighted_dims[column] += getattr(score, column) * weight

    if total_weight <= 0:
        return None

    provider = db.get(TruthProvider, provider_id)
    averages = {
        cache_column: round_half_up(weighted_dims[column] / total_weight)
        for column, cache_column in _DIMENSION_COLUMNS.items()
    }
    return ProviderAggregate(
        provider_id=provider_id,
        provider_name=provider.name if provider else "",
        city_name=city_name,
        time_block=time_block,
        route_type=route_type,
        avg_score=round_half_up(weighted_total / total_weight),
        sample_count=sample_count,
        confidence=confidence_for(sample_count),
        **averages,
    )


def update_aggregation_cache(
    db: Session,
    provider_id: UUID,
    city_name: str,
    time_block: Optional[str] = None,
    route_type: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[ProviderAggregate]:
    """Recompute one context and replace its cache row (or drop it when the sample is too small)."""
    now = now or datetime.now(timezone.utc)
    result = aggregate_scores(db, provider_id, city_name, time_block, route_type, now=now)

    rows = (
        db.query(TruthAggregation)
        .filter(
            TruthAggregation.provider_id == provider_id,
            TruthAggregation.city_name == city_name,
            _context_filter(TruthAggregation.time_block, time_block),
            _context_filter(TruthAggregation.route_type, route_type),
        )
        .all()
    )
    # Several rows only when first inserts of a NULL context raced
    row, stale = (rows[0], rows[1:]) if rows else (None, [])
    for extra in stale:
        db.delete(extra)
    if stale:
        logger.warning(
            f"Aggregation cache had {len(rows)} rows for provider={provider_id} city={city_name} "
            f"time_block={time_block} route_type={route_type}; collapsed to one"
        )

    if result is None:
        if row is not None:
            db.delete(row)
            db.flush()
            logger.info(
                f"Aggregation cache dropped: provider={provider_id} city={city_name} "
                f"time_block={time_block} route_type={route_type}"
            )
        return None

    if row is None:
        row = TruthAggregation(
            provider_id=provider_id,
            city_name=city_name,
            time_block=time_block,
            route_type=route_type,
        )
        db.add(row)

    row.avg_score = result.avg_score
    row.sample_count = result.sample_count
    row.confidence = result.confidence
    row.price_avg = result.price_avg
    row.pickup_avg = result.pickup_avg
    row.cancellation_avg = result.cancellation_avg
    row.route_avg = result.route_avg
    row.support_avg = result.support_avg
    row.last_updated = now
    db.flush()

    logger.info(
        f"Aggregation recomputed: provider={provider_id} city={city_name} time_block={time_block} "
        f"route_type={route_type} samples={result.sample_count} avg={result.avg_score}",
        extra=truth_context(
            city=city_name, time_block=time_block, route_type=route_type,
            score=result.avg_score, sample_count=result.sample_count,
        ),
    )
    return result


def context_keys(time_block: Optional[str], route_type: Optional[str]) -> List[Tuple[Optional[str], Optional[str]]]:
    """Every cached context an observation with this context contributes to."""
    keys: List[Tuple[Optional[str], Optional[str]]] = []
    for key in ((time_block, route_type), (time_block, None), (None, route_type), (None, None)):
        if key not in keys:
            keys.append(key)
    return keys


def refresh_context_caches(
    db: Session,
    provider_id: UUID,
    city_name: str,
    time_block: Optional[str],
    route_type: Optional[str],
    now: Optional[datetime] = None,
) -> None:
    for tb, rt in context_keys(time_block, route_type):
        update_aggregation_cache(db, provider_id, city_name, tb, rt, now=now)


def refresh_city_cache(db: Session, city_name: str, now: Optional[datetime] = None) -> int:
    """
    Rebuild every cache row of a city from source rows.

    Covers contexts that have observations and contexts that only have a
    (possibly stale) cache row. Returns the number of contexts recomputed.
    """
    now = now or datetime.now(timezone.utc)
    contexts: Set[Tuple[UUID, Optional[str], Optional[str]]] = set()

    observed = (
        db.query(TruthRide.provider_id, TruthRide.time_block, TruthRide.route_type)
        .filter(TruthRide.city_name == city_name)
        .distinct()
        .all()
    )
    for provider_id, time_block, route_type in observed:
        for tb, rt in context_keys(time_block, route_type):
            contexts.add((provider_id, tb, rt))

    cached = (
        db.query(TruthAggregation.provider_id, TruthAggregation.time_block, TruthAggregation.route_type)
        .filter(TruthAggregation.city_name == city_name)
        .all()
    )
    contexts.update((provider_id, tb, rt) for provider_id, tb, rt in cached)

    for provider_id, tb, rt in contexts:
        update_aggregation_cache(db, provider_id, city_name, tb, rt, now=now)
    return len(contexts)


def _sort_key(agg: ProviderAggregate) -> Tuple[Any, ...]:
    return (-agg.avg_score, -agg.confidence, agg.provider_name)


def get_rankings(
    db: Session,
    city_name: str,
    time_block: Optional[str] = None,
    route_type: Optional[str] = None,
) -> List[ProviderAggregate]:
    """Cached provider rankings for a context, best first, one entry per provider (its freshest row)."""
    rows = (
        db.query(TruthAggregation)
        .join(TruthProvider, TruthProvider.id == TruthAggregation.provider_id)
        .filter(
            TruthAggregation.city_name == city_name,
            _context_filter(TruthAggregation.time_block, time_block),
            _context_filter(TruthAggregation.route_type, route_type),
            TruthAggregation.sample_count >= settings.AGGREGATION_MIN_SAMPLE,
            TruthProvider.is_active.is_(True),
        )
        .all()
    )
    latest: Dict[UUID, TruthAggregation] = {}
    for row in rows:
        seen = latest.get(row.provider_id)
        if seen is None or _as_utc(row.last_updated) > _as_utc(seen.last_updated):
            latest[row.provider_id] = row
    return sorted((ProviderAggregate.from_cache(r) for r in latest.values()), key=_sort_key)
