"""
Fraud & Trust Gate

Validates a ride submission before it is persisted and produces a trust
weight in [0, 1] plus the list of flags raised.

Checks (each multiplies the weight, starting at 1.0):
    influence cap      x0.3   one user > 15% of a (provider, city) with >= 10 rides
    submission rate    x0.5   > 20 submissions by the user in the trailing 24h
    GPS plausibility   x0.4   applied once, whichever GPS checks failed
    duplicate          = 0    same user + provider inside the last 10 minutes

Flags are advisory except the duplicate, which the caller treats as a
conflict. `passed` is True only when no flag was raised.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.config import settings
from core.logging import truth_context
from models import TruthRide
from services.signal_extraction import GpsPoint, count_teleports, too_many_teleports

logger = logging.getLogger(__name__)


class FraudFlag(str, Enum):
    USER_INFLUENCE_CAP_EXCEEDED = "user_influence_cap_exceeded"
    SUSPICIOUS_SUBMISSION_RATE = "suspicious_submission_rate"
    INSUFFICIENT_GPS_POINTS = "insufficient_gps_points"
    NON_MONOTONIC_TIMESTAMPS = "non_monotonic_timestamps"
    GPS_TELEPORTATION_DETECTED = "gps_teleportation_detected"
    STATIONARY_GPS_PATTERN = "stationary_gps_pattern"
    DUPLICATE_SUBMISSION = "duplicate_submission"


GPS_FLAGS = frozenset({
    FraudFlag.INSUFFICIENT_GPS_POINTS,
    FraudFlag.NON_MONOTONIC_TIMESTAMPS,
    FraudFlag.GPS_TELEPORTATION_DETECTED,
    FraudFlag.STATIONARY_GPS_PATTERN,
})

INFLUENCE_PENALTY = 0.3
RATE_PENALTY = 0.5
GPS_PENALTY = 0.4


@dataclass
class FraudCheckResult:
    passed: bool
    flags: List[FraudFlag] = field(default_factory=list)
    trust_weight: float = 1.0

    @property
    def is_duplicate(self) -> bool:
        return FraudFlag.DUPLICATE_SUBMISSION in self.flags

    @property
    def flag_values(self) -> List[str]:
        return [f.value for f in self.flags]


def validate_submission(
    db: Session,
    user_id: UUID,
    provider_id: UUID,
    city_name: str,
    gps_trace: Optional[List[GpsPoint]] = None,
    now: Optional[datetime] = None,
) -> FraudCheckResult:
    """Run every check against rows already persisted (the new ride is not counted)."""
    now = now or datetime.now(timezone.utc)
    flags: List[FraudFlag] = []
    trust_weight = 1.0

    if exceeds_influence_cap(db, user_id, provider_id, city_name):
        flags.append(FraudFlag.USER_INFLUENCE_CAP_EXCEEDED)
        trust_weight *= INFLUENCE_PENALTY

    if has_suspicious_rate(db, user_id, now):
        flags.append(FraudFlag.SUSPICIOUS_SUBMISSION_RATE)
        trust_weight *= RATE_PENALTY

    if gps_trace:
        gps_flags = check_gps_plausibility(gps_trace)
        if gps_flags:
            flags.extend(gps_flags)
            trust_weight *= GPS_PENALTY

    if is_duplicate_submission(db, user_id, provider_id, now):
        flags.append(FraudFlag.DUPLICATE_SUBMISSION)
        trust_weight = 0.0

    if flags:
        logger.warning(
            f"Fraud gate flags for user={user_id} provider={provider_id} city={city_name}: "
            f"{[f.value for f in flags]} trust_weight={trust_weight:.3f}",
            extra=truth_context(user_id=user_id, city=city_name, fraud_flags=flags, trust_weight=trust_weight),
        )

    return FraudCheckResult(
        passed=not flags,
        flags=flags,
        trust_weight=max(0.0, min(1.0, trust_weight)),
    )


def exceeds_influence_cap(db: Session, user_id: UUID, provider_id: UUID, city_name: str) -> bool:
    base = db.query(func.count(TruthRide.id)).filter(
        TruthRide.provider_id == provider_id,
        TruthRide.city_name == city_name,
    )
    total = base.scalar() or 0
    if total < settings.INFLUENCE_MIN_POPULATION:
        return False
    user_count = base.filter(TruthRide.user_id == user_id).scalar() or 0
    return user_count / total * 100 > settings.INFLUENCE_CAP_PERCENT


def has_suspicious_rate(db: Session, user_id: UUID, now: datetime) -> bool:
    since = now - timedelta(days=1)
    day_count = (
        db.query(func.count(TruthRide.id))
        .filter(TruthRide.user_id == user_id, TruthRide.created_at >= since)
        .scalar()
        or 0
    )
    return day_count > settings.DAILY_SUBMISSION_LIMIT


def is_duplicate_submission(db: Session, user_id: UUID, provider_id: UUID, now: datetime) -> bool:
    since = now - timedelta(minutes=settings.DUPLICATE_WINDOW_MINUTES)
    recent = (
        db.query(func.count(TruthRide.id))
        .filter(
            TruthRide.user_id == user_id,
            TruthRide.provider_id == provider_id,
            TruthRide.created_at >= since,
        )
        .scalar()
        or 0
    )
    return recent > 0


def check_gps_plausibility(trace: List[GpsPoint]) -> List[FraudFlag]:
    """
    Flag traces that could not come from a real ride.

    Too few points short-circuits; the remaining checks are independent.
    """
    if len(trace) < settings.GPS_MIN_POINTS:
        return [FraudFlag.INSUFFICIENT_GPS_POINTS]

    flags: List[FraudFlag] = []
    pairs = list(zip(trace, trace[1:]))

    if any(cur.timestamp <= prev.timestamp for prev, cur in pairs):
        flags.append(FraudFlag.NON_MONOTONIC_TIMESTAMPS)

    if too_many_teleports(count_teleports(trace), len(pairs)):
        flags.append(FraudFlag.GPS_TELEPORTATION_DETECTED)

    distinct = {(round(p.lat, 4), round(p.lng, 4)) for p in trace}
    if len(distinct) < len(trace) * settings.GPS_MIN_DISTINCT_FRACTION:
        flags.append(FraudFlag.STATIONARY_GPS_PATTERN)

    return flags
