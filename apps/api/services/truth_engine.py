"""
Ride Truth Engine - submission pipeline

    consent ledger -> signal normalizer -> fraud & trust gate -> persist
        -> PRTS score -> aggregation cache refresh

Also owns the provider registry, context bucketing (time block, route type),
auto-feed of the platform's own completed rides, and read helpers for a
user's ride history and admin stats.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import DuplicateSubmissionError, NotFoundError, ValidationError
from core.logging import truth_context
from models import (
    PlatformRide,
    TruthConsent,
    TruthProvider,
    TruthRide,
    TruthScore,
    TruthSignal,
)
from services.prts_scoring import PRTSResult, compute_and_store_prts
from services.signal_extraction import PartialObservation, ScreenshotExtractor
from services.signal_normalizer import RawSignals, normalize_signals
from services.truth_aggregation import refresh_context_caches
from services.truth_consent import require_consent
from services.truth_fraud import validate_submission

logger = logging.getLogger(__name__)

# slug -> (android package, iOS URL, deep-link scheme)
DEEP_LINKS = {
    "uber": ("com.ubercab", "uber://", "uber"),
    "lyft": ("me.lyft.android", "lyft://", "lyft"),
    "careem": ("com.careem.acma", "careem://", "careem"),
    "bolt": ("ee.mtakso.client", "bolt://", "bolt"),
    "grab": ("com.grabtaxi.passenger", "grab://", "grab"),
    "gojek": ("com.gojek.app", "gojek://", "gojek"),
    "ola": ("com.olacabs.customer", "olacabs://", "ola"),
    "indrive": ("sinet.startup.inDriver", "indrive://", "indrive"),
    "travony": ("com.travony.rider", "travony://", "travony"),
}

UNKNOWN_CITY = "Unknown"

# Signal row type -> observation attribute
SIGNAL_TYPES = (
    ("quoted_price", "quoted_price"),
    ("final_price", "final_price"),
    ("quoted_eta", "quoted_eta_minutes"),
    ("actual_pickup", "actual_pickup_minutes"),
    ("driver_cancelled", "driver_cancelled"),
    ("cancellation_count", "cancellation_count"),
    ("expected_distance", "expected_distance_km"),
    ("actual_distance", "actual_distance_km"),
    ("expected_duration", "expected_duration_min"),
    ("actual_duration", "actual_duration_min"),
    ("support_resolved", "support_resolved"),
    ("support_outcome", "support_outcome"),
)
EXTRACTED_CONFIDENCE = 0.85


@dataclass
class SubmissionResult:
    observation_id: UUID
    provider_id: UUID
    provider_name: str
    score: PRTSResult
    trust_weight: float
    fraud_flags: List[str] = field(default_factory=list)
    extraction_method: str = "manual"
    time_block: Optional[str] = None
    route_type: Optional[str] = None
    is_from_platform: bool = False


# ---------------------------------------------------------------------------
# Provider registry and context bucketing
# ---------------------------------------------------------------------------

def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def get_or_create_provider(db: Session, name: Optional[str]) -> TruthProvider:
    """Resolve a provider by slug, creating it (with known deep links) on first reference."""
    clean = (name or "").strip()
    slug = slugify(clean)
    if not slug:
        raise ValidationError("Provider name could not be resolved", field="provider_name")

    provider = db.query(TruthProvider).filter(TruthProvider.slug == slug).first()
    if provider is not None:
        return provider

    android, ios, scheme = DEEP_LINKS.get(slug, (None, None, None))
    provider = TruthProvider(
        name=clean,
        slug=slug,
        android_package=android,
        ios_url_scheme=ios,
        deep_link_scheme=scheme,
    )
    db.add(provider)
    db.flush()
    logger.info(f"Truth provider created: {clean} ({slug})")
    return provider


def list_providers(db: Session) -> List[TruthProvider]:
    return (
        db.query(TruthProvider)
        .filter(TruthProvider.is_active.is_(True))
        .order_by(TruthProvider.name)
        .all()
    )


def time_block_for(moment: datetime) -> str:
    hour = moment.hour
    if 6 <= hour < 10:
        return "morning_rush"
    if 10 <= hour < 16:
        return "midday"
    if 16 <= hour < 20:
        return "evening_rush"
    if hour >= 20 or hour < 2:
        return "night"
    return "late_night"


def route_type_for(distance_km: Optional[float]) -> Optional[str]:
    if distance_km is None or distance_km <= 0:
        return None
    if distance_km < 3:
        return "short"
    if distance_km < 10:
        return "medium"
    if distance_km < 25:
        return "long"
    return "intercity"


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

def _store_signals(db: Session, ride: TruthRide, method: str) -> None:
    for signal_type, attr in SIGNAL_TYPES:
        value = getattr(ride, attr)
        present = value is not None
        db.add(TruthSignal(
            truth_ride_id=ride.id,
            signal_type=signal_type,
            raw_value=str(value) if present else None,
            status="extracted" if present else "unknown",
            extraction_method=method,
            confidence=EXTRACTED_CONFIDENCE if present else 0.0,
        ))


def _observation_columns(fields: PartialObservation) -> Dict[str, Any]:
    values = fields.populated()
    values.pop("provider_name", None)
    return values


def submit_observation(
    db: Session,
    user_id: UUID,
    provider_name: Optional[str],
    city_name: Optional[str],
    raw: Optional[RawSignals] = None,
    now: Optional[datetime] = None,
    screenshot_extractor: Optional[ScreenshotExtractor] = None,
) -> SubmissionResult:
    """
    Accept one ride observation from a consented user.

    Raises ConsentRequiredError before anything is written, ValidationError
    for an unresolvable provider name, and DuplicateSubmissionError when the
    duplicate policy is "reject". Every other fraud flag is advisory.
    """
    now = now or datetime.now(timezone.utc)
    raw = raw or RawSignals()

    consent = require_consent(db, user_id)
    normalized = normalize_signals(raw, consent, screenshot_extractor=screenshot_extractor)

    provider = get_or_create_provider(db, normalized.fields.provider_name or provider_name)
    city = (city_name or "").strip() or UNKNOWN_CITY

    fraud = validate_submission(db, user_id, provider.id, city, gps_trace=normalized.gps_trace, now=now)
    if fraud.is_duplicate and settings.DUPLICATE_POLICY == "reject":
        raise DuplicateSubmissionError(fraud.flag_values)

    ride_date = raw.ride_date or now
    fields = normalized.fields
    trace = normalized.gps_trace

    ride = TruthRide(
        user_id=user_id,
        provider_id=provider.id,
        city_name=city,
        time_block=time_block_for(ride_date),
        route_type=route_type_for(fields.actual_distance_km or fields.expected_distance_km),
        ride_date=ride_date,
        extraction_method=normalized.extraction_method,
        proof_of_ride=normalized.proof_of_ride,
        notification_data=normalized.notification_text,
        gps_trace_json=[
            {"lat": p.lat, "lng": p.lng, "timestamp": p.timestamp, "speed": p.speed} for p in trace
        ] or None,
        pickup_lat=trace[0].lat if trace else None,
        pickup_lng=trace[0].lng if trace else None,
        dropoff_lat=trace[-1].lat if trace else None,
        dropoff_lng=trace[-1].lng if trace else None,
        trust_weight=fraud.trust_weight,
        fraud_flags=fraud.flag_values,
        created_at=now,
        **_observation_columns(fields),
    )
    db.add(ride)
    db.flush()

    _store_signals(db, ride, normalized.extraction_method)
    score = compute_and_store_prts(db, ride)

    if ride.trust_weight > 0:
        refresh_context_caches(db, provider.id, city, ride.time_block, ride.route_type, now=now)

    db.commit()
    logger.info(
        f"Truth observation stored: id={ride.id} user={user_id} provider={provider.slug} city={city} "
        f"score={score.total} trust_weight={ride.trust_weight:.3f} method={ride.extraction_method}",
        extra=truth_context(
            observation_id=ride.id, user_id=user_id, provider=provider.slug, city=city,
            time_block=ride.time_block, route_type=ride.route_type, score=score.total,
            trust_weight=ride.trust_weight, fraud_flags=fraud.flag_values or None,
        ),
    )
    return SubmissionResult(
        observation_id=ride.id,
        provider_id=provider.id,
        provider_name=provider.name,
        score=score,
        trust_weight=ride.trust_weight,
        fraud_flags=fraud.flag_values,
        extraction_method=ride.extraction_method,
        time_block=ride.time_block,
        route_type=ride.route_type,
    )


def _result_for_existing(db: Session, ride: TruthRide) -> SubmissionResult:
    score = compute_and_store_prts(db, ride) if ride.score is None else PRTSResult(
        price_integrity=int(ride.score.price_integrity_score),
        pickup_reliability=int(ride.score.pickup_reliability_score),
        cancellation=int(ride.score.cancellation_score),
        route_integrity=int(ride.score.route_integrity_score),
        support_resolution=int(ride.score.support_resolution_score),
        total=int(ride.score.total_score),
        explanation=ride.score.explanation,
    )
    return SubmissionResult(
        observation_id=ride.id,
        provider_id=ride.provider_id,
        provider_name=ride.provider.name,
        score=score,
        trust_weight=ride.trust_weight,
        fraud_flags=list(ride.fraud_flags or []),
        extraction_method=ride.extraction_method,
        time_block=ride.time_block,
        route_type=ride.route_type,
        is_from_platform=ride.is_from_platform,
    )


def auto_feed(db: Session, platform_ride_id: UUID, now: Optional[datetime] = None) -> SubmissionResult:
    """
    Feed one of the platform's own completed rides in as a full-trust observation.

    Bypasses consent and the fraud gate. Idempotent per platform ride.
    """
    now = now or datetime.now(timezone.utc)
    platform_ride = db.get(PlatformRide, platform_ride_id)
    if platform_ride is None or platform_ride.status != "completed":
        raise NotFoundError("Completed ride", str(platform_ride_id))

    existing = db.query(TruthRide).filter(TruthRide.platform_ride_id == platform_ride_id).first()
    if existing is not None:
        logger.info(f"Auto-feed skipped, platform ride {platform_ride_id} already fed as {existing.id}")
        return _result_for_existing(db, existing)

    provider = get_or_create_provider(db, settings.PLATFORM_PROVIDER_NAME)
    ride_date = platform_ride.completed_at or platform_ride.created_at
    distance = platform_ride.distance_km

    ride = TruthRide(
        user_id=platform_ride.customer_id,
        provider_id=provider.id,
        city_name=platform_ride.region_code or UNKNOWN_CITY,
        time_block=time_block_for(ride_date),
        route_type=route_type_for(distance),
        ride_date=ride_date,
        quoted_price=platform_ride.estimated_fare,
        final_price=platform_ride.actual_fare,
        expected_distance_km=distance,
        actual_distance_km=distance,
        driver_cancelled=False,
        extraction_method="platform",
        proof_of_ride=True,
        is_from_platform=True,
        platform_ride_id=platform_ride.id,
        pickup_lat=platform_ride.pickup_lat,
        pickup_lng=platform_ride.pickup_lng,
        dropoff_lat=platform_ride.dropoff_lat,
        dropoff_lng=platform_ride.dropoff_lng,
        trust_weight=1.0,
        fraud_flags=[],
        created_at=now,
    )
    db.add(ride)
    db.flush()

    _store_signals(db, ride, "platform")
    score = compute_and_store_prts(db, ride)
    refresh_context_caches(db, provider.id, ride.city_name, ride.time_block, ride.route_type, now=now)
    db.commit()

    logger.info(
        f"Platform ride {platform_ride_id} auto-fed as observation {ride.id} score={score.total}",
        extra=truth_context(observation_id=ride.id, provider=provider.slug, city=ride.city_name, score=score.total),
    )
    return SubmissionResult(
        observation_id=ride.id,
        provider_id=provider.id,
        provider_name=provider.name,
        score=score,
        trust_weight=1.0,
        extraction_method="platform",
        time_block=ride.time_block,
        route_type=ride.route_type,
        is_from_platform=True,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_score(db: Session, observation_id: UUID) -> TruthScore:
    score = db.query(TruthScore).filter(TruthScore.truth_ride_id == observation_id).first()
    if score is None:
        raise NotFoundError("Score", str(observation_id))
    return score


def list_user_observations(db: Session, user_id: UUID, limit: int = 50) -> List[TruthRide]:
    return (
        db.query(TruthRide)
        .filter(TruthRide.user_id == user_id)
        .order_by(TruthRide.created_at.desc())
        .limit(limit)
        .all()
    )


def truth_stats(db: Session) -> Dict[str, int]:
    def count(column) -> int:
        return db.query(func.count(column)).scalar() or 0

    return {
        "total_observations": count(TruthRide.id),
        "total_scores": count(TruthScore.id),
        "total_providers": count(TruthProvider.id),
        "total_consents": count(TruthConsent.id),
        "platform_observations": (
            db.query(func.count(TruthRide.id)).filter(TruthRide.is_from_platform.is_(True)).scalar() or 0
        ),
    }
