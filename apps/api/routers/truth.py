"""
Ride Truth Engine Endpoints

Consent
    POST   /v1/truth/consent            grant (or re-grant) with a capability set
    GET    /v1/truth/consent            current consent status
    DELETE /v1/truth/consent            revoke; observations are kept
    DELETE /v1/truth/data               delete every observation of the user

Observations
    POST   /v1/truth/rides              submit one ride observation
    GET    /v1/truth/rides/{id}/score   stored PRTS breakdown
    GET    /v1/truth/my-rides           the user's last 50 observations

Rankings
    GET    /v1/truth/rankings           cached rankings + data-sufficiency message
    GET    /v1/truth/recommend          best provider for a context, or null
    GET    /v1/truth/providers          active providers with deep links

Platform / admin
    POST   /v1/truth/auto-feed/{ride_id}
    GET    /v1/truth/admin/stats
    GET    /v1/truth/admin/rankings/{city}

All routes are thin: they translate HTTP into service calls.
"""
from __future__ import annotations

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.auth import CurrentUser, get_current_user, require_admin
from core.database import get_db
from schemas import (
    AutoFeedResponse,
    DataDeletionResponse,
    ProviderRankingResponse,
    ProviderResponse,
    RankingsResponse,
    RecommendationDetail,
    RecommendationResponse,
    RideHistoryItem,
    RideSubmissionRequest,
    RideSubmissionResponse,
    ScoreBreakdown,
    ScoreResponse,
    TruthConsentRequest,
    TruthConsentResponse,
    TruthStatsResponse,
)
from services.signal_extraction import GpsPoint, PartialObservation
from services.signal_normalizer import PostRideAnswers, RawSignals
from services.truth_aggregation import ProviderAggregate, get_rankings, refresh_city_cache
from services.truth_consent import delete_user_data, get_consent, grant_consent, revoke_consent
from services.truth_engine import (
    SubmissionResult,
    auto_feed,
    get_score,
    list_providers,
    list_user_observations,
    submit_observation,
    truth_stats,
)
from services.truth_recommendation import get_contextual_rankings, get_recommendation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/truth", tags=["truth"])

_OBSERVATION_FIELDS = (
    "quoted_price",
    "final_price",
    "quoted_eta_minutes",
    "actual_pickup_minutes",
    "driver_cancelled",
    "cancellation_count",
    "expected_distance_km",
    "actual_distance_km",
    "expected_duration_min",
    "actual_duration_min",
    "support_resolved",
    "support_outcome",
)


def _consent_response(consent) -> TruthConsentResponse:
    if consent is None:
        return TruthConsentResponse(has_consent=False)
    return TruthConsentResponse(
        has_consent=consent.status == "granted",
        screenshot_capture=consent.screenshot_capture,
        notification_parsing=consent.notification_parsing,
        gps_tracking=consent.gps_tracking,
        post_ride_confirmation=consent.post_ride_confirmation,
        status=consent.status,
        granted_at=consent.granted_at,
        revoked_at=consent.revoked_at,
    )


def _submission_response(result: SubmissionResult) -> RideSubmissionResponse:
    return RideSubmissionResponse(
        observation_id=result.observation_id,
        provider_id=result.provider_id,
        provider=result.provider_name,
        score=result.score.total,
        breakdown=ScoreBreakdown(**result.score.breakdown()),
        explanation=result.score.explanation,
        trust_weight=result.trust_weight,
        fraud_flags=result.fraud_flags,
        extraction_method=result.extraction_method,
        time_block=result.time_block,
        route_type=result.route_type,
    )


def _ranking_response(agg: ProviderAggregate) -> ProviderRankingResponse:
    return ProviderRankingResponse(
        provider_id=agg.provider_id,
        provider_name=agg.provider_name,
        avg_score=agg.avg_score,
        sample_count=agg.sample_count,
        confidence=agg.confidence,
        breakdown=agg.dimension_averages(),
    )


def _raw_signals(body: RideSubmissionRequest) -> RawSignals:
    reported = PartialObservation(**{name: getattr(body, name) for name in _OBSERVATION_FIELDS})
    answers = None
    if body.post_ride_answers is not None:
        answers = PostRideAnswers(**body.post_ride_answers.model_dump())
    return RawSignals(
        reported=reported,
        screenshot_base64=body.screenshot_base64,
        notification_text=body.notification_text,
        gps_trace=[GpsPoint(lat=p.lat, lng=p.lng, timestamp=p.timestamp, speed=p.speed) for p in body.gps_trace],
        post_ride_answers=answers,
        ride_date=body.ride_date,
    )


# --- Consent ---

@router.post("/consent", response_model=TruthConsentResponse)
def grant_truth_consent(
    body: TruthConsentRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> TruthConsentResponse:
    consent = grant_consent(
        db,
        current_user.id,
        screenshot_capture=body.screenshot_capture,
        notification_parsing=body.notification_parsing,
        gps_tracking=body.gps_tracking,
        post_ride_confirmation=body.post_ride_confirmation,
        source=body.source or "api",
    )
    return _consent_response(consent)


@router.get("/consent", response_model=TruthConsentResponse)
def get_truth_consent(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> TruthConsentResponse:
    return _consent_response(get_consent(db, current_user.id))


@router.delete("/consent", response_model=TruthConsentResponse)
def revoke_truth_consent(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> TruthConsentResponse:
    return _consent_response(revoke_consent(db, current_user.id))


@router.delete("/data", response_model=DataDeletionResponse)
def delete_truth_data(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> DataDeletionResponse:
    """Delete every observation, score and signal of the user, plus their consent record."""
    deleted = delete_user_data(db, current_user.id)
    return DataDeletionResponse(
        deleted_observations=deleted,
        message="All Truth Engine data has been deleted.",
    )


# --- Observations ---

@router.post("/rides", response_model=RideSubmissionResponse)
def submit_ride(
    body: RideSubmissionRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> RideSubmissionResponse:
    result = submit_observation(
        db,
        current_user.id,
        provider_name=body.provider_name,
        city_name=body.city_name,
        raw=_raw_signals(body),
    )
    return _submission_response(result)


@router.get("/rides/{observation_id}/score", response_model=ScoreResponse)
def get_ride_score(
    observation_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ScoreResponse:
    return ScoreResponse.model_validate(get_score(db, observation_id))


@router.get("/my-rides", response_model=List[RideHistoryItem])
def get_my_rides(
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> List[RideHistoryItem]:
    rides = list_user_observations(db, current_user.id, limit=limit)
    return [
        RideHistoryItem(
            id=r.id,
            provider_name=r.provider.name,
            city_name=r.city_name,
            time_block=r.time_block,
            route_type=r.route_type,
            ride_date=r.ride_date,
            extraction_method=r.extraction_method,
            trust_weight=r.trust_weight,
            fraud_flags=list(r.fraud_flags or []),
            total_score=r.score.total_score if r.score else None,
            explanation=r.score.explanation if r.score else None,
            created_at=r.created_at,
        )
        for r in rides
    ]


# --- Rankings ---

@router.get("/rankings", response_model=RankingsResponse)
def get_truth_rankings(
    city: str = Query(..., min_length=1),
    time_block: Optional[str] = Query(None),
    route_type: Optional[str] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> RankingsResponse:
    result = get_contextual_rankings(db, city, time_block, route_type)
    return RankingsResponse(
        city_name=city,
        time_block=time_block,
        route_type=route_type,
        rankings=[_ranking_response(a) for a in result.rankings],
        total_rides=result.total_rides,
        message=result.message,
    )


@router.get("/recommend", response_model=RecommendationResponse)
def get_truth_recommendation(
    city: str = Query(..., min_length=1),
    time_block: Optional[str] = Query(None),
    route_type: Optional[str] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> RecommendationResponse:
    recommendation = get_recommendation(db, city, time_block, route_type)
    detail = None
    if recommendation is not None:
        detail = RecommendationDetail(**vars(recommendation))
    return RecommendationResponse(city_name=city, recommendation=detail)


@router.get("/providers", response_model=List[ProviderResponse])
def get_truth_providers(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> List[ProviderResponse]:
    return [ProviderResponse.model_validate(p) for p in list_providers(db)]


# --- Platform / admin ---

@router.post("/auto-feed/{ride_id}", response_model=AutoFeedResponse)
def auto_feed_platform_ride(
    ride_id: UUID,
    current_user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AutoFeedResponse:
    result = auto_feed(db, ride_id)
    return AutoFeedResponse(
        observation_id=result.observation_id,
        score=result.score.total,
        message="Platform ride fed to Truth Engine",
    )


@router.get("/admin/stats", response_model=TruthStatsResponse)
def get_admin_truth_stats(
    current_user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
) -> TruthStatsResponse:
    return TruthStatsResponse(**truth_stats(db))


@router.get("/admin/rankings/{city}", response_model=List[ProviderRankingResponse])
def get_admin_city_rankings(
    city: str,
    current_user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
) -> List[ProviderRankingResponse]:
    """Rebuild the city's cache from source rows, then return city-wide rankings."""
    contexts = refresh_city_cache(db, city)
    logger.info(f"Admin {current_user.id} refreshed {contexts} aggregation contexts for {city}")
    return [_ranking_response(a) for a in get_rankings(db, city)]
