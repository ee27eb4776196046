from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from uuid import UUID
from typing import Optional, List, Dict


# --- Consent ---

class TruthConsentRequest(BaseModel):
    screenshot_capture: bool = False
    notification_parsing: bool = False
    gps_tracking: bool = False
    post_ride_confirmation: bool = True
    source: Optional[str] = "api"


class TruthConsentResponse(BaseModel):
    has_consent: bool
    screenshot_capture: bool = False
    notification_parsing: bool = False
    gps_tracking: bool = False
    post_ride_confirmation: bool = False
    status: Optional[str] = None
    granted_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None


class DataDeletionResponse(BaseModel):
    deleted_observations: int
    message: str


# --- Submission ---

class GpsPointIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    timestamp: float  # epoch milliseconds
    speed: Optional[float] = None


class PostRideAnswersIn(BaseModel):
    price_matched: Optional[bool] = None
    quoted_price: Optional[float] = Field(None, ge=0)
    driver_cancelled: Optional[bool] = None
    arrived_on_time: Optional[bool] = None
    actual_wait_min: Optional[float] = Field(None, ge=0)


class RideSubmissionRequest(BaseModel):
    """One ride observation. Every signal field is optional; missing ones score neutral."""
    provider_name: Optional[str] = None
    city_name: Optional[str] = None
    ride_date: Optional[datetime] = None

    quoted_price: Optional[float] = Field(None, ge=0)
    final_price: Optional[float] = Field(None, ge=0)
    quoted_eta_minutes: Optional[float] = Field(None, ge=0)
    actual_pickup_minutes: Optional[float] = Field(None, ge=0)
    driver_cancelled: Optional[bool] = None
    cancellation_count: Optional[int] = Field(None, ge=0)
    expected_distance_km: Optional[float] = Field(None, ge=0)
    actual_distance_km: Optional[float] = Field(None, ge=0)
    expected_duration_min: Optional[float] = Field(None, ge=0)
    actual_duration_min: Optional[float] = Field(None, ge=0)
    support_resolved: Optional[bool] = None
    support_outcome: Optional[str] = None

    screenshot_base64: Optional[str] = None
    notification_text: Optional[str] = None
    gps_trace: List[GpsPointIn] = Field(default_factory=list)
    post_ride_answers: Optional[PostRideAnswersIn] = None


class ScoreBreakdown(BaseModel):
    price_integrity: float
    pickup_reliability: float
    cancellation: float
    route_integrity: float
    support_resolution: float


class RideSubmissionResponse(BaseModel):
    observation_id: UUID
    provider_id: UUID
    provider: str
    score: int
    breakdown: ScoreBreakdown
    explanation: str
    trust_weight: float
    fraud_flags: List[str] = []
    extraction_method: str
    time_block: Optional[str] = None
    route_type: Optional[str] = None


class ScoreResponse(BaseModel):
    truth_ride_id: UUID
    price_integrity_score: float
    pickup_reliability_score: float
    cancellation_score: float
    route_integrity_score: float
    support_resolution_score: float
    total_score: float
    explanation: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RideHistoryItem(BaseModel):
    id: UUID
    provider_name: str
    city_name: str
    time_block: Optional[str] = None
    route_type: Optional[str] = None
    ride_date: datetime
    extraction_method: str
    trust_weight: float
    fraud_flags: List[str] = []
    total_score: Optional[float] = None
    explanation: Optional[str] = None
    created_at: datetime


# --- Rankings / recommendation ---

class ProviderRankingResponse(BaseModel):
    provider_id: UUID
    provider_name: str
    avg_score: int
    sample_count: int
    confidence: float
    breakdown: Dict[str, int]


class RankingsResponse(BaseModel):
    city_name: str
    time_block: Optional[str] = None
    route_type: Optional[str] = None
    rankings: List[ProviderRankingResponse]
    total_rides: int
    message: str


class RecommendationDetail(BaseModel):
    provider_id: UUID
    provider_name: str
    avg_score: int
    confidence: float
    sample_count: int
    reason: str
    deep_link: Optional[str] = None
    android_package: Optional[str] = None
    ios_url_scheme: Optional[str] = None
    breakdown: Dict[str, int] = {}


class RecommendationResponse(BaseModel):
    city_name: str
    recommendation: Optional[RecommendationDetail] = None


class ProviderResponse(BaseModel):
    id: UUID
    name: str
    slug: str
    deep_link: Optional[str] = None
    android_package: Optional[str] = None
    ios_url_scheme: Optional[str] = None
    icon_url: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AutoFeedResponse(BaseModel):
    observation_id: UUID
    score: int
    message: str


class TruthStatsResponse(BaseModel):
    total_observations: int
    total_scores: int
    total_providers: int
    total_consents: int
    platform_observations: int
