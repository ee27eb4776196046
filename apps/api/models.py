from sqlalchemy import Column, Integer, Boolean, Float, DateTime, ForeignKey, Numeric, Text, Index, UniqueConstraint, JSON, Uuid
from sqlalchemy.orm import relationship
from core.database import Base
import uuid
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TruthProvider(Base):
    """A ride-hailing brand being rated. Created on first reference, never deleted while referenced."""
    __tablename__ = "truth_provider"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    slug = Column(Text, unique=True, nullable=False, index=True)  # e.g. "uber", "in-drive"
    deep_link_scheme = Column(Text, nullable=True)  # "uber" -> uber://
    android_package = Column(Text, nullable=True)
    ios_url_scheme = Column(Text, nullable=True)
    icon_url = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    rides = relationship("TruthRide", back_populates="provider")

    @property
    def deep_link(self):
        return f"{self.deep_link_scheme}://" if self.deep_link_scheme else None


class TruthConsent(Base):
    """
    Per-user grant for each signal-collection capability.

    One row per user. Upserted on grant; revocation flips status but keeps the
    user's observations. Only deleted by an explicit data-deletion request.
    """
    __tablename__ = "truth_consent"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), unique=True, nullable=False, index=True)
    screenshot_capture = Column(Boolean, default=False, nullable=False)
    notification_parsing = Column(Boolean, default=False, nullable=False)
    gps_tracking = Column(Boolean, default=False, nullable=False)
    post_ride_confirmation = Column(Boolean, default=True, nullable=False)
    status = Column(Text, default="granted", nullable=False)  # 'granted' | 'revoked'
    granted_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class TruthConsentAuditLog(Base):
    """Append-only trail of consent grants and revocations."""
    __tablename__ = "truth_consent_audit_log"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), nullable=False)
    action = Column(Text, nullable=False)  # 'granted' | 'revoked' | 'data_deleted'
    capabilities = Column(JSON, nullable=True)
    source = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_truth_consent_audit_log_user_id", "user_id"),
        Index("ix_truth_consent_audit_log_created_at", "created_at"),
    )


class PlatformRide(Base):
    """
    Completed rides of the platform's own dispatch layer.

    Owned and written by the dispatch service; the truth engine only reads
    completed rows to auto-feed them as full-trust observations.
    """
    __tablename__ = "platform_ride"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(Uuid(as_uuid=True), nullable=False)
    status = Column(Text, nullable=False)  # 'requested' ... 'completed' | 'cancelled'
    region_code = Column(Text, nullable=True)
    estimated_fare = Column(Numeric(10, 2, asdecimal=False), nullable=True)
    actual_fare = Column(Numeric(10, 2, asdecimal=False), nullable=True)
    distance_km = Column(Numeric(8, 2, asdecimal=False), nullable=True)
    pickup_lat = Column(Float, nullable=True)
    pickup_lng = Column(Float, nullable=True)
    dropoff_lat = Column(Float, nullable=True)
    dropoff_lng = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class TruthRide(Base):
    """
    One real-world ride as reported by one user (an observation).

    Immutable once scored except for moderation/deletion.
    """
    __tablename__ = "truth_ride"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), nullable=False)
    provider_id = Column(Uuid(as_uuid=True), ForeignKey("truth_provider.id"), nullable=False)
    city_name = Column(Text, nullable=False)
    route_type = Column(Text, nullable=True)  # short | medium | long | intercity
    time_block = Column(Text, nullable=True)  # morning_rush | midday | evening_rush | night | late_night
    ride_date = Column(DateTime(timezone=True), nullable=False)

    # --- PRICE / PICKUP ---
    quoted_price = Column(Numeric(10, 2, asdecimal=False), nullable=True)
    final_price = Column(Numeric(10, 2, asdecimal=False), nullable=True)
    quoted_eta_minutes = Column(Numeric(6, 2, asdecimal=False), nullable=True)
    actual_pickup_minutes = Column(Numeric(6, 2, asdecimal=False), nullable=True)

    # --- CANCELLATION ---
    driver_cancelled = Column(Boolean, nullable=True)
    cancellation_count = Column(Integer, nullable=True)

    # --- ROUTE ---
    expected_distance_km = Column(Numeric(8, 2, asdecimal=False), nullable=True)
    actual_distance_km = Column(Numeric(8, 2, asdecimal=False), nullable=True)
    expected_duration_min = Column(Numeric(6, 2, asdecimal=False), nullable=True)
    actual_duration_min = Column(Numeric(6, 2, asdecimal=False), nullable=True)

    # --- SUPPORT ---
    support_resolved = Column(Boolean, nullable=True)
    support_outcome = Column(Text, nullable=True)

    # --- RAW SIGNAL PAYLOAD ---
    screenshot_url = Column(Text, nullable=True)
    gps_trace_json = Column(JSON, nullable=True)
    notification_data = Column(Text, nullable=True)
    extraction_method = Column(Text, default="manual", nullable=False)
    proof_of_ride = Column(Boolean, default=False, nullable=False)
    pickup_lat = Column(Float, nullable=True)
    pickup_lng = Column(Float, nullable=True)
    dropoff_lat = Column(Float, nullable=True)
    dropoff_lng = Column(Float, nullable=True)

    # --- TRUST ---
    # Multiplies the time-decay weight during aggregation; 0 means non-contributing.
    trust_weight = Column(Float, default=1.0, nullable=False)
    fraud_flags = Column(JSON, nullable=False, default=list)

    # --- PROVENANCE ---
    is_from_platform = Column(Boolean, default=False, nullable=False)
    platform_ride_id = Column(Uuid(as_uuid=True), ForeignKey("platform_ride.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    provider = relationship("TruthProvider", back_populates="rides")
    score = relationship("TruthScore", back_populates="ride", uselist=False, cascade="all, delete-orphan")
    signals = relationship("TruthSignal", back_populates="ride", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_truth_ride_user_created", "user_id", "created_at"),
        Index("ix_truth_ride_context", "provider_id", "city_name", "time_block", "route_type"),
        UniqueConstraint("platform_ride_id", name="uq_truth_ride_platform_ride_id"),
    )


class TruthSignal(Base):
    """One extracted signal field of an observation, with its provenance."""
    __tablename__ = "truth_signal"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    truth_ride_id = Column(Uuid(as_uuid=True), ForeignKey("truth_ride.id"), nullable=False, index=True)
    signal_type = Column(Text, nullable=False)  # e.g. "quoted_price"
    raw_value = Column(Text, nullable=True)
    status = Column(Text, default="extracted", nullable=False)  # extracted | unknown | invalid
    extraction_method = Column(Text, nullable=True)
    confidence = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    ride = relationship("TruthRide", back_populates="signals")


class TruthScore(Base):
    """PRTS breakdown for exactly one observation."""
    __tablename__ = "truth_score"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    truth_ride_id = Column(Uuid(as_uuid=True), ForeignKey("truth_ride.id"), nullable=False)
    price_integrity_score = Column(Float, nullable=False)
    pickup_reliability_score = Column(Float, nullable=False)
    cancellation_score = Column(Float, nullable=False)
    route_integrity_score = Column(Float, nullable=False)
    support_resolution_score = Column(Float, nullable=False)
    total_score = Column(Float, nullable=False)
    explanation = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    ride = relationship("TruthRide", back_populates="score")

    __table_args__ = (
        UniqueConstraint("truth_ride_id", name="uq_truth_score_truth_ride_id"),
    )


class TruthAggregation(Base):
    """
    Cached aggregate for one (provider, city, time block, route type) context.

    NULL time_block / route_type mean "any". Fully replaced on every recompute.
    """
    __tablename__ = "truth_aggregation"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider_id = Column(Uuid(as_uuid=True), ForeignKey("truth_provider.id"), nullable=False)
    city_name = Column(Text, nullable=False)
    time_block = Column(Text, nullable=True)
    route_type = Column(Text, nullable=True)
    avg_score = Column(Float, nullable=False)
    sample_count = Column(Integer, nullable=False)
    price_avg = Column(Float, nullable=True)
    pickup_avg = Column(Float, nullable=True)
    cancellation_avg = Column(Float, nullable=True)
    route_avg = Column(Float, nullable=True)
    support_avg = Column(Float, nullable=True)
    confidence = Column(Float, nullable=False)
    last_updated = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    provider = relationship("TruthProvider")

    __table_args__ = (
        # NULL means "any"; two NULL contexts must collide (Postgres 15+)
        UniqueConstraint(
            "provider_id", "city_name", "time_block", "route_type",
            name="uq_truth_aggregation_context",
            postgresql_nulls_not_distinct=True,
        ),
        Index("ix_truth_aggregation_city", "city_name"),
    )
