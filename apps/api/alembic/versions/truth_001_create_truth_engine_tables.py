"""Create Ride Truth Engine tables

Revision ID: truth_001
Revises:
Create Date: 2026-10-19

Providers, consent ledger + audit trail, observations (truth_ride), signal
provenance, PRTS scores, aggregation cache, and the read-only platform_ride
feed consumed by auto-feed.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


# revision identifiers, used by Alembic.
revision: str = "truth_001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))


def upgrade() -> None:
    op.create_table(
        "truth_provider",
        _id_column(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=False),
        sa.Column("deep_link_scheme", sa.Text(), nullable=True),
        sa.Column("android_package", sa.Text(), nullable=True),
        sa.Column("ios_url_scheme", sa.Text(), nullable=True),
        sa.Column("icon_url", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
    )
    op.create_index("ix_truth_provider_slug", "truth_provider", ["slug"], unique=True)

    op.create_table(
        "truth_consent",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("screenshot_capture", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("notification_parsing", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("gps_tracking", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("post_ride_confirmation", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("status", sa.Text(), nullable=False, server_default="granted"),
        _created_at("granted_at"),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        _created_at("updated_at"),
    )
    op.create_index("ix_truth_consent_user_id", "truth_consent", ["user_id"], unique=True)

    op.create_table(
        "truth_consent_audit_log",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("capabilities", JSONB(), nullable=True),
        sa.Column("source", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_truth_consent_audit_log_user_id", "truth_consent_audit_log", ["user_id"])
    op.create_index("ix_truth_consent_audit_log_created_at", "truth_consent_audit_log", ["created_at"])

    op.create_table(
        "platform_ride",
        _id_column(),
        sa.Column("customer_id", UUID(as_uuid=True), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("region_code", sa.Text(), nullable=True),
        sa.Column("estimated_fare", sa.Numeric(10, 2), nullable=True),
        sa.Column("actual_fare", sa.Numeric(10, 2), nullable=True),
        sa.Column("distance_km", sa.Numeric(8, 2), nullable=True),
        sa.Column("pickup_lat", sa.Float(), nullable=True),
        sa.Column("pickup_lng", sa.Float(), nullable=True),
        sa.Column("dropoff_lat", sa.Float(), nullable=True),
        sa.Column("dropoff_lng", sa.Float(), nullable=True),
        _created_at(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "truth_ride",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider_id", UUID(as_uuid=True), sa.ForeignKey("truth_provider.id"), nullable=False),
        sa.Column("city_name", sa.Text(), nullable=False),
        sa.Column("route_type", sa.Text(), nullable=True),
        sa.Column("time_block", sa.Text(), nullable=True),
        sa.Column("ride_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("quoted_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("final_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("quoted_eta_minutes", sa.Numeric(6, 2), nullable=True),
        sa.Column("actual_pickup_minutes", sa.Numeric(6, 2), nullable=True),
        sa.Column("driver_cancelled", sa.Boolean(), nullable=True),
        sa.Column("cancellation_count", sa.Integer(), nullable=True),
        sa.Column("expected_distance_km", sa.Numeric(8, 2), nullable=True),
        sa.Column("actual_distance_km", sa.Numeric(8, 2), nullable=True),
        sa.Column("expected_duration_min", sa.Numeric(6, 2), nullable=True),
        sa.Column("actual_duration_min", sa.Numeric(6, 2), nullable=True),
        sa.Column("support_resolved", sa.Boolean(), nullable=True),
        sa.Column("support_outcome", sa.Text(), nullable=True),
        sa.Column("screenshot_url", sa.Text(), nullable=True),
        sa.Column("gps_trace_json", JSONB(), nullable=True),
        sa.Column("notification_data", sa.Text(), nullable=True),
        sa.Column("extraction_method", sa.Text(), nullable=False, server_default="manual"),
        sa.Column("proof_of_ride", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("pickup_lat", sa.Float(), nullable=True),
        sa.Column("pickup_lng", sa.Float(), nullable=True),
        sa.Column("dropoff_lat", sa.Float(), nullable=True),
        sa.Column("dropoff_lng", sa.Float(), nullable=True),
        sa.Column("trust_weight", sa.Float(), nullable=False, server_default=sa.text("1.0")),
        sa.Column("fraud_flags", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("is_from_platform", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("platform_ride_id", UUID(as_uuid=True), sa.ForeignKey("platform_ride.id"), nullable=True),
        _created_at(),
        sa.UniqueConstraint("platform_ride_id", name="uq_truth_ride_platform_ride_id"),
    )
    op.create_index("ix_truth_ride_user_created", "truth_ride", ["user_id", "created_at"])
    op.create_index(
        "ix_truth_ride_context",
        "truth_ride",
        ["provider_id", "city_name", "time_block", "route_type"],
    )

    op.create_table(
        "truth_signal",
        _id_column(),
        sa.Column("truth_ride_id", UUID(as_uuid=True), sa.ForeignKey("truth_ride.id"), nullable=False),
        sa.Column("signal_type", sa.Text(), nullable=False),
        sa.Column("raw_value", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="extracted"),
        sa.Column("extraction_method", sa.Text(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_truth_signal_truth_ride_id", "truth_signal", ["truth_ride_id"])

    op.create_table(
        "truth_score",
        _id_column(),
        sa.Column("truth_ride_id", UUID(as_uuid=True), sa.ForeignKey("truth_ride.id"), nullable=False),
        sa.Column("price_integrity_score", sa.Float(), nullable=False),
        sa.Column("pickup_reliability_score", sa.Float(), nullable=False),
        sa.Column("cancellation_score", sa.Float(), nullable=False),
        sa.Column("route_integrity_score", sa.Float(), nullable=False),
        sa.Column("support_resolution_score", sa.Float(), nullable=False),
        sa.Column("total_score", sa.Float(), nullable=False),
        sa.Column("explanation", sa.Text(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("truth_ride_id", name="uq_truth_score_truth_ride_id"),
    )

    op.create_table(
        "truth_aggregation",
        _id_column(),
        sa.Column("provider_id", UUID(as_uuid=True), sa.ForeignKey("truth_provider.id"), nullable=False),
        sa.Column("city_name", sa.Text(), nullable=False),
        sa.Column("time_block", sa.Text(), nullable=True),
        sa.Column("route_type", sa.Text(), nullable=True),
        sa.Column("avg_score", sa.Float(), nullable=False),
        sa.Column("sample_count", sa.Integer(), nullable=False),
        sa.Column("price_avg", sa.Float(), nullable=True),
        sa.Column("pickup_avg", sa.Float(), nullable=True),
        sa.Column("cancellation_avg", sa.Float(), nullable=True),
        sa.Column("route_avg", sa.Float(), nullable=True),
        sa.Column("support_avg", sa.Float(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False),
        _created_at("last_updated"),
        sa.UniqueConstraint(
            "provider_id", "city_name", "time_block", "route_type",
            name="uq_truth_aggregation_context",
            postgresql_nulls_not_distinct=True,
        ),
    )
    op.create_index("ix_truth_aggregation_city", "truth_aggregation", ["city_name"])


def downgrade() -> None:
    op.drop_index("ix_truth_aggregation_city", table_name="truth_aggregation")
    op.drop_table("truth_aggregation")
    op.drop_table("truth_score")
    op.drop_index("ix_truth_signal_truth_ride_id", table_name="truth_signal")
    op.drop_table("truth_signal")
    op.drop_index("ix_truth_ride_context", table_name="truth_ride")
    op.drop_index("ix_truth_ride_user_created", table_name="truth_ride")
    op.drop_table("truth_ride")
    op.drop_table("platform_ride")
    op.drop_index("ix_truth_consent_audit_log_created_at", table_name="truth_consent_audit_log")
    op.drop_index("ix_truth_consent_audit_log_user_id", table_name="truth_consent_audit_log")
    op.drop_table("truth_consent_audit_log")
    op.drop_index("ix_truth_consent_user_id", table_name="truth_consent")
    op.drop_table("truth_consent")
    op.drop_index("ix_truth_provider_slug", table_name="truth_provider")
    op.drop_table("truth_provider")
