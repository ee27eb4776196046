"""
Fraud & trust gate tests: influence cap, submission rate, GPS plausibility,
duplicate window, and the duplicate policy at submission time.
"""
from datetime import timedelta
from uuid import uuid4

import pytest

from core.config import settings
from core.exceptions import DuplicateSubmissionError
from models import TruthProvider, TruthRide
from services.signal_extraction import GpsPoint, analyze_gps_trace
from services.signal_normalizer import RawSignals
from services.truth_consent import grant_consent
from services.truth_engine import submit_observation
from services.truth_fraud import FraudFlag, check_gps_plausibility, validate_submission


def _provider(db, name="Uber"):
    provider = TruthProvider(name=name, slug=name.lower())
    db.add(provider)
    db.flush()
    return provider


def _ride(db, provider, user_id, created_at, city="Metro"):
    ride = TruthRide(
        user_id=user_id,
        provider_id=provider.id,
        city_name=city,
        ride_date=created_at,
        created_at=created_at,
        fraud_flags=[],
    )
    db.add(ride)
    db.flush()
    return ride


def _moving_trace(points=6, start_ms=1_700_000_000_000, step_ms=60_000):
    # ~0.55 km per minute, about 33 km/h
    return [GpsPoint(lat=25.2 + i * 0.005, lng=55.3, timestamp=start_ms + i * step_ms) for i in range(points)]


class TestGpsPlausibility:
    def test_plausible_trace_has_no_flags(self):
        assert check_gps_plausibility(_moving_trace()) == []

    def test_too_few_points(self):
        assert check_gps_plausibility(_moving_trace(points=3)) == [FraudFlag.INSUFFICIENT_GPS_POINTS]

    def test_non_monotonic_timestamps(self):
        trace = _moving_trace()
        trace[3] = GpsPoint(lat=trace[3].lat, lng=trace[3].lng, timestamp=trace[1].timestamp)
        flags = check_gps_plausibility(trace)
        assert FraudFlag.NON_MONOTONIC_TIMESTAMPS in flags

    def test_teleportation(self):
        trace = _moving_trace(points=5)
        # One degree of latitude in one minute
        trace[2] = GpsPoint(lat=trace[2].lat + 1.0, lng=trace[2].lng, timestamp=trace[2].timestamp)
        assert FraudFlag.GPS_TELEPORTATION_DETECTED in check_gps_plausibility(trace)

    def test_teleport_boundary_matches_trace_analysis(self):
        trace = _moving_trace(points=11)
        last = trace[-1]
        trace[-1] = GpsPoint(lat=last.lat + 1.0, lng=last.lng, timestamp=last.timestamp)

        # 1 of 10 segments is exactly the limit: neither flagged nor discarded
        assert FraudFlag.GPS_TELEPORTATION_DETECTED not in check_gps_plausibility(trace)
        analysis = analyze_gps_trace(trace)
        assert analysis.suspicious_jumps == 1
        assert analysis.is_consistent

        trace[5] = GpsPoint(lat=trace[5].lat + 1.0, lng=trace[5].lng, timestamp=trace[5].timestamp)
        assert FraudFlag.GPS_TELEPORTATION_DETECTED in check_gps_plausibility(trace)
        assert not analyze_gps_trace(trace).is_consistent

    def test_stationary_pattern(self):
        trace = [GpsPoint(lat=25.2, lng=55.3, timestamp=1_700_000_000_000 + i * 60_000) for i in range(10)]
        assert check_gps_plausibility(trace) == [FraudFlag.STATIONARY_GPS_PATTERN]


class TestValidateSubmission:
    def test_clean_submission_passes(self, db_session, now):
        provider = _provider(db_session)
        result = validate_submission(db_session, uuid4(), provider.id, "Metro", now=now)
        assert result.passed is True
        assert result.flags == []
        assert result.trust_weight == 1.0

    def test_duplicate_inside_window(self, db_session, now):
        provider = _provider(db_session)
        user = uuid4()
        _ride(db_session, provider, user, now - timedelta(minutes=5))

        result = validate_submission(db_session, user, provider.id, "Metro", now=now)
        assert result.is_duplicate
        assert result.trust_weight == 0.0
        assert result.passed is False

    def test_no_duplicate_after_window(self, db_session, now):
        provider = _provider(db_session)
        user = uuid4()
        _ride(db_session, provider, user, now - timedelta(minutes=11))

        result = validate_submission(db_session, user, provider.id, "Metro", now=now)
        assert not result.is_duplicate
        assert result.trust_weight == 1.0

    def test_same_user_other_provider_is_not_duplicate(self, db_session, now):
        uber = _provider(db_session, "Uber")
        bolt = _provider(db_session, "Bolt")
        user = uuid4()
        _ride(db_session, uber, user, now - timedelta(minutes=2))

        assert not validate_submission(db_session, user, bolt.id, "Metro", now=now).is_duplicate

    def test_influence_cap(self, db_session, now):
        provider = _provider(db_session)
        heavy_user = uuid4()
        earlier = now - timedelta(hours=2)
        for _ in range(2):
            _ride(db_session, provider, heavy_user, earlier)
        for _ in range(8):
            _ride(db_session, provider, uuid4(), earlier)

        result = validate_submission(db_session, heavy_user, provider.id, "Metro", now=now)
        assert result.flags == [FraudFlag.USER_INFLUENCE_CAP_EXCEEDED]
        assert result.trust_weight == pytest.approx(0.3)

    def test_influence_cap_needs_minimum_population(self, db_session, now):
        provider = _provider(db_session)
        user = uuid4()
        for _ in range(3):
            _ride(db_session, provider, user, now - timedelta(hours=2))

        result = validate_submission(db_session, user, provider.id, "Metro", now=now)
        assert FraudFlag.USER_INFLUENCE_CAP_EXCEEDED not in result.flags

    def test_submission_rate(self, db_session, now):
        elsewhere = _provider(db_session, "Careem")
        target = _provider(db_session, "Uber")
        user = uuid4()
        for i in range(settings.DAILY_SUBMISSION_LIMIT + 1):
            _ride(db_session, elsewhere, user, now - timedelta(hours=1, minutes=i), city="Elsewhere")

        result = validate_submission(db_session, user, target.id, "Metro", now=now)
        assert result.flags == [FraudFlag.SUSPICIOUS_SUBMISSION_RATE]
        assert result.trust_weight == pytest.approx(0.5)

    def test_rate_ignores_rides_older_than_a_day(self, db_session, now):
        elsewhere = _provider(db_session, "Careem")
        target = _provider(db_session, "Uber")
        user = uuid4()
        for i in range(settings.DAILY_SUBMISSION_LIMIT + 1):
            _ride(db_session, elsewhere, user, now - timedelta(days=2, minutes=i), city="Elsewhere")

        assert validate_submission(db_session, user, target.id, "Metro", now=now).passed

    def test_gps_penalty_applies_once(self, db_session, now):
        provider = _provider(db_session)
        trace = [GpsPoint(lat=25.2, lng=55.3, timestamp=1_700_000_000_000) for _ in range(6)]

        result = validate_submission(db_session, uuid4(), provider.id, "Metro", gps_trace=trace, now=now)
        assert FraudFlag.NON_MONOTONIC_TIMESTAMPS in result.flags
        assert FraudFlag.STATIONARY_GPS_PATTERN in result.flags
        assert result.trust_weight == pytest.approx(0.4)

    def test_penalties_multiply(self, db_session, now):
        provider = _provider(db_session)
        heavy_user = uuid4()
        earlier = now - timedelta(hours=2)
        for _ in range(settings.DAILY_SUBMISSION_LIMIT + 1):
            _ride(db_session, provider, heavy_user, earlier)

        trace = _moving_trace(points=2)
        result = validate_submission(db_session, heavy_user, provider.id, "Metro", gps_trace=trace, now=now)
        assert result.flags == [
            FraudFlag.USER_INFLUENCE_CAP_EXCEEDED,
            FraudFlag.SUSPICIOUS_SUBMISSION_RATE,
            FraudFlag.INSUFFICIENT_GPS_POINTS,
        ]
        assert result.trust_weight == pytest.approx(0.3 * 0.5 * 0.4)


class TestDuplicatePolicy:
    def _submit(self, db, user, now):
        return submit_observation(
            db, user, "Uber", "Metro",
            raw=RawSignals(ride_date=now),
            now=now,
        )

    def test_reject_policy_raises_conflict(self, db_session, now):
        user = uuid4()
        grant_consent(db_session, user)
        self._submit(db_session, user, now)

        with pytest.raises(DuplicateSubmissionError) as exc_info:
            self._submit(db_session, user, now + timedelta(minutes=3))

        assert exc_info.value.status_code == 409
        assert "duplicate_submission" in exc_info.value.flags
        db_session.rollback()
        assert db_session.query(TruthRide).filter(TruthRide.user_id == user).count() == 1

    def test_downweight_policy_persists_with_zero_weight(self, db_session, now, monkeypatch):
        monkeypatch.setattr(settings, "DUPLICATE_POLICY", "downweight")
        user = uuid4()
        grant_consent(db_session, user)
        self._submit(db_session, user, now)

        second = self._submit(db_session, user, now + timedelta(minutes=3))
        assert second.trust_weight == 0.0
        assert "duplicate_submission" in second.fraud_flags
        assert db_session.query(TruthRide).filter(TruthRide.user_id == user).count() == 2

    def test_resubmission_after_window_is_accepted(self, db_session, now):
        user = uuid4()
        grant_consent(db_session, user)
        self._submit(db_session, user, now)

        later = self._submit(db_session, user, now + timedelta(minutes=11))
        assert later.trust_weight == 1.0
        assert later.fraud_flags == []
