"""
Consent ledger tests: gating before any write, grant/revoke audit trail, and
atomic deletion of a user's data.
"""
from datetime import timedelta
from uuid import uuid4

import pytest

from core.exceptions import ConsentRequiredError
from models import (
    TruthAggregation,
    TruthConsent,
    TruthConsentAuditLog,
    TruthProvider,
    TruthRide,
    TruthScore,
    TruthSignal,
)
from services.signal_extraction import PartialObservation
from services.signal_normalizer import RawSignals
from services.truth_consent import (
    check_consent,
    delete_user_data,
    grant_consent,
    revoke_consent,
)
from services.truth_engine import submit_observation


def _good_ride(now):
    return RawSignals(
        reported=PartialObservation(quoted_price=20, final_price=20, quoted_eta_minutes=5, actual_pickup_minutes=5),
        ride_date=now,
    )


def _submit_as_new_user(db, now, provider="Uber", city="Metro"):
    user = uuid4()
    grant_consent(db, user)
    submit_observation(db, user, provider, city, raw=_good_ride(now), now=now)
    return user


class TestConsentLedger:
    def test_no_consent_by_default(self, db_session):
        assert check_consent(db_session, uuid4()) == {"has_consent": False}

    def test_grant_creates_record_and_audit_row(self, db_session):
        user = uuid4()
        consent = grant_consent(db_session, user, screenshot_capture=True, gps_tracking=True)

        assert check_consent(db_session, user) == {"has_consent": True}
        assert consent.screenshot_capture is True
        assert consent.notification_parsing is False
        assert consent.gps_tracking is True
        assert consent.post_ride_confirmation is True

        audit = db_session.query(TruthConsentAuditLog).filter(TruthConsentAuditLog.user_id == user).all()
        assert [a.action for a in audit] == ["granted"]
        assert audit[0].capabilities["screenshot_capture"] is True

    def test_regrant_updates_single_record(self, db_session):
        user = uuid4()
        grant_consent(db_session, user)
        grant_consent(db_session, user, notification_parsing=True)

        rows = db_session.query(TruthConsent).filter(TruthConsent.user_id == user).all()
        assert len(rows) == 1
        assert rows[0].notification_parsing is True

    def test_revoke_keeps_record_and_blocks(self, db_session):
        user = uuid4()
        grant_consent(db_session, user)
        consent = revoke_consent(db_session, user)

        assert consent.status == "revoked"
        assert consent.revoked_at is not None
        assert check_consent(db_session, user) == {"has_consent": False}

    def test_regrant_after_revoke(self, db_session):
        user = uuid4()
        grant_consent(db_session, user)
        revoke_consent(db_session, user)
        consent = grant_consent(db_session, user)

        assert consent.status == "granted"
        assert consent.revoked_at is None
        actions = [
            a.action for a in db_session.query(TruthConsentAuditLog)
            .filter(TruthConsentAuditLog.user_id == user)
            .order_by(TruthConsentAuditLog.created_at)
            .all()
        ]
        assert sorted(actions) == ["granted", "granted", "revoked"]


class TestConsentGate:
    def test_submission_without_consent_writes_nothing(self, db_session, now):
        with pytest.raises(ConsentRequiredError) as exc_info:
            submit_observation(db_session, uuid4(), "Uber", "Metro", raw=_good_ride(now), now=now)

        assert exc_info.value.status_code == 403
        assert db_session.query(TruthRide).count() == 0
        assert db_session.query(TruthProvider).count() == 0

    def test_submission_after_revoke_is_refused(self, db_session, now):
        user = uuid4()
        grant_consent(db_session, user)
        revoke_consent(db_session, user)

        with pytest.raises(ConsentRequiredError):
            submit_observation(db_session, user, "Uber", "Metro", raw=_good_ride(now), now=now)

    def test_revoke_keeps_existing_observations(self, db_session, now):
        user = _submit_as_new_user(db_session, now)
        revoke_consent(db_session, user)
        assert db_session.query(TruthRide).filter(TruthRide.user_id == user).count() == 1


class TestDeleteUserData:
    def test_cascade_removes_everything_for_user(self, db_session, now):
        user = uuid4()
        grant_consent(db_session, user)
        submit_observation(db_session, user, "Uber", "Metro", raw=_good_ride(now), now=now)
        submit_observation(db_session, user, "Bolt", "Metro", raw=_good_ride(now), now=now)
        other = _submit_as_new_user(db_session, now)

        deleted = delete_user_data(db_session, user, now=now)

        assert deleted == 2
        assert db_session.query(TruthRide).filter(TruthRide.user_id == user).count() == 0
        assert db_session.query(TruthConsent).filter(TruthConsent.user_id == user).count() == 0
        remaining = db_session.query(TruthRide).one()
        assert remaining.user_id == other
        assert db_session.query(TruthScore).count() == 1
        assert db_session.query(TruthSignal).filter(TruthSignal.truth_ride_id != remaining.id).count() == 0
        assert check_consent(db_session, user) == {"has_consent": False}

    def test_no_orphan_scores(self, db_session, now):
        user = _submit_as_new_user(db_session, now)
        delete_user_data(db_session, user, now=now)

        ride_ids = {r.id for r in db_session.query(TruthRide).all()}
        assert all(s.truth_ride_id in ride_ids for s in db_session.query(TruthScore).all())

    def test_affected_cache_is_recomputed(self, db_session, now):
        users = [_submit_as_new_user(db_session, now + timedelta(seconds=i)) for i in range(6)]
        row = (
            db_session.query(TruthAggregation)
            .filter(TruthAggregation.time_block.is_(None), TruthAggregation.route_type.is_(None))
            .one()
        )
        assert row.sample_count == 6

        delete_user_data(db_session, users[0], now=now)
        db_session.refresh(row)
        assert row.sample_count == 5

        delete_user_data(db_session, users[1], now=now)
        assert db_session.query(TruthAggregation).count() == 0

    def test_failure_rolls_back_whole_cascade(self, db_session, now, monkeypatch):
        user = _submit_as_new_user(db_session, now)

        def boom(*args, **kwargs):
            raise RuntimeError("cache unavailable")

        monkeypatch.setattr("services.truth_aggregation.refresh_context_caches", boom)

        with pytest.raises(RuntimeError):
            delete_user_data(db_session, user, now=now)

        assert db_session.query(TruthRide).filter(TruthRide.user_id == user).count() == 1
        assert db_session.query(TruthScore).count() == 1
        assert db_session.query(TruthConsent).filter(TruthConsent.user_id == user).count() == 1

    def test_delete_for_unknown_user_is_a_noop(self, db_session):
        assert delete_user_data(db_session, uuid4()) == 0
        actions = [a.action for a in db_session.query(TruthConsentAuditLog).all()]
        assert actions == ["data_deleted"]
