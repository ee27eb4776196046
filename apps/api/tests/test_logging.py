"""
Structured logging: ride context flows from service log calls into output.
"""
import json
import logging
from uuid import uuid4

from core.logging import ContextTextFormatter, JSONFormatter, SERVICE_NAME, truth_context
from services.truth_fraud import FraudFlag


def _record(message="Observation stored", **extra):
    record = logging.LogRecord("services.truth_engine", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestTruthContext:
    def test_drops_none_and_plains_values(self):
        user = uuid4()
        context = truth_context(
            user_id=user,
            city="Dubai",
            time_block=None,
            fraud_flags=[FraudFlag.DUPLICATE_SUBMISSION],
            trust_weight=0.30000000004,
        )
        assert context == {
            "extra_fields": {
                "user_id": str(user),
                "city": "Dubai",
                "fraud_flags": ["duplicate_submission"],
                "trust_weight": 0.3,
            }
        }


class TestJSONFormatter:
    def test_service_and_context_at_top_level(self):
        record = _record(**truth_context(provider="uber", city="Metro", score=83))
        payload = json.loads(JSONFormatter().format(record))

        assert payload["service"] == SERVICE_NAME
        assert payload["message"] == "Observation stored"
        assert payload["logger"] == "services.truth_engine"
        assert payload["provider"] == "uber"
        assert payload["city"] == "Metro"
        assert payload["score"] == 83

    def test_without_context(self):
        payload = json.loads(JSONFormatter().format(_record()))
        assert "city" not in payload
        assert payload["level"] == "INFO"


class TestContextTextFormatter:
    def test_appends_context_in_fixed_order(self):
        record = _record(**truth_context(city="Metro", provider="uber", extraction="gps"))
        line = ContextTextFormatter().format(record)
        assert line.endswith("Observation stored [provider=uber city=Metro extraction=gps]")

    def test_plain_line_without_context(self):
        assert ContextTextFormatter().format(_record()).endswith("Observation stored")


def test_engine_logs_carry_ride_context(db_session, now, caplog):
    from services.signal_extraction import PartialObservation
    from services.signal_normalizer import RawSignals
    from services.truth_consent import grant_consent
    from services.truth_engine import submit_observation

    user = uuid4()
    grant_consent(db_session, user)
    with caplog.at_level(logging.INFO, logger="services.truth_engine"):
        result = submit_observation(
            db_session, user, "Uber", "Metro",
            raw=RawSignals(reported=PartialObservation(quoted_price=20, final_price=20), ride_date=now),
            now=now,
        )

    stored = [r for r in caplog.records if r.getMessage().startswith("Truth observation stored")]
    assert len(stored) == 1
    assert stored[0].extra_fields["observation_id"] == str(result.observation_id)
    assert stored[0].extra_fields["provider"] == "uber"
    assert stored[0].extra_fields["time_block"] == "morning_rush"
    assert "fraud_flags" not in stored[0].extra_fields
