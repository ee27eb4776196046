"""
PRTS scorer tests: sub-score buckets, neutral defaults, weighting, rounding,
explanations, and storage.
"""
import random
from uuid import uuid4

import pytest

from models import TruthProvider, TruthRide, TruthScore
from services.prts_scoring import (
    WEIGHTS,
    compute_and_store_prts,
    compute_prts,
    generate_explanation,
    round_half_up,
    score_cancellation,
    score_pickup_reliability,
    score_price_integrity,
    score_route_integrity,
    score_support_resolution,
    weighted_total,
)
from services.signal_extraction import PartialObservation


class TestPriceIntegrity:
    @pytest.mark.parametrize("final,expected", [
        (20.0, 100),
        (20.4, 100),   # 2%
        (21.0, 90),    # 5%
        (22.0, 75),    # 10%
        (24.0, 55),    # 20%
        (26.0, 35),    # 30%
        (30.0, 15),    # 50%
        (40.0, 0),
        (16.0, 55),    # under-charge counts the same as over-charge
    ])
    def test_buckets(self, final, expected):
        assert score_price_integrity(20.0, final) == expected

    def test_missing_or_zero_quote_is_neutral(self):
        assert score_price_integrity(None, 20.0) == 50
        assert score_price_integrity(20.0, None) == 50
        assert score_price_integrity(0, 20.0) == 50

    def test_never_increases_with_deviation(self):
        rng = random.Random(42)
        for _ in range(200):
            quoted = rng.uniform(1, 200)
            d1, d2 = sorted(rng.uniform(0, 1.5) for _ in range(2))
            assert score_price_integrity(quoted, quoted * (1 + d1)) >= score_price_integrity(quoted, quoted * (1 + d2))


class TestPickupReliability:
    @pytest.mark.parametrize("actual,expected", [
        (3, 100),   # early
        (5, 100),
        (6, 95),
        (7, 85),
        (10, 70),
        (15, 45),
        (20, 25),
        (21, 5),
    ])
    def test_buckets(self, actual, expected):
        assert score_pickup_reliability(5, actual) == expected

    def test_missing_eta_is_neutral(self):
        assert score_pickup_reliability(None, 5) == 50
        assert score_pickup_reliability(0, 5) == 50
        assert score_pickup_reliability(5, None) == 50


class TestCancellation:
    def test_no_cancellation_data_scores_75(self):
        assert score_cancellation(None, None) == 75

    def test_explicit_no_cancellation_scores_100(self):
        assert score_cancellation(False, None) == 100
        assert score_cancellation(False, 0) == 100
        assert score_cancellation(None, 0) == 100

    @pytest.mark.parametrize("count,expected", [(None, 40), (1, 20), (2, 10), (3, 0), (7, 0)])
    def test_cancelled(self, count, expected):
        assert score_cancellation(True, count) == expected

    def test_count_without_flag_counts_as_cancelled(self):
        assert score_cancellation(None, 2) == 10


class TestRouteIntegrity:
    def test_no_data_is_neutral(self):
        assert score_route_integrity(None, None, None, None) == 50
        assert score_route_integrity(0, 5, None, None) == 50

    def test_distance_only_averages_with_neutral_duration(self):
        assert score_route_integrity(10, 10, None, None) == 75   # (100 + 50) / 2

    def test_both_dimensions(self):
        assert score_route_integrity(10, 10.4, 20, 21) == 100
        assert score_route_integrity(10, 12, 20, 26) == 60       # (55 + 65) / 2

    def test_half_rounds_up(self):
        assert score_route_integrity(10, 10.8, 20, 23) == 88     # (90 + 85) / 2 = 87.5


class TestSupportResolution:
    def test_no_support_interaction_is_neutral(self):
        assert score_support_resolution(None, None) == 50

    @pytest.mark.parametrize("resolved,outcome,expected", [
        (True, "full_refund", 90),
        (True, "partial_refund", 70),
        (True, "apology_credit", 60),
        (True, None, 80),
        (True, "something_else", 80),
        (False, "denied", 15),
        (False, "no_response", 5),
        (False, "ignored", 25),
        (False, None, 50),
    ])
    def test_outcomes(self, resolved, outcome, expected):
        assert score_support_resolution(resolved, outcome) == expected


class TestWeightedTotal:
    def test_weights_sum_to_one(self):
        assert sum(WEIGHTS.values()) == pytest.approx(1.0)

    def test_round_half_up(self):
        assert round_half_up(82.5) == 83
        assert round_half_up(87.5) == 88
        assert round_half_up(82.49) == 82

    def test_end_to_end_example_rounds_to_83(self):
        """quoted=final, on-time pickup, no cancellation data, no route/support data."""
        obs = PartialObservation(quoted_price=20, final_price=20, quoted_eta_minutes=5, actual_pickup_minutes=5)
        result = compute_prts(obs)

        assert result.breakdown() == {
            "price_integrity": 100,
            "pickup_reliability": 100,
            "cancellation": 75,
            "route_integrity": 50,
            "support_resolution": 50,
        }
        assert result.total == 83

    def test_explicit_no_cancellation_rounds_to_88(self):
        obs = PartialObservation(
            quoted_price=20, final_price=20, quoted_eta_minutes=5, actual_pickup_minutes=5,
            driver_cancelled=False,
        )
        assert compute_prts(obs).total == 88

    def test_empty_observation_scores_neutral(self):
        result = compute_prts(PartialObservation())
        # 50*.3 + 50*.25 + 75*.2 + 50*.15 + 50*.1
        assert result.total == 55

    def test_total_always_in_range(self):
        rng = random.Random(7)
        for _ in range(300):
            obs = PartialObservation(
                quoted_price=rng.choice([None, 0, rng.uniform(1, 100)]),
                final_price=rng.choice([None, rng.uniform(0, 200)]),
                quoted_eta_minutes=rng.choice([None, rng.uniform(0, 20)]),
                actual_pickup_minutes=rng.choice([None, rng.uniform(0, 60)]),
                driver_cancelled=rng.choice([None, True, False]),
                cancellation_count=rng.choice([None, 0, 1, 2, 5]),
                expected_distance_km=rng.choice([None, rng.uniform(0, 30)]),
                actual_distance_km=rng.choice([None, rng.uniform(0, 40)]),
                support_resolved=rng.choice([None, True, False]),
                support_outcome=rng.choice([None, "denied", "full_refund"]),
            )
            result = compute_prts(obs)
            assert 0 <= result.total <= 100
            assert all(0 <= v <= 100 for v in result.breakdown().values())

    def test_non_integer_sub_scores(self):
        scores = {
            "price_integrity": 99.5,
            "pickup_reliability": 100,
            "cancellation": 100,
            "route_integrity": 100,
            "support_resolution": 100,
        }
        assert weighted_total(scores) == 100   # 99.85


class TestExplanation:
    def test_high_score_explanation(self):
        obs = PartialObservation(quoted_price=20, final_price=20, quoted_eta_minutes=5, actual_pickup_minutes=5)
        result = compute_prts(obs)
        assert result.explanation == (
            "This ride was highly reliable overall. "
            "The final price matched the quoted fare well. "
            "The driver arrived on time."
        )

    def test_low_dimensions_are_called_out(self):
        scores = {
            "price_integrity": 0,
            "pickup_reliability": 5,
            "cancellation": 20,
            "route_integrity": 10,
            "support_resolution": 15,
        }
        text = generate_explanation(scores, weighted_total(scores))
        assert text.startswith("This ride had major problems.")
        assert "deviated significantly from the quote" in text
        assert "much later than promised" in text
        assert "driver cancellation issues" in text
        assert "differed significantly from expected" in text
        assert "Support resolution was unsatisfactory." in text

    @pytest.mark.parametrize("total,sentence", [
        (80, "highly reliable"),
        (79, "some reliability issues"),
        (60, "some reliability issues"),
        (45, "significant issues"),
        (39, "major problems"),
    ])
    def test_overall_bands(self, total, sentence):
        neutral = {k: 50 for k in WEIGHTS}
        assert sentence in generate_explanation(neutral, total)


class TestStorage:
    def test_store_replaces_previous_score(self, db_session, now):
        provider = TruthProvider(name="Bolt", slug="bolt")
        db_session.add(provider)
        db_session.flush()
        ride = TruthRide(
            user_id=uuid4(), provider_id=provider.id, city_name="Metro", ride_date=now,
            quoted_price=20, final_price=20, fraud_flags=[],
        )
        db_session.add(ride)
        db_session.flush()

        first = compute_and_store_prts(db_session, ride)
        ride.final_price = 40
        second = compute_and_store_prts(db_session, ride)

        rows = db_session.query(TruthScore).filter(TruthScore.truth_ride_id == ride.id).all()
        assert len(rows) == 1
        assert rows[0].total_score == second.total
        assert second.price_integrity == 0
        assert first.price_integrity == 100
