"""
Unit tests for individual fraud risk factors.
"""
from app.scoring.factors import (
    is_peak_hour,
    score_amount_anomaly,
    score_customer_behavior,
    score_customer_history,
    score_reward_consistency,
    score_time_pattern,
)


class TestAmountAnomaly:
    def test_five_times_average(self):
        r = score_amount_anomaly(1_000, average_amount=200)
        assert r.raw_value == "5.00"
        assert r.score == 40.0

    def test_three_times_average(self):
        assert score_amount_anomaly(600, average_amount=200).score == 25.0

    def test_twice_average(self):
        assert score_amount_anomaly(400, average_amount=200).score == 15.0

    def test_normal_amount(self):
        assert score_amount_anomaly(250, average_amount=200).score == 0.0

    def test_tiny_amount(self):
        r = score_amount_anomaly(10, average_amount=200)  # 0.05x
        assert r.score == 20.0

    def test_missing_average_uses_default(self):
        assert score_amount_anomaly(1_000).score == 40.0  # default avg 200


class TestTimePattern:
    def test_peak_window_bounds(self):
        assert is_peak_hour(14, ["14:00-16:00"])
        assert is_peak_hour(15, ["14:00-16:00"], minute=59)
        assert not is_peak_hour(16, ["14:00-16:00"])
        assert not is_peak_hour(16, ["14:00-16:00"], minute=59)
        assert not is_peak_hour(13, ["14:00-16:00"], minute=59)

    def test_peak_window_with_minutes(self):
        assert is_peak_hour(12, ["11:30-12:30"], minute=15)
        assert not is_peak_hour(12, ["11:30-12:30"], minute=30)

    def test_window_end_is_off_peak(self):
        assert score_time_pattern(16, minute=59).score == 10.0

    def test_peak_hour_scores_zero(self):
        r = score_time_pattern(19)
        assert r.score == 0.0
        assert r.description == "Peak hours transaction"

    def test_night_transaction(self):
        assert score_time_pattern(3).score == 25.0
        assert score_time_pattern(23).score == 25.0

    def test_off_peak_daytime(self):
        assert score_time_pattern(10).score == 10.0

    def test_custom_peaks(self):
        assert score_time_pattern(10, ["09:00-11:00"]).score == 0.0


class TestRewardConsistency:
    def test_ceiling(self):
        assert score_reward_consistency(10.0).score == 30.0

    def test_outside_typical_range(self):
        assert score_reward_consistency(2.0).score == 15.0
        assert score_reward_consistency(8.0).score == 15.0

    def test_within_range(self):
        r = score_reward_consistency(5.0)
        assert r.score == 0.0
        assert r.raw_value == "5.00%"


class TestCustomerBehavior:
    def test_perfect_score(self):
        assert score_customer_behavior(100).score == 25.0

    def test_near_perfect(self):
        assert score_customer_behavior(97).score == 15.0

    def test_very_low(self):
        assert score_customer_behavior(20).score == 20.0

    def test_normal(self):
        assert score_customer_behavior(75).score == 0.0


class TestCustomerHistory:
    def test_no_history(self):
        r = score_customer_history(None)
        assert r.raw_value == "N/A"
        assert r.score == 0.0

    def test_fraud_history_dominates(self):
        assert score_customer_history(12, fraud_history=True).score == 40.0

    def test_first_time_customer(self):
        assert score_customer_history(0).score == 20.0

    def test_second_transaction(self):
        assert score_customer_history(1).score == 10.0

    def test_regular_customer(self):
        assert score_customer_history(8).score == 0.0
