"""Tests for the weighted outcome policy."""

import random
from collections import Counter

import pytest

from chargesim.exceptions import ConfigurationError
from chargesim.server.policy import OutcomePolicy


class TestOutcomePolicy:
    """Tests for weight maintenance."""

    def test_default_is_all_success(self):
        policy = OutcomePolicy(rng=random.Random(1))
        assert policy.weights == {"DIAMETER_SUCCESS": 1.0}
        assert all(policy.draw() == "DIAMETER_SUCCESS" for _ in range(100))

    def test_update_merges(self):
        policy = OutcomePolicy()
        result = policy.update({"DIAMETER_CREDIT_LIMIT_REACHED": 3, "DIAMETER_UNABLE_TO_COMPLY": "1.5"})

        assert result == {
            "DIAMETER_SUCCESS": 1.0,
            "DIAMETER_CREDIT_LIMIT_REACHED": 3.0,
            "DIAMETER_UNABLE_TO_COMPLY": 1.5,
        }
        assert policy.total == pytest.approx(5.5)

    def test_update_can_override_success(self):
        policy = OutcomePolicy()
        policy.update({"DIAMETER_SUCCESS": 0, "DIAMETER_TOO_BUSY": 1})
        assert policy.draw() == "DIAMETER_TOO_BUSY"

    @pytest.mark.parametrize("value", ["heavy", None, True, float("nan"), float("inf"), -1])
    def test_invalid_update_leaves_map_unchanged(self, value):
        policy = OutcomePolicy({"DIAMETER_TOO_BUSY": 2})

        with pytest.raises(ConfigurationError):
            policy.update({"DIAMETER_CREDIT_LIMIT_REACHED": 1, "DIAMETER_UNABLE_TO_COMPLY": value})

        assert policy.weights == {"DIAMETER_SUCCESS": 1.0, "DIAMETER_TOO_BUSY": 2.0}

    def test_non_number_message(self):
        with pytest.raises(ConfigurationError) as exc_info:
            OutcomePolicy().update({"DIAMETER_TOO_BUSY": "abc"})
        assert exc_info.value.message == "Value must be a number"

    def test_clear(self):
        policy = OutcomePolicy({"DIAMETER_TOO_BUSY": 2})
        assert policy.clear() == {"DIAMETER_SUCCESS": 1.0}
        assert policy.total == 1.0

    def test_zero_sum_yields_success(self):
        policy = OutcomePolicy()
        policy.update({"DIAMETER_SUCCESS": 0})
        assert policy.draw() == "DIAMETER_SUCCESS"


class TestDrawDistribution:
    """Statistical checks of weighted draws."""

    def test_frequencies_follow_weights(self):
        policy = OutcomePolicy({"DIAMETER_CREDIT_LIMIT_REACHED": 3}, rng=random.Random(42))

        counts = Counter(policy.draw() for _ in range(10000))

        # 1:3 split - allow a generous band around 25%/75%
        assert 2200 <= counts["DIAMETER_SUCCESS"] <= 2800
        assert 7200 <= counts["DIAMETER_CREDIT_LIMIT_REACHED"] <= 7800

    def test_seeded_draws_are_reproducible(self):
        weights = {"DIAMETER_CREDIT_LIMIT_REACHED": 1, "DIAMETER_TOO_BUSY": 1}
        first = OutcomePolicy(weights, rng=random.Random(7))
        second = OutcomePolicy(weights, rng=random.Random(7))

        assert [first.draw() for _ in range(50)] == [second.draw() for _ in range(50)]

    def test_zero_weight_never_drawn(self):
        policy = OutcomePolicy({"DIAMETER_TOO_BUSY": 0}, rng=random.Random(3))
        assert "DIAMETER_TOO_BUSY" not in {policy.draw() for _ in range(1000)}
