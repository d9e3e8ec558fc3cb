"""Weighted-random outcome policy for credit-control answers."""

import logging
import math
import random
from typing import Any, Dict, Mapping, Optional

from chargesim.diameter.message import DIAMETER_SUCCESS
from chargesim.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _weight(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigurationError("Value must be a number", {name: value})
    try:
        weight = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError("Value must be a number", {name: value})
    if not math.isfinite(weight):
        raise ConfigurationError("Value must be a finite number", {name: value})
    if weight < 0:
        raise ConfigurationError("Value must not be negative", {name: value})
    return weight


class OutcomePolicy:
    """Map of result classifiers to weights, with weighted draws.

    The map always contains DIAMETER_SUCCESS. ``draw`` picks ``r`` in
    ``[0, sum)`` and returns the first classifier whose cumulative weight
    exceeds ``r``; an unusable map (sum not positive) yields
    DIAMETER_SUCCESS.

    Example:
        >>> policy = OutcomePolicy(rng=random.Random(7))
        >>> policy.update({"DIAMETER_CREDIT_LIMIT_REACHED": 3})
        >>> policy.draw() in policy.weights
        True
    """

    def __init__(self, weights: Optional[Mapping[str, Any]] = None, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.Random()
        self._weights: Dict[str, float] = {DIAMETER_SUCCESS: 1.0}
        if weights:
            self.update(weights)

    @property
    def weights(self) -> Dict[str, float]:
        return dict(self._weights)

    @property
    def total(self) -> float:
        return sum(self._weights.values())

    def update(self, weights: Mapping[str, Any]) -> Dict[str, float]:
        """Merge weights into the map.

        Args:
            weights: Classifier to weight; numeric strings are accepted.

        Returns:
            The resulting map.

        Raises:
            ConfigurationError: If any value is not a non-negative number.
                The map is left unchanged in that case.
        """
        parsed = {str(name): _weight(str(name), value) for name, value in weights.items()}
        self._weights.update(parsed)
        logger.info("Outcome weights now %s (sum %s)", self._weights, self.total)
        return self.weights

    def clear(self) -> Dict[str, float]:
        """Reset to 100% DIAMETER_SUCCESS."""
        self._weights = {DIAMETER_SUCCESS: 1.0}
        return self.weights

    def draw(self) -> str:
        """Draw one classifier."""
        total = self.total
        if not math.isfinite(total) or total <= 0:
            return DIAMETER_SUCCESS

        r = self._rng.random() * total
        bound = 0.0
        for name, weight in self._weights.items():
            bound += weight
            if r < bound:
                return name
        return DIAMETER_SUCCESS
