"""Early-exit penalty classification.

The backend deducts the coin; the client only tells the user it happened.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

EARLY_EXIT_THRESHOLD_SECONDS = 60


@dataclass(frozen=True)
class PenaltyRecord:
    session_duration_seconds: int
    penalty_applied: bool

    @property
    def penalized(self) -> bool:
        return self.penalty_applied


class PenaltyCalculator:
    def __init__(self, threshold_seconds: float = EARLY_EXIT_THRESHOLD_SECONDS) -> None:
        self._threshold = threshold_seconds

    def evaluate(self, session_start: float, now: float) -> PenaltyRecord:
        elapsed = max(0.0, now - session_start)
        return PenaltyRecord(
            session_duration_seconds=math.floor(elapsed),
            penalty_applied=elapsed < self._threshold,
        )
