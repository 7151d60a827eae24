"""AI-assisted analysis hook.

The anomaly model is an external black box. The pipeline consults it once,
when an alert first fires, and uses the answer to annotate the alert and
possibly raise its severity. A failing classifier never blocks alerting.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Awaitable, Protocol, runtime_checkable

from aimonitor.core.models import AlertInstance, Severity

ANOMALY_SCORE = "anomaly_score"


@dataclass(frozen=True)
class Classification:
    score: float
    severity: Severity | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"score must be within [0, 1], got {self.score}")


@runtime_checkable
class AnomalyClassifier(Protocol):
    """classify() may be sync or async."""

    def classify(self, alert: AlertInstance) -> Classification | Awaitable[Classification]: ...


class NoOpClassifier:
    """Scores every alert 0.0 and never suggests a severity."""

    def classify(self, alert: AlertInstance) -> Classification:
        return Classification(score=0.0)


class ThresholdClassifier:
    """Scores by how far the value sits past a reference, for local runs without a model.

    score = min(1, |value - reference| / spread). Scores at or above
    critical_at suggest CRITICAL, at or above high_at suggest HIGH.
    """

    def __init__(
        self,
        reference: float = 0.0,
        spread: float = 100.0,
        high_at: float = 0.8,
        critical_at: float = 0.95,
    ) -> None:
        if spread <= 0:
            raise ValueError("spread must be > 0")
        self.reference = reference
        self.spread = spread
        self.high_at = high_at
        self.critical_at = critical_at

    def classify(self, alert: AlertInstance) -> Classification:
        score = min(1.0, abs(alert.value - self.reference) / self.spread)
        if score >= self.critical_at:
            return Classification(score, Severity.CRITICAL)
        if score >= self.high_at:
            return Classification(score, Severity.HIGH)
        return Classification(score)


async def classify(classifier: AnomalyClassifier, alert: AlertInstance) -> Classification:
    """Run a sync or async classifier."""
    outcome = classifier.classify(alert)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome
