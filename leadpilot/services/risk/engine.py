"""Risk scoring from rolling operational metrics.

The engine is pure: callers gather ``RiskInputs`` from the stats
repository and decide what to do with the returned snapshot.
"""

from dataclasses import dataclass
from enum import Enum


class RiskAction(str, Enum):
    NORMAL = "NORMAL"
    THROTTLE = "THROTTLE"
    PAUSE = "PAUSE"
    QUARANTINE = "QUARANTINE"


@dataclass(frozen=True)
class RiskInputs:
    """Rolling metrics.

    Attributes:
        pending_ratio: invites still pending / all invites ever sent
        error_rate: failed / total job attempts over the last 24h
        selector_failure_rate: selector failures today / attempts (min 1)
        challenge_count: challenges seen today
        invite_velocity_ratio: invites sent today / hard invite cap
    """

    pending_ratio: float = 0.0
    error_rate: float = 0.0
    selector_failure_rate: float = 0.0
    challenge_count: int = 0
    invite_velocity_ratio: float = 0.0


@dataclass(frozen=True)
class RiskThresholds:
    warn_score: int = 60
    stop_score: int = 80
    pending_ratio_warn: float = 0.65
    pending_ratio_stop: float = 0.8

    @classmethod
    def from_settings(cls, settings) -> "RiskThresholds":
        return cls(
            warn_score=settings.risk_warn_threshold,
            stop_score=settings.risk_stop_threshold,
            pending_ratio_warn=settings.pending_ratio_warn,
            pending_ratio_stop=settings.pending_ratio_stop,
        )


@dataclass(frozen=True)
class RiskSnapshot:
    score: int
    action: RiskAction
    inputs: RiskInputs

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "action": self.action.value,
            "pending_ratio": round(self.inputs.pending_ratio, 4),
            "error_rate": round(self.inputs.error_rate, 4),
            "selector_failure_rate": round(self.inputs.selector_failure_rate, 4),
            "challenge_count": self.inputs.challenge_count,
            "invite_velocity_ratio": round(self.inputs.invite_velocity_ratio, 4),
        }


def risk_score(inputs: RiskInputs) -> int:
    """Weighted score clamped to 0..100."""
    raw = (
        inputs.error_rate * 40
        + inputs.selector_failure_rate * 20
        + inputs.pending_ratio * 25
        + min(30, inputs.challenge_count * 20)
        + inputs.invite_velocity_ratio * 15
    )
    return max(0, min(100, round(raw)))


def evaluate_risk(inputs: RiskInputs, thresholds: RiskThresholds = RiskThresholds()) -> RiskSnapshot:
    """Score the inputs and pick an action.

    Any challenge forces QUARANTINE regardless of score.
    """
    score = risk_score(inputs)

    if inputs.challenge_count > 0:
        action = RiskAction.QUARANTINE
    elif score >= thresholds.stop_score or inputs.pending_ratio >= thresholds.pending_ratio_stop:
        action = RiskAction.PAUSE
    elif score >= thresholds.warn_score or inputs.pending_ratio >= thresholds.pending_ratio_warn:
        action = RiskAction.THROTTLE
    else:
        action = RiskAction.NORMAL

    return RiskSnapshot(score=score, action=action, inputs=inputs)
