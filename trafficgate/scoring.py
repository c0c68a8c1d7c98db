"""
Progressive Scoring - Blends signal scores into a decision.

Score bands (inclusive):
  0 .. block_threshold                   BLOCK
  block_threshold+1 .. challenge_threshold  CHALLENGE
  challenge_threshold+1 .. 100           ALLOW

Signals are weighted and the blend is re-normalized over the signals that
are actually present, so a missing signal never drags the score toward 0.
Evaluation moves through an explicit state machine:

  Unscored -> QuickScored -> [ChallengeServed -> FullScored] -> Decided
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Union

from .analyzers.behavior import BehaviorAnalysis
from .analyzers.fingerprint import FingerprintAnalysis
from .analyzers.headers import HeadersAnalysis
from .analyzers.user_agent import UserAgentAnalysis
from .errors import ConfigurationError, InvalidTransition, SignalKind


class Decision(Enum):
    BLOCK = "block"
    CHALLENGE = "challenge"
    ALLOW = "allow"


SCORING_WEIGHTS: dict[SignalKind, float] = {
    SignalKind.USER_AGENT: 0.20,
    SignalKind.HEADERS: 0.15,
    SignalKind.BEHAVIOR: 0.30,
    SignalKind.FINGERPRINT: 0.25,
    SignalKind.NETWORK: 0.10,
}

DECISION_THRESHOLDS: dict[str, int] = {
    "block": 30,
    "challenge": 60,
}

DEFAULT_QUICK_ALLOW_THRESHOLD = 90

# Interstitial wait before redirecting, by lowest score of each band
CHALLENGE_DELAYS: dict[int, int] = {
    31: 3000,
    36: 2500,
    41: 2000,
    46: 1500,
    51: 1000,
    56: 500,
}
MAX_CHALLENGE_DELAY_MS = 3000

# Variance of the signal scores at which confidence reaches 0
MAX_SCORE_VARIANCE = 2500


@dataclass(frozen=True)
class ScoringConfig:
    """Weights and decision thresholds. Validated on construction."""
    weights: Mapping[SignalKind, float] = field(default_factory=lambda: dict(SCORING_WEIGHTS))
    block_threshold: int = DECISION_THRESHOLDS["block"]
    challenge_threshold: int = DECISION_THRESHOLDS["challenge"]
    quick_allow_threshold: int = DEFAULT_QUICK_ALLOW_THRESHOLD
    block_on_critical: bool = True
    min_score: int = 0

    def __post_init__(self):
        if not 0 <= self.block_threshold < self.challenge_threshold < 100:
            raise ConfigurationError(
                f"thresholds must satisfy 0 <= block < challenge < 100, "
                f"got block={self.block_threshold} challenge={self.challenge_threshold}"
            )
        if not self.challenge_threshold < self.quick_allow_threshold <= 100:
            raise ConfigurationError(
                f"quick_allow_threshold must be in ({self.challenge_threshold}, 100], "
                f"got {self.quick_allow_threshold}"
            )
        for signal, weight in self.weights.items():
            if not isinstance(signal, SignalKind):
                raise ConfigurationError(f"unknown signal in weights: {signal!r}")
            if weight < 0:
                raise ConfigurationError(f"weight for {signal.value} must be >= 0, got {weight}")
        if not any(w > 0 for w in self.weights.values()):
            raise ConfigurationError("at least one signal weight must be positive")
        if not 0 <= self.min_score <= 100:
            raise ConfigurationError(f"min_score must be in [0, 100], got {self.min_score}")

    def weight(self, signal: SignalKind) -> float:
        return float(self.weights.get(signal, 0.0))

    @property
    def neutral_score(self) -> int:
        """Midpoint of the challenge band"""
        return (self.block_threshold + 1 + self.challenge_threshold) // 2

    def with_overrides(self, **changes) -> "ScoringConfig":
        values = {
            "weights": dict(self.weights),
            "block_threshold": self.block_threshold,
            "challenge_threshold": self.challenge_threshold,
            "quick_allow_threshold": self.quick_allow_threshold,
            "block_on_critical": self.block_on_critical,
            "min_score": self.min_score,
        }
        values.update(changes)
        return ScoringConfig(**values)


DEFAULT_SCORING_CONFIG = ScoringConfig()


@dataclass(frozen=True)
class ScoringInput:
    """Signals available for an evaluation. Any of them may be absent."""
    user_agent: Optional[UserAgentAnalysis] = None
    headers: Optional[HeadersAnalysis] = None
    behavior: Optional[BehaviorAnalysis] = None
    fingerprint: Optional[FingerprintAnalysis] = None
    network_score: Optional[int] = None


@dataclass(frozen=True)
class SignalContribution:
    """One signal's score and its effective weight (configured weight x confidence)"""
    signal: SignalKind
    score: int
    weight: float


@dataclass(frozen=True)
class ScoringResult:
    final_score: int
    decision: Decision
    breakdown: Mapping[SignalKind, SignalContribution]
    critical_flags: tuple[str, ...] = ()
    degraded: bool = False

    def total_weight(self) -> float:
        return sum(c.weight for c in self.breakdown.values())

    def shares(self) -> dict[SignalKind, float]:
        """Re-normalized weight share of each present signal"""
        total = self.total_weight()
        if total <= 0:
            return {}
        return {s: c.weight / total for s, c in self.breakdown.items()}

    def contributions(self) -> dict[SignalKind, float]:
        """Points each signal adds to the blended score"""
        return {s: share * self.breakdown[s].score for s, share in self.shares().items()}

    @property
    def confidence(self) -> int:
        """0-100, high when the signal scores agree with each other"""
        scores = [c.score for c in self.breakdown.values()]
        if not scores:
            return 0
        mean = sum(scores) / len(scores)
        variance = sum((s - mean) ** 2 for s in scores) / len(scores)
        return int(round((1 - min(variance, MAX_SCORE_VARIANCE) / MAX_SCORE_VARIANCE) * 100))

    @property
    def risk_level(self) -> str:
        if self.final_score <= 20 or self.critical_flags:
            return "critical"
        if self.final_score <= 40 or self.decision == Decision.BLOCK:
            return "high"
        if self.final_score <= 60:
            return "medium"
        return "low"

    def summary(self) -> dict:
        return {
            "score": self.final_score,
            "decision": self.decision.value,
            "degraded": self.degraded,
            "confidence": self.confidence,
            "risk_level": self.risk_level,
            "critical_flags": list(self.critical_flags),
            "signals": {
                s.value: {"score": c.score, "weight": round(c.weight, 4)}
                for s, c in self.breakdown.items()
            },
        }


def _clamp(score: float) -> int:
    return max(0, min(100, int(round(score))))


def decision_for_score(score: int, config: ScoringConfig = DEFAULT_SCORING_CONFIG) -> Decision:
    if score <= config.block_threshold:
        return Decision.BLOCK
    if score <= config.challenge_threshold:
        return Decision.CHALLENGE
    return Decision.ALLOW


def get_challenge_delay(score: int) -> int:
    """Milliseconds the interstitial waits before redirecting a challenged visitor"""
    for floor in sorted(CHALLENGE_DELAYS, reverse=True):
        if score >= floor:
            return CHALLENGE_DELAYS[floor]
    return MAX_CHALLENGE_DELAY_MS


def should_block(score: int, config: ScoringConfig = DEFAULT_SCORING_CONFIG) -> bool:
    return score <= config.block_threshold


def should_challenge(score: int, config: ScoringConfig = DEFAULT_SCORING_CONFIG) -> bool:
    return config.block_threshold < score <= config.challenge_threshold


def should_allow(score: int, config: ScoringConfig = DEFAULT_SCORING_CONFIG) -> bool:
    return score > config.challenge_threshold


def _critical_flags(inp: ScoringInput) -> list[str]:
    flags = []
    if inp.user_agent is not None and inp.user_agent.is_crawler:
        flags.append(f"crawler_ua:{inp.user_agent.detected_crawler or 'unknown'}")
    if inp.fingerprint is not None and inp.fingerprint.is_headless:
        flags.append("headless_fingerprint")
    return flags


def _build_breakdown(inp: ScoringInput, config: ScoringConfig) -> dict[SignalKind, SignalContribution]:
    breakdown: dict[SignalKind, SignalContribution] = {}
    present = (
        (SignalKind.USER_AGENT, inp.user_agent, 1.0),
        (SignalKind.HEADERS, inp.headers, 1.0),
        (SignalKind.BEHAVIOR, inp.behavior, inp.behavior.confidence if inp.behavior else 1.0),
        (SignalKind.FINGERPRINT, inp.fingerprint, 1.0),
    )
    for signal, analysis, confidence in present:
        if analysis is None:
            continue
        breakdown[signal] = SignalContribution(signal, _clamp(analysis.score), config.weight(signal) * confidence)
    if inp.network_score is not None:
        breakdown[SignalKind.NETWORK] = SignalContribution(
            SignalKind.NETWORK, _clamp(inp.network_score), config.weight(SignalKind.NETWORK)
        )
    return breakdown


def _finish(
    breakdown: dict[SignalKind, SignalContribution],
    flags: tuple[str, ...],
    config: ScoringConfig,
) -> ScoringResult:
    total = sum(c.weight for c in breakdown.values())
    if total <= 0:
        score = config.neutral_score
        decision = Decision.CHALLENGE
        degraded = True
    else:
        score = _clamp(sum(c.score * c.weight for c in breakdown.values()) / total)
        decision = decision_for_score(score, config)
        degraded = False

    if decision == Decision.ALLOW and score < config.min_score:
        decision = Decision.CHALLENGE

    if flags and config.block_on_critical:
        decision = Decision.BLOCK

    return ScoringResult(
        final_score=score,
        decision=decision,
        breakdown=breakdown,
        critical_flags=flags,
        degraded=degraded,
    )


def calculate_progressive_score(
    inp: ScoringInput,
    config: ScoringConfig = DEFAULT_SCORING_CONFIG,
) -> ScoringResult:
    """Blend all present signals into a final score and decision"""
    return _finish(_build_breakdown(inp, config), tuple(_critical_flags(inp)), config)


def extend_score(
    prior: ScoringResult,
    inp: ScoringInput,
    config: ScoringConfig = DEFAULT_SCORING_CONFIG,
) -> ScoringResult:
    """Merge newly collected signals into an earlier result and re-blend"""
    breakdown = dict(prior.breakdown)
    breakdown.update(_build_breakdown(inp, config))
    flags = tuple(dict.fromkeys(prior.critical_flags + tuple(_critical_flags(inp))))
    return _finish(breakdown, flags, config)


def update_with_network_score(
    prior: ScoringResult,
    network_score: int,
    config: ScoringConfig = DEFAULT_SCORING_CONFIG,
) -> ScoringResult:
    """Add or replace the network entry and re-blend. Other entries carry over unchanged."""
    breakdown = dict(prior.breakdown)
    breakdown[SignalKind.NETWORK] = SignalContribution(
        SignalKind.NETWORK, _clamp(network_score), config.weight(SignalKind.NETWORK)
    )
    return _finish(breakdown, prior.critical_flags, config)


def get_quick_decision(
    user_agent: Optional[UserAgentAnalysis],
    headers: Optional[HeadersAnalysis],
    config: ScoringConfig = DEFAULT_SCORING_CONFIG,
) -> ScoringResult:
    """
    Decide from request-time signals only.

    Only clear cases are settled here: BLOCK at or below the block threshold
    (or on a critical signal), ALLOW at or above quick_allow_threshold and
    min_score.
    Everything else is a CHALLENGE so the full signals can be collected.
    """
    inp = ScoringInput(user_agent=user_agent, headers=headers)
    result = calculate_progressive_score(inp, config)
    if result.decision == Decision.BLOCK or result.degraded:
        return result
    if result.final_score >= max(config.quick_allow_threshold, config.min_score):
        decision = Decision.ALLOW
    else:
        decision = Decision.CHALLENGE
    return ScoringResult(
        final_score=result.final_score,
        decision=decision,
        breakdown=result.breakdown,
        critical_flags=result.critical_flags,
        degraded=result.degraded,
    )


# -- Evaluation state machine --

@dataclass(frozen=True)
class Unscored:
    pass


@dataclass(frozen=True)
class QuickScored:
    result: ScoringResult


@dataclass(frozen=True)
class ChallengeServed:
    quick: QuickScored
    token: str
    served_at: float


@dataclass(frozen=True)
class FullScored:
    result: ScoringResult


@dataclass(frozen=True)
class Decided:
    result: ScoringResult
    decision: Decision
    stage: str


EvaluationState = Union[Unscored, QuickScored, ChallengeServed, FullScored, Decided]


def _state_name(state) -> str:
    return type(state).__name__


def quick_score(state: EvaluationState, result: ScoringResult) -> QuickScored:
    if not isinstance(state, Unscored):
        raise InvalidTransition(_state_name(state), "quick score")
    return QuickScored(result)


def serve_challenge(state: EvaluationState, token: str, served_at: Optional[float] = None) -> ChallengeServed:
    if not isinstance(state, QuickScored) or state.result.decision != Decision.CHALLENGE:
        raise InvalidTransition(_state_name(state), "serve challenge")
    return ChallengeServed(quick=state, token=token, served_at=time.time() if served_at is None else served_at)


def full_score(state: EvaluationState, result: ScoringResult) -> FullScored:
    if not isinstance(state, ChallengeServed):
        raise InvalidTransition(_state_name(state), "full score")
    return FullScored(result)


def decide(state: EvaluationState) -> Decided:
    """Settle a quick BLOCK/ALLOW or a full score"""
    if isinstance(state, QuickScored) and state.result.decision != Decision.CHALLENGE:
        return Decided(state.result, state.result.decision, "quick")
    if isinstance(state, FullScored):
        return Decided(state.result, state.result.decision, "full")
    raise InvalidTransition(_state_name(state), "decide")


@dataclass(frozen=True)
class RouteConfig:
    target_url: Optional[str] = None
    challenge_url: Optional[str] = None
    block_url: Optional[str] = None
    fallback_url: str = "/"

    def url_for(self, decision: Decision) -> Optional[str]:
        return {
            Decision.ALLOW: self.target_url,
            Decision.CHALLENGE: self.challenge_url,
            Decision.BLOCK: self.block_url,
        }[decision]


def get_redirect_url(state: EvaluationState, routes: RouteConfig) -> str:
    """Destination for a settled evaluation. Raises ConfigurationError when unset."""
    if not isinstance(state, Decided):
        raise InvalidTransition(_state_name(state), "get redirect url")
    url = routes.url_for(state.decision)
    if not url or not url.strip():
        raise ConfigurationError(f"no redirect url configured for {state.decision.value}")
    return url.strip()
