"""
trafficgate - Visitor classification and routing

[Request] -> [UA + Headers] -> quick decision -> [Behavior + Fingerprint] -> [Network] -> redirect
"""
# Analyzers
from .analyzers import (
    UserAgentAnalysis, analyze_user_agent,
    HeadersAnalysis, analyze_headers,
    BehaviorData, BehaviorAnalysis, BehaviorTracker, MousePoint,
    analyze_behavior, create_behavior_tracker,
    FingerprintInput, FingerprintAnalysis,
    analyze_fingerprint, analyze_fingerprint_with_store,
    NetworkAnalysis, analyze_network,
)

# Scoring
from .scoring import (
    Decision, ScoringConfig, ScoringInput, ScoringResult, SignalContribution,
    SCORING_WEIGHTS, DECISION_THRESHOLDS,
    calculate_progressive_score, update_with_network_score, get_quick_decision,
    should_block, should_challenge, should_allow, decision_for_score,
    Unscored, QuickScored, ChallengeServed, FullScored, Decided,
    RouteConfig, get_redirect_url,
)

# Pipeline
from .pipeline import GateEvaluator, GateConfig, GateRequest, GateOutcome
from .replay_store import HashCounter, InMemoryHashCounter, RedisHashCounter
from .challenge_cache import ChallengeCache

# Errors
from .errors import (
    SignalKind, GateError, SignalUnavailable, MalformedInput,
    ConfigurationError, InvalidTransition,
)

# Infrastructure
from .hooks import HookRunner, HookRegistration
from .config_reload import ConfigReloader, ReloadPlan
from .logging_config import configure_logging

__all__ = [
    # Analyzers
    "UserAgentAnalysis",
    "analyze_user_agent",
    "HeadersAnalysis",
    "analyze_headers",
    "BehaviorData",
    "BehaviorAnalysis",
    "BehaviorTracker",
    "MousePoint",
    "analyze_behavior",
    "create_behavior_tracker",
    "FingerprintInput",
    "FingerprintAnalysis",
    "analyze_fingerprint",
    "analyze_fingerprint_with_store",
    "NetworkAnalysis",
    "analyze_network",
    # Scoring
    "Decision",
    "ScoringConfig",
    "ScoringInput",
    "ScoringResult",
    "SignalContribution",
    "SCORING_WEIGHTS",
    "DECISION_THRESHOLDS",
    "calculate_progressive_score",
    "update_with_network_score",
    "get_quick_decision",
    "should_block",
    "should_challenge",
    "should_allow",
    "decision_for_score",
    "Unscored",
    "QuickScored",
    "ChallengeServed",
    "FullScored",
    "Decided",
    "RouteConfig",
    "get_redirect_url",
    # Pipeline
    "GateEvaluator",
    "GateConfig",
    "GateRequest",
    "GateOutcome",
    "HashCounter",
    "InMemoryHashCounter",
    "RedisHashCounter",
    "ChallengeCache",
    # Errors
    "SignalKind",
    "GateError",
    "SignalUnavailable",
    "MalformedInput",
    "ConfigurationError",
    "InvalidTransition",
    # Infrastructure
    "HookRunner",
    "HookRegistration",
    "ConfigReloader",
    "ReloadPlan",
    "configure_logging",
]
