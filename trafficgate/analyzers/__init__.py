"""
Signal analyzers. Each takes raw request or client telemetry and returns an
immutable analysis with a 0-100 score (100 = human).
"""
from .behavior import (
    BehaviorAnalysis,
    BehaviorData,
    BehaviorTracker,
    MousePoint,
    analyze_behavior,
    create_behavior_tracker,
)
from .fingerprint import (
    FingerprintAnalysis,
    FingerprintInput,
    analyze_fingerprint,
    analyze_fingerprint_with_store,
)
from .headers import HeadersAnalysis, analyze_headers
from .network import NetworkAnalysis, analyze_network, is_datacenter_ip
from .user_agent import UserAgentAnalysis, analyze_user_agent

__all__ = [
    "BehaviorAnalysis",
    "BehaviorData",
    "BehaviorTracker",
    "MousePoint",
    "analyze_behavior",
    "create_behavior_tracker",
    "FingerprintAnalysis",
    "FingerprintInput",
    "analyze_fingerprint",
    "analyze_fingerprint_with_store",
    "HeadersAnalysis",
    "analyze_headers",
    "NetworkAnalysis",
    "analyze_network",
    "is_datacenter_ip",
    "UserAgentAnalysis",
    "analyze_user_agent",
]
