"""
Error taxonomy for the gate.

Analyzer-side errors are downgraded to absent signals by the pipeline;
only ConfigurationError and InvalidTransition describe programming or
deployment mistakes.
"""
from enum import Enum


class SignalKind(Enum):
    """Scoring signals the gate knows about"""
    USER_AGENT = "user_agent"
    HEADERS = "headers"
    BEHAVIOR = "behavior"
    FINGERPRINT = "fingerprint"
    NETWORK = "network"


class GateError(Exception):
    """Base class for all gate errors"""


class SignalUnavailable(GateError):
    """An analyzer could not produce a score for its signal"""

    def __init__(self, signal: SignalKind, reason: str = ""):
        self.signal = signal
        self.reason = reason
        super().__init__(f"{signal.value} unavailable: {reason}" if reason else f"{signal.value} unavailable")


class MalformedInput(SignalUnavailable):
    """Client-submitted telemetry could not be parsed"""


class ConfigurationError(GateError):
    """Deployment configuration is missing or invalid"""


class InvalidTransition(GateError):
    """Evaluation state machine was driven through an illegal transition"""

    def __init__(self, current: str, action: str):
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} from state {current}")
