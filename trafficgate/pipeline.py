"""
Gate Pipeline - Runs one visitor through the two-phase evaluation.

Phase 1 (request time): User-Agent and headers give a quick decision.
Obvious bots and obvious humans are settled here; everyone else gets a
challenge token.
Phase 2 (telemetry): behavior and fingerprint signals are merged into the
quick score, the network score is applied, and the final decision is
mapped to a destination.

Analyzer failures never escape: they are logged, reported to the
on_signal_error hook and the signal is treated as absent.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Union

from loguru import logger

from .analyzers.behavior import BehaviorAnalysis, BehaviorData, BehaviorTracker, analyze_behavior
from .analyzers.fingerprint import FingerprintAnalysis, FingerprintInput, analyze_fingerprint_with_store
from .analyzers.headers import DEFAULT_REFERER_DENYLIST, HeadersAnalysis, analyze_headers
from .analyzers.network import NetworkAnalysis, analyze_network
from .analyzers.user_agent import UserAgentAnalysis, analyze_user_agent
from .challenge_cache import ChallengeCache
from .errors import ConfigurationError, SignalKind
from .hooks import (
    BEFORE_REDIRECT,
    ON_CHALLENGE_SERVED,
    ON_FINAL_DECISION,
    ON_QUICK_DECISION,
    ON_SIGNAL_ERROR,
    HookRunner,
)
from .logging_config import log_decision, log_request, log_signal_error
from .replay_store import HashCounter, InMemoryHashCounter
from .scoring import (
    Decided,
    Decision,
    RouteConfig,
    ScoringConfig,
    ScoringInput,
    ScoringResult,
    Unscored,
    decide,
    extend_score,
    full_score,
    get_quick_decision,
    get_challenge_delay,
    get_redirect_url,
    quick_score,
    serve_challenge,
    update_with_network_score,
)

COUNTRY_HEADERS = ("cf-ipcountry", "x-vercel-ip-country")


@dataclass(frozen=True)
class GateConfig:
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    routes: RouteConfig = field(default_factory=RouteConfig)
    capture_window_ms: int = 5000
    replay_limit: int = 8
    challenge_ttl_seconds: int = 300
    blocked_countries: tuple[str, ...] = ()
    referer_denylist: tuple[str, ...] = DEFAULT_REFERER_DENYLIST
    allowed_countries: tuple[str, ...] = ()
    allowed_devices: tuple[str, ...] = ()
    require_fingerprint: bool = False

    def __post_init__(self):
        if self.capture_window_ms <= 0:
            raise ConfigurationError(f"capture window must be positive, got {self.capture_window_ms}")
        if self.replay_limit < 0:
            raise ConfigurationError(f"replay limit must be >= 0, got {self.replay_limit}")
        if self.challenge_ttl_seconds <= 0:
            raise ConfigurationError(f"challenge ttl must be positive, got {self.challenge_ttl_seconds}")

    @classmethod
    def from_settings(cls, s) -> "GateConfig":
        """Build from a config.settings.Settings instance"""
        scoring = ScoringConfig(
            weights={
                SignalKind.USER_AGENT: s.gate_weight_user_agent,
                SignalKind.HEADERS: s.gate_weight_headers,
                SignalKind.BEHAVIOR: s.gate_weight_behavior,
                SignalKind.FINGERPRINT: s.gate_weight_fingerprint,
                SignalKind.NETWORK: s.gate_weight_network,
            },
            block_threshold=s.gate_block_threshold,
            challenge_threshold=s.gate_challenge_threshold,
            quick_allow_threshold=s.gate_quick_allow_threshold,
            block_on_critical=s.gate_block_on_critical,
            min_score=s.gate_min_score,
        )
        routes = RouteConfig(
            target_url=s.gate_target_url or None,
            challenge_url=s.gate_challenge_url or None,
            block_url=s.gate_block_url or None,
            fallback_url=s.gate_fallback_url or "/",
        )
        return cls(
            scoring=scoring,
            routes=routes,
            capture_window_ms=s.gate_capture_window_ms,
            replay_limit=s.gate_replay_limit,
            challenge_ttl_seconds=s.gate_challenge_ttl_seconds,
            blocked_countries=tuple(s.blocked_countries),
            referer_denylist=DEFAULT_REFERER_DENYLIST + tuple(s.referer_denylist),
            allowed_countries=tuple(s.allowed_countries),
            allowed_devices=tuple(s.allowed_devices),
            require_fingerprint=s.gate_require_fingerprint,
        )


@dataclass(frozen=True)
class GateRequest:
    """The parts of an HTTP request the gate looks at"""
    headers: Mapping[str, str]
    client_ip: Optional[str] = None
    path: str = "/go"
    method: str = "GET"

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return None

    @property
    def user_agent(self) -> str:
        return self.header("user-agent") or ""

    @property
    def country(self) -> Optional[str]:
        for name in COUNTRY_HEADERS:
            value = self.header(name)
            if value and value.strip().upper() not in ("XX", "T1"):
                return value.strip().upper()
        return None

    @property
    def remote_ip(self) -> Optional[str]:
        """First X-Forwarded-For hop, else the socket peer"""
        forwarded = self.header("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        return self.client_ip


@dataclass(frozen=True)
class GateOutcome:
    decision: Decision
    score: int
    stage: str
    redirect_url: Optional[str] = None
    token: Optional[str] = None
    result: Optional[ScoringResult] = None

    @property
    def is_interstitial(self) -> bool:
        """Challenge awaiting client telemetry"""
        return self.token is not None and self.redirect_url is None

    def to_response(self) -> dict[str, Any]:
        body = {
            "decision": self.decision.value,
            "redirectUrl": self.redirect_url,
            "score": self.score,
        }
        if self.token:
            body["token"] = self.token
        if self.decision == Decision.CHALLENGE:
            body["redirectDelayMs"] = get_challenge_delay(self.score)
        return body


BehaviorSource = Union[BehaviorData, BehaviorTracker, Mapping[str, Any], None]
FingerprintSource = Union[FingerprintInput, Mapping[str, Any], None]


class GateEvaluator:
    """
    Evaluates visitors and routes them.

    Usage:
        evaluator = GateEvaluator(GateConfig.from_settings(settings))
        outcome = await evaluator.evaluate_quick(request)
        if outcome.is_interstitial:
            outcome = await evaluator.evaluate_full(outcome.token, payload, payload["fingerprint"], request)
    """

    def __init__(
        self,
        config: Optional[GateConfig] = None,
        store: Optional[HashCounter] = None,
        hooks: Optional[HookRunner] = None,
        cache: Optional[ChallengeCache] = None,
    ):
        self.config = config or GateConfig()
        self.store = store or InMemoryHashCounter()
        self.hooks = hooks or HookRunner()
        self.cache = cache or ChallengeCache(ttl_seconds=self.config.challenge_ttl_seconds)

    def reconfigure(self, config: GateConfig) -> None:
        """Swap configuration. Pending challenges keep their quick scores and expiry."""
        self.config = config
        self.cache.ttl_seconds = config.challenge_ttl_seconds
        logger.info("Gate configuration reloaded")

    # -- Signals --

    def _run_signal(self, signal: SignalKind, fn: Callable, *args, errors: list, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            errors.append((signal, e))
            log_signal_error(signal.value, str(e), error_type=type(e).__name__)
            return None

    async def _report_errors(self, errors: list, request: GateRequest) -> None:
        for signal, error in errors:
            await self.hooks.run_void(ON_SIGNAL_ERROR, {
                "signal": signal.value,
                "error": str(error),
                "error_type": type(error).__name__,
                "path": request.path,
            })

    def _request_signals(
        self, request: GateRequest, errors: list,
    ) -> tuple[Optional[UserAgentAnalysis], Optional[HeadersAnalysis]]:
        ua = self._run_signal(SignalKind.USER_AGENT, analyze_user_agent, request.user_agent, errors=errors)
        headers = self._run_signal(
            SignalKind.HEADERS, analyze_headers, request.headers,
            user_agent=request.user_agent,
            referer_denylist=self.config.referer_denylist,
            errors=errors,
        )
        return ua, headers

    def _network_signal(self, request: GateRequest, ua: Optional[UserAgentAnalysis]) -> NetworkAnalysis:
        config = self.config
        return analyze_network(
            request.remote_ip,
            request.country,
            config.blocked_countries,
            allowed_countries=config.allowed_countries,
            device_type=ua.device_type if ua is not None else None,
            allowed_devices=config.allowed_devices,
        )

    async def _behavior_signal(self, source: BehaviorSource, errors: list) -> Optional[BehaviorAnalysis]:
        if source is None:
            return None
        try:
            if isinstance(source, BehaviorTracker):
                data = await source.wait_ready(timeout=self.config.capture_window_ms / 1000)
            elif isinstance(source, BehaviorData):
                data = source
            else:
                data = BehaviorData.from_payload(dict(source))
            return analyze_behavior(data)
        except Exception as e:
            errors.append((SignalKind.BEHAVIOR, e))
            log_signal_error(SignalKind.BEHAVIOR.value, str(e), error_type=type(e).__name__)
            return None

    async def _fingerprint_signal(self, source: FingerprintSource, errors: list) -> Optional[FingerprintAnalysis]:
        if source is None:
            return None
        try:
            fp = source if isinstance(source, FingerprintInput) else FingerprintInput.from_dict(dict(source))
            return await analyze_fingerprint_with_store(fp, self.store, replay_limit=self.config.replay_limit)
        except Exception as e:
            errors.append((SignalKind.FINGERPRINT, e))
            log_signal_error(SignalKind.FINGERPRINT.value, str(e), error_type=type(e).__name__)
            return None

    # -- Phases --

    def _needs_telemetry(self, request: GateRequest, ua: Optional[UserAgentAnalysis]) -> bool:
        """A visitor outside the filters is never allowed on request signals alone"""
        if self.config.require_fingerprint:
            return True
        return not self._network_signal(request, ua).passes_filters

    async def evaluate_quick(self, request: GateRequest) -> GateOutcome:
        """Request-time evaluation. Returns a redirect or a challenge token."""
        log_request(request.path, request.method, ip=request.remote_ip)
        errors: list = []
        ua, headers = self._request_signals(request, errors)
        await self._report_errors(errors, request)

        result = get_quick_decision(ua, headers, self.config.scoring)
        if result.decision == Decision.ALLOW and self._needs_telemetry(request, ua):
            result = dataclasses.replace(result, decision=Decision.CHALLENGE)
        state = quick_score(Unscored(), result)
        log_decision("quick", result.decision.value, result.final_score,
                     critical=list(result.critical_flags), degraded=result.degraded)
        await self.hooks.run_void(ON_QUICK_DECISION, {
            "decision": result.decision.value,
            "score": result.final_score,
            "user_agent": request.user_agent,
            "ip": request.remote_ip,
            "critical_flags": list(result.critical_flags),
        })

        if result.decision == Decision.CHALLENGE:
            return await self._serve(state.result, request)
        return await self._finalize(decide(state), request)

    async def evaluate_full(
        self,
        token: str,
        behavior: BehaviorSource,
        fingerprint: FingerprintSource,
        request: GateRequest,
    ) -> GateOutcome:
        """Telemetry evaluation for a pending challenge"""
        log_request(request.path, request.method, ip=request.remote_ip)
        served = self.cache.pop(token) if token else None
        if served is None:
            logger.info("Unknown or expired challenge token, re-evaluating from headers")
            return await self._reissue(request)

        errors: list = []
        behavior_analysis = await self._behavior_signal(behavior, errors)
        fingerprint_analysis = await self._fingerprint_signal(fingerprint, errors)
        await self._report_errors(errors, request)

        scoring = self.config.scoring
        result = extend_score(
            served.quick.result,
            ScoringInput(behavior=behavior_analysis, fingerprint=fingerprint_analysis),
            scoring,
        )
        ua = self._run_signal(SignalKind.USER_AGENT, analyze_user_agent, request.user_agent, errors=[])
        network = self._network_signal(request, ua)
        result = update_with_network_score(result, network.score, scoring)
        if fingerprint_analysis is None and self.config.require_fingerprint:
            result = dataclasses.replace(
                result,
                decision=Decision.BLOCK,
                critical_flags=result.critical_flags + ("fingerprint_missing",),
            )

        state = full_score(served, result)
        log_decision("full", result.decision.value, result.final_score,
                     network_issues=list(network.issues), critical=list(result.critical_flags))
        return await self._finalize(decide(state), request)

    async def _serve(self, result: ScoringResult, request: GateRequest) -> GateOutcome:
        served = serve_challenge(quick_score(Unscored(), result), ChallengeCache.new_token())
        self.cache.put(served)
        await self.hooks.run_void(ON_CHALLENGE_SERVED, {
            "token": served.token,
            "score": result.final_score,
            "ip": request.remote_ip,
        })
        return GateOutcome(
            decision=Decision.CHALLENGE,
            score=result.final_score,
            stage="quick",
            token=served.token,
            result=result,
        )

    async def _reissue(self, request: GateRequest) -> GateOutcome:
        """Fresh challenge from request signals. Critical signals still block."""
        errors: list = []
        ua, headers = self._request_signals(request, errors)
        await self._report_errors(errors, request)
        result = get_quick_decision(ua, headers, self.config.scoring)
        if result.decision == Decision.BLOCK:
            return await self._finalize(decide(quick_score(Unscored(), result)), request)
        return await self._serve(dataclasses.replace(result, decision=Decision.CHALLENGE), request)

    def resolve_url(self, state: Decided) -> str:
        """Mapped destination, falling back to the block url and then the fallback url"""
        try:
            return get_redirect_url(state, self.config.routes)
        except ConfigurationError as e:
            routes = self.config.routes
            fallback = routes.block_url or routes.fallback_url or "/"
            logger.warning(f"{e}; falling back to {fallback}")
            return fallback

    async def _finalize(self, state: Decided, request: GateRequest) -> GateOutcome:
        payload = {
            "decision": state.decision.value,
            "redirect_url": self.resolve_url(state),
            "score": state.result.final_score,
            "stage": state.stage,
            "ip": request.remote_ip,
        }
        payload = await self.hooks.run_modifying(BEFORE_REDIRECT, payload)
        await self.hooks.run_void(ON_FINAL_DECISION, dict(payload, signals=state.result.summary()["signals"]))
        return GateOutcome(
            decision=state.decision,
            score=state.result.final_score,
            stage=state.stage,
            redirect_url=payload.get("redirect_url") or self.resolve_url(state),
            result=state.result,
        )
