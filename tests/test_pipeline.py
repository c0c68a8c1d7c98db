"""
Tests for the two-phase gate pipeline
"""
import pytest
from trafficgate.analyzers.behavior import BehaviorData, BehaviorTracker, MousePoint
from trafficgate.errors import SignalKind
from trafficgate.hooks import (
    BEFORE_REDIRECT,
    ON_CHALLENGE_SERVED,
    ON_FINAL_DECISION,
    ON_QUICK_DECISION,
    ON_SIGNAL_ERROR,
    HookRunner,
)
from trafficgate.pipeline import GateConfig, GateEvaluator, GateOutcome, GateRequest
from trafficgate.scoring import Decision, RouteConfig, ScoringConfig

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
GOOGLEBOT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"

TARGET = "https://example.com/offer"
CHALLENGE = "https://example.com/verify"
BLOCKED = "https://example.com/blocked"

HUMAN_PATH = (
    (0, 0, 0), (10, 5, 16), (25, 3, 45), (30, 20, 70), (22, 35, 110),
    (40, 42, 128), (55, 30, 170), (60, 50, 190), (45, 60, 240), (70, 65, 262),
)

FINGERPRINT = {
    "canvasHash": "a1b2c3d4",
    "webglVendor": "Google Inc. (NVIDIA)",
    "webglRenderer": "ANGLE (NVIDIA, NVIDIA GeForce RTX 3060 Direct3D11 vs_5_0 ps_5_0, D3D11)",
    "screenResolution": "1920x1080",
    "timezone": "UTC",
    "timezoneOffset": 0,
    "plugins": ["PDF Viewer", "Chrome PDF Viewer"],
    "language": "en-US",
    "languages": ["en-US", "en"],
    "platform": "Win32",
    "userAgent": CHROME_UA,
}


def make_evaluator(routes: RouteConfig = None, **kwargs) -> GateEvaluator:
    config = GateConfig(routes=routes or RouteConfig(TARGET, CHALLENGE, BLOCKED), **kwargs)
    return GateEvaluator(config)


def full_browser_request(**extra) -> GateRequest:
    headers = {
        "User-Agent": CHROME_UA,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Accept-Encoding": "gzip, deflate, br",
    }
    headers.update(extra)
    return GateRequest(headers=headers, client_ip="8.8.8.8")


def sparse_request() -> GateRequest:
    # UA 100, headers 75 -> 89, just under the quick-allow threshold
    return GateRequest(headers={"User-Agent": CHROME_UA, "Accept": "text/html"}, client_ip="8.8.8.8")


def human_behavior() -> BehaviorData:
    return BehaviorData(
        mouse_path=tuple(MousePoint(x, y, t) for x, y, t in HUMAN_PATH),
        total_time_on_page_ms=4000,
        scroll_events=2,
        click_events=1,
    )


def robotic_behavior() -> BehaviorData:
    return BehaviorData(
        mouse_path=tuple(MousePoint(i * 10, i * 5, i * 16) for i in range(10)),
        total_time_on_page_ms=4000,
    )


class TestGateRequest:
    def test_case_insensitive_header(self):
        request = GateRequest(headers={"user-agent": "x", "CF-IPCountry": "de"})
        assert request.user_agent == "x"
        assert request.country == "DE"

    def test_unknown_country_codes(self):
        assert GateRequest(headers={"cf-ipcountry": "XX"}).country is None
        assert GateRequest(headers={"cf-ipcountry": "T1"}).country is None

    def test_remote_ip_prefers_forwarded(self):
        request = GateRequest(headers={"X-Forwarded-For": "198.51.100.7, 10.0.0.1"}, client_ip="10.0.0.2")
        assert request.remote_ip == "198.51.100.7"
        assert GateRequest(headers={}, client_ip="10.0.0.2").remote_ip == "10.0.0.2"


class TestGateOutcome:
    def test_response_body(self):
        outcome = GateOutcome(decision=Decision.ALLOW, score=78, stage="full", redirect_url=TARGET)
        assert outcome.to_response() == {"decision": "allow", "redirectUrl": TARGET, "score": 78}
        assert not outcome.is_interstitial

    def test_interstitial(self):
        outcome = GateOutcome(decision=Decision.CHALLENGE, score=50, stage="quick", token="tok")
        assert outcome.is_interstitial
        assert outcome.to_response()["token"] == "tok"

    def test_challenge_response_carries_delay(self):
        outcome = GateOutcome(decision=Decision.CHALLENGE, score=50, stage="full", redirect_url=CHALLENGE)
        assert outcome.to_response()["redirectDelayMs"] == 1500

    def test_block_response_has_no_delay(self):
        outcome = GateOutcome(decision=Decision.BLOCK, score=10, stage="full", redirect_url=BLOCKED)
        assert "redirectDelayMs" not in outcome.to_response()


class TestGateConfig:
    def test_invalid_window(self):
        from trafficgate.errors import ConfigurationError
        with pytest.raises(ConfigurationError):
            GateConfig(capture_window_ms=0)

    def test_from_settings(self):
        from config.settings import Settings
        s = Settings(
            gate_target_url=TARGET,
            gate_block_threshold=20,
            gate_blocked_countries="br, ru",
            gate_referer_denylist="spam.example.net",
            gate_allowed_countries="us, ca",
            gate_allowed_devices="Mobile",
            gate_require_fingerprint=True,
            gate_min_score=70,
        )
        config = GateConfig.from_settings(s)
        assert config.routes.target_url == TARGET
        assert config.scoring.block_threshold == 20
        assert config.blocked_countries == ("BR", "RU")
        assert "spam.example.net" in config.referer_denylist
        assert config.allowed_countries == ("US", "CA")
        assert config.allowed_devices == ("mobile",)
        assert config.require_fingerprint
        assert config.scoring.min_score == 70


class TestQuickPhase:
    @pytest.mark.asyncio
    async def test_crawler_blocked(self):
        evaluator = make_evaluator()
        outcome = await evaluator.evaluate_quick(GateRequest(headers={"User-Agent": GOOGLEBOT}))
        assert outcome.decision == Decision.BLOCK
        assert outcome.redirect_url == BLOCKED
        assert outcome.stage == "quick"
        assert outcome.token is None

    @pytest.mark.asyncio
    async def test_clear_browser_allowed(self):
        outcome = await make_evaluator().evaluate_quick(full_browser_request())
        assert outcome.decision == Decision.ALLOW
        assert outcome.redirect_url == TARGET
        assert outcome.score == 100

    @pytest.mark.asyncio
    async def test_uncertain_visitor_challenged(self):
        evaluator = make_evaluator()
        outcome = await evaluator.evaluate_quick(sparse_request())
        assert outcome.decision == Decision.CHALLENGE
        assert outcome.is_interstitial
        assert outcome.score == 89
        assert outcome.token in evaluator.cache

    @pytest.mark.asyncio
    async def test_analyzer_failure_is_absent_signal(self, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("analyzer crashed")

        monkeypatch.setattr("trafficgate.pipeline.analyze_headers", boom)
        evaluator = make_evaluator()
        errors = []

        async def on_error(event):
            errors.append(event)

        evaluator.hooks.register(ON_SIGNAL_ERROR, on_error)
        outcome = await evaluator.evaluate_quick(full_browser_request())
        # UA alone scores 100
        assert outcome.decision == Decision.ALLOW
        assert SignalKind.HEADERS not in outcome.result.breakdown
        assert errors[0]["signal"] == "headers"
        assert errors[0]["error_type"] == "RuntimeError"

    @pytest.mark.asyncio
    async def test_all_request_signals_failing_challenges(self, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("analyzer crashed")

        monkeypatch.setattr("trafficgate.pipeline.analyze_headers", boom)
        monkeypatch.setattr("trafficgate.pipeline.analyze_user_agent", boom)
        outcome = await make_evaluator().evaluate_quick(full_browser_request())
        assert outcome.decision == Decision.CHALLENGE
        assert outcome.result.degraded
        assert outcome.score == 45


class TestFullPhase:
    @pytest.mark.asyncio
    async def test_human_allowed(self):
        evaluator = make_evaluator()
        request = sparse_request()
        quick = await evaluator.evaluate_quick(request)
        outcome = await evaluator.evaluate_full(quick.token, human_behavior(), FINGERPRINT, request)
        assert outcome.decision == Decision.ALLOW
        assert outcome.redirect_url == TARGET
        assert outcome.stage == "full"
        assert set(outcome.result.breakdown) == set(SignalKind)

    @pytest.mark.asyncio
    async def test_behavior_payload_dict(self):
        evaluator = make_evaluator()
        request = sparse_request()
        quick = await evaluator.evaluate_quick(request)
        payload = {
            "mousePath": [{"x": x, "y": y, "t": t} for x, y, t in HUMAN_PATH],
            "dwellTimeMs": 4000,
            "scrollEvents": 1,
        }
        outcome = await evaluator.evaluate_full(quick.token, payload, FINGERPRINT, request)
        assert outcome.decision == Decision.ALLOW

    @pytest.mark.asyncio
    async def test_behavior_tracker_source(self):
        evaluator = make_evaluator()
        request = sparse_request()
        quick = await evaluator.evaluate_quick(request)
        tracker = BehaviorTracker(clock=lambda: 0.0)
        tracker.start()
        for x, y, t in HUMAN_PATH:
            tracker.record_mouse_move(x, y, t)
        outcome = await evaluator.evaluate_full(quick.token, tracker, FINGERPRINT, request)
        assert SignalKind.BEHAVIOR in outcome.result.breakdown

    @pytest.mark.asyncio
    async def test_headless_bot_blocked(self):
        evaluator = make_evaluator()
        request = sparse_request()
        quick = await evaluator.evaluate_quick(request)
        headless = dict(FINGERPRINT, webglVendor="Google Inc.", webglRenderer="Google SwiftShader")
        outcome = await evaluator.evaluate_full(quick.token, robotic_behavior(), headless, request)
        assert outcome.decision == Decision.BLOCK
        assert outcome.redirect_url == BLOCKED
        assert "headless_fingerprint" in outcome.result.critical_flags

    @pytest.mark.asyncio
    async def test_headless_bot_with_zone_directory_blocked(self):
        evaluator = make_evaluator()
        request = sparse_request()
        quick = await evaluator.evaluate_quick(request)
        headless = dict(FINGERPRINT, webglRenderer="Google SwiftShader", timezone="America")
        outcome = await evaluator.evaluate_full(quick.token, human_behavior(), headless, request)
        assert outcome.decision == Decision.BLOCK
        assert SignalKind.FINGERPRINT in outcome.result.breakdown
        assert "headless_fingerprint" in outcome.result.critical_flags

    @pytest.mark.asyncio
    async def test_replay_store_outage_keeps_fingerprint(self):
        class UnreachableStore:
            async def increment(self, key):
                raise ConnectionError("redis down")

            async def get(self, key):
                raise ConnectionError("redis down")

        evaluator = GateEvaluator(
            GateConfig(routes=RouteConfig(TARGET, CHALLENGE, BLOCKED)), store=UnreachableStore(),
        )
        request = sparse_request()
        quick = await evaluator.evaluate_quick(request)
        headless = dict(FINGERPRINT, webglVendor="Google Inc.", webglRenderer="Google SwiftShader")
        outcome = await evaluator.evaluate_full(quick.token, human_behavior(), headless, request)
        assert outcome.decision == Decision.BLOCK
        assert outcome.redirect_url == BLOCKED
        assert "headless_fingerprint" in outcome.result.critical_flags

    @pytest.mark.asyncio
    async def test_malformed_telemetry_is_absent(self):
        evaluator = make_evaluator()
        errors = []

        async def on_error(event):
            errors.append(event["signal"])

        evaluator.hooks.register(ON_SIGNAL_ERROR, on_error)
        request = sparse_request()
        quick = await evaluator.evaluate_quick(request)
        outcome = await evaluator.evaluate_full(quick.token, {"mousePath": "garbage"}, "not a dict", request)
        assert SignalKind.BEHAVIOR not in outcome.result.breakdown
        assert SignalKind.FINGERPRINT not in outcome.result.breakdown
        assert SignalKind.NETWORK in outcome.result.breakdown
        assert sorted(errors) == ["behavior", "fingerprint"]

    @pytest.mark.asyncio
    async def test_token_single_use(self):
        evaluator = make_evaluator()
        request = sparse_request()
        quick = await evaluator.evaluate_quick(request)
        await evaluator.evaluate_full(quick.token, human_behavior(), FINGERPRINT, request)
        again = await evaluator.evaluate_full(quick.token, human_behavior(), FINGERPRINT, request)
        assert again.is_interstitial
        assert again.token != quick.token

    @pytest.mark.asyncio
    async def test_unknown_token_for_crawler_blocks(self):
        outcome = await make_evaluator().evaluate_full(
            "bogus", None, None, GateRequest(headers={"User-Agent": GOOGLEBOT}),
        )
        assert outcome.decision == Decision.BLOCK
        assert outcome.redirect_url == BLOCKED

    @pytest.mark.asyncio
    async def test_unknown_token_for_clear_browser_rechallenges(self):
        outcome = await make_evaluator().evaluate_full("", None, None, full_browser_request())
        assert outcome.decision == Decision.CHALLENGE
        assert outcome.is_interstitial

    @pytest.mark.asyncio
    async def test_datacenter_ip_lowers_score(self):
        evaluator = make_evaluator()
        scores = []
        for ip in ("8.8.8.8", "52.1.2.3"):
            request = GateRequest(headers=dict(sparse_request().headers), client_ip=ip)
            quick = await evaluator.evaluate_quick(request)
            fingerprint = dict(FINGERPRINT, canvasHash=f"hash-{ip}")
            outcome = await evaluator.evaluate_full(quick.token, human_behavior(), fingerprint, request)
            scores.append(outcome.result.breakdown[SignalKind.NETWORK].score)
        assert scores == [100, 50]


class TestRouting:
    @pytest.mark.asyncio
    async def test_missing_target_falls_back_to_block_url(self):
        evaluator = make_evaluator(RouteConfig(block_url=BLOCKED))
        outcome = await evaluator.evaluate_quick(full_browser_request())
        assert outcome.decision == Decision.ALLOW
        assert outcome.redirect_url == BLOCKED

    @pytest.mark.asyncio
    async def test_nothing_configured_uses_fallback(self):
        evaluator = make_evaluator(RouteConfig(fallback_url="/landing"))
        outcome = await evaluator.evaluate_quick(full_browser_request())
        assert outcome.redirect_url == "/landing"

    @pytest.mark.asyncio
    async def test_before_redirect_hook_rewrites_url(self):
        evaluator = make_evaluator()

        async def rewrite(event):
            return dict(event, redirect_url=event["redirect_url"] + "?src=gate")

        evaluator.hooks.register(BEFORE_REDIRECT, rewrite)
        outcome = await evaluator.evaluate_quick(full_browser_request())
        assert outcome.redirect_url == TARGET + "?src=gate"

    @pytest.mark.asyncio
    async def test_lifecycle_hooks_fire(self):
        hooks = HookRunner()
        seen = []

        for name in (ON_QUICK_DECISION, ON_CHALLENGE_SERVED, ON_FINAL_DECISION):
            async def record(event, name=name):
                seen.append(name)
            hooks.register(name, record)

        evaluator = GateEvaluator(GateConfig(routes=RouteConfig(TARGET, CHALLENGE, BLOCKED)), hooks=hooks)
        request = sparse_request()
        quick = await evaluator.evaluate_quick(request)
        await evaluator.evaluate_full(quick.token, human_behavior(), FINGERPRINT, request)
        assert seen == [ON_QUICK_DECISION, ON_CHALLENGE_SERVED, ON_FINAL_DECISION]

    @pytest.mark.asyncio
    async def test_reconfigure(self):
        evaluator = make_evaluator()
        strict = ScoringConfig(block_threshold=95, challenge_threshold=98, quick_allow_threshold=100)
        evaluator.reconfigure(GateConfig(scoring=strict, routes=evaluator.config.routes))
        outcome = await evaluator.evaluate_quick(sparse_request())
        assert outcome.decision == Decision.BLOCK


class TestVisitorFilters:
    @pytest.mark.asyncio
    async def test_country_outside_allowlist_challenged(self):
        evaluator = make_evaluator(allowed_countries=("US",))
        outcome = await evaluator.evaluate_quick(full_browser_request(**{"CF-IPCountry": "BR"}))
        assert outcome.decision == Decision.CHALLENGE
        assert outcome.is_interstitial

    @pytest.mark.asyncio
    async def test_country_in_allowlist_allowed(self):
        evaluator = make_evaluator(allowed_countries=("US",))
        outcome = await evaluator.evaluate_quick(full_browser_request(**{"CF-IPCountry": "US"}))
        assert outcome.decision == Decision.ALLOW

    @pytest.mark.asyncio
    async def test_blocked_country_never_quick_allowed(self):
        evaluator = make_evaluator(blocked_countries=("BR",))
        outcome = await evaluator.evaluate_quick(full_browser_request(**{"CF-IPCountry": "BR"}))
        assert outcome.decision == Decision.CHALLENGE

    @pytest.mark.asyncio
    async def test_filtered_device_penalized_at_full_phase(self):
        evaluator = make_evaluator(allowed_devices=("mobile",))
        request = full_browser_request()
        quick = await evaluator.evaluate_quick(request)
        assert quick.decision == Decision.CHALLENGE
        outcome = await evaluator.evaluate_full(quick.token, human_behavior(), FINGERPRINT, request)
        assert outcome.result.breakdown[SignalKind.NETWORK].score == 85

    @pytest.mark.asyncio
    async def test_required_fingerprint_challenges_clear_browser(self):
        evaluator = make_evaluator(require_fingerprint=True)
        outcome = await evaluator.evaluate_quick(full_browser_request())
        assert outcome.decision == Decision.CHALLENGE

    @pytest.mark.asyncio
    async def test_missing_required_fingerprint_blocked(self):
        evaluator = make_evaluator(require_fingerprint=True)
        request = full_browser_request()
        quick = await evaluator.evaluate_quick(request)
        outcome = await evaluator.evaluate_full(quick.token, human_behavior(), None, request)
        assert outcome.decision == Decision.BLOCK
        assert outcome.redirect_url == BLOCKED
        assert "fingerprint_missing" in outcome.result.critical_flags

    @pytest.mark.asyncio
    async def test_malformed_required_fingerprint_blocked(self):
        evaluator = make_evaluator(require_fingerprint=True)
        request = full_browser_request()
        quick = await evaluator.evaluate_quick(request)
        outcome = await evaluator.evaluate_full(quick.token, human_behavior(), {"timezoneOffset": "abc"}, request)
        assert outcome.decision == Decision.BLOCK

    @pytest.mark.asyncio
    async def test_fingerprint_present_when_required(self):
        evaluator = make_evaluator(require_fingerprint=True)
        request = sparse_request()
        quick = await evaluator.evaluate_quick(request)
        outcome = await evaluator.evaluate_full(quick.token, human_behavior(), FINGERPRINT, request)
        assert outcome.decision == Decision.ALLOW
        assert "fingerprint_missing" not in outcome.result.critical_flags

    @pytest.mark.asyncio
    async def test_min_score_downgrades_full_allow(self):
        evaluator = make_evaluator(scoring=ScoringConfig(min_score=100))
        # a clear browser scores exactly 100
        assert (await evaluator.evaluate_quick(full_browser_request())).decision == Decision.ALLOW

        request = sparse_request()
        quick = await evaluator.evaluate_quick(request)
        outcome = await evaluator.evaluate_full(quick.token, human_behavior(), FINGERPRINT, request)
        assert outcome.score < 100
        assert outcome.decision == Decision.CHALLENGE
        assert outcome.redirect_url == CHALLENGE
        assert "redirectDelayMs" in outcome.to_response()
