"""
Tests for Fingerprint Analyzer
"""
import dataclasses

import pytest
from trafficgate.analyzers.fingerprint import (
    FingerprintInput,
    analyze_fingerprint,
    analyze_fingerprint_with_store,
    get_master_fingerprint_hash,
    is_legitimate_fingerprint,
    is_headless_fingerprint,
    is_spoofed_fingerprint,
    get_fingerprint_score,
    HEADLESS_SCORE_CAP,
)
from trafficgate.errors import MalformedInput, SignalKind
from trafficgate.replay_store import InMemoryHashCounter

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

REAL_PAYLOAD = {
    "canvasHash": "a1b2c3d4",
    "webglVendor": "Google Inc. (NVIDIA)",
    "webglRenderer": "ANGLE (NVIDIA, NVIDIA GeForce RTX 3060 Direct3D11 vs_5_0 ps_5_0, D3D11)",
    "audioHash": "124.04347527516074",
    "screenResolution": "1920x1080",
    "timezone": "UTC",
    "timezoneOffset": 0,
    "plugins": ["PDF Viewer", "Chrome PDF Viewer"],
    "language": "en-US",
    "languages": ["en-US", "en"],
    "platform": "Win32",
    "userAgent": CHROME_UA,
}


def real_fp(**changes) -> FingerprintInput:
    return dataclasses.replace(FingerprintInput.from_dict(REAL_PAYLOAD), **changes)


class TestLegitimate:
    def test_real_browser(self):
        analysis = analyze_fingerprint(real_fp())
        assert analysis.is_legitimate
        assert not analysis.is_headless
        assert not analysis.is_spoofed
        assert analysis.score == 100
        assert "hardware_webgl" in analysis.positive_signals

    def test_helpers(self):
        fp = real_fp()
        assert is_legitimate_fingerprint(fp)
        assert not is_headless_fingerprint(fp)
        assert not is_spoofed_fingerprint(fp)
        assert get_fingerprint_score(fp) == 100

    def test_matching_timezone_offset(self):
        # New York is UTC-5 in January, so getTimezoneOffset() reports 300
        assert not is_spoofed_fingerprint(real_fp(timezone="America/New_York", timezone_offset=300))


class TestHeadless:
    def test_swiftshader(self):
        analysis = analyze_fingerprint(real_fp(webgl_vendor="Google Inc.", webgl_renderer="Google SwiftShader"))
        assert analysis.is_headless
        assert not analysis.is_legitimate
        assert analysis.score <= HEADLESS_SCORE_CAP

    def test_llvmpipe(self):
        assert is_headless_fingerprint(real_fp(webgl_renderer="llvmpipe (LLVM 15.0.7, 256 bits)"))

    def test_default_headless_profile(self):
        assert is_headless_fingerprint(real_fp(screen_resolution="800x600", plugins=()))


class TestSpoofed:
    def test_spoofed_canvas(self):
        analysis = analyze_fingerprint(real_fp(canvas_hash="00000000"))
        assert analysis.is_spoofed
        assert analysis.score == 60

    def test_canvas_noise(self):
        assert is_spoofed_fingerprint(real_fp(canvas_noise=True))

    def test_timezone_offset_mismatch(self):
        analysis = analyze_fingerprint(real_fp(timezone="America/New_York", timezone_offset=-300))
        assert "timezone_offset_mismatch" in analysis.issues

    def test_platform_mismatch(self):
        analysis = analyze_fingerprint(real_fp(platform="MacIntel"))
        assert "platform_mismatch" in analysis.issues
        assert not analysis.is_legitimate


class TestPenalties:
    def test_no_webgl(self):
        analysis = analyze_fingerprint(real_fp(webgl_vendor="", webgl_renderer=""))
        assert "no_webgl" in analysis.issues
        assert analysis.score == 80

    @pytest.mark.parametrize("resolution", ["0x0", "garbage", "20000x10"])
    def test_suspicious_resolution(self, resolution):
        assert get_fingerprint_score(real_fp(screen_resolution=resolution)) == 80

    def test_no_plugins_on_desktop(self):
        analysis = analyze_fingerprint(real_fp(plugins=()))
        assert "no_plugins_desktop" in analysis.issues
        assert analysis.score == 90

    def test_language_mismatch(self):
        analysis = analyze_fingerprint(real_fp(language="ja-JP", languages=("en-US", "en")))
        assert "timezone_language_mismatch" in analysis.issues
        assert analysis.score == 90

    def test_unknown_timezone(self):
        assert "timezone_language_mismatch" in analyze_fingerprint(real_fp(timezone="Mars/Olympus")).issues

    @pytest.mark.parametrize("zone", ["America", "Europe", "Etc"])
    def test_zone_directory_is_unknown_timezone(self, zone):
        analysis = analyze_fingerprint(real_fp(
            webgl_vendor="Google Inc.", webgl_renderer="Google SwiftShader", timezone=zone, timezone_offset=0,
        ))
        assert analysis.is_headless
        assert "timezone_language_mismatch" in analysis.issues
        assert "timezone_offset_mismatch" not in analysis.issues


class TestReplay:
    def test_within_limit(self):
        analysis = analyze_fingerprint(real_fp(), seen_count=8, replay_limit=8)
        assert not analysis.is_replayed
        assert analysis.is_legitimate

    def test_over_limit(self):
        analysis = analyze_fingerprint(real_fp(), seen_count=9, replay_limit=8)
        assert analysis.is_replayed
        assert not analysis.is_legitimate
        assert analysis.score == 70

    @pytest.mark.asyncio
    async def test_store_counts_sightings(self):
        store = InMemoryHashCounter()
        fp = real_fp()
        results = [await analyze_fingerprint_with_store(fp, store, replay_limit=2) for _ in range(3)]
        assert [r.seen_count for r in results] == [1, 2, 3]
        assert [r.is_replayed for r in results] == [False, False, True]
        assert await store.get(get_master_fingerprint_hash(fp)) == 3


class TestMasterHash:
    def test_stable_across_formatting(self):
        a = FingerprintInput.from_dict({"canvasHash": "ABC ", "plugins": ["b", "a"], "timezone": "UTC"})
        b = FingerprintInput.from_dict({"plugins": ["A", "B"], "canvasHash": " abc", "timezone": "utc"})
        assert get_master_fingerprint_hash(a) == get_master_fingerprint_hash(b)

    def test_differs_on_component(self):
        assert get_master_fingerprint_hash(real_fp()) != get_master_fingerprint_hash(real_fp(canvas_hash="ffee0011"))

    def test_is_sha256_hex(self):
        digest = get_master_fingerprint_hash(real_fp())
        assert len(digest) == 64
        int(digest, 16)

    def test_analysis_carries_hash(self):
        fp = real_fp()
        assert analyze_fingerprint(fp).master_hash == get_master_fingerprint_hash(fp)


class TestFromDict:
    def test_camel_case_keys(self):
        fp = FingerprintInput.from_dict(REAL_PAYLOAD)
        assert fp.webgl_vendor == "Google Inc. (NVIDIA)"
        assert fp.plugins == ("PDF Viewer", "Chrome PDF Viewer")
        assert fp.timezone_offset == 0

    def test_unknown_keys_ignored(self):
        fp = FingerprintInput.from_dict({"somethingElse": 1, "platform": "Win32"})
        assert fp.platform == "Win32"

    @pytest.mark.parametrize("payload", [
        "not a dict",
        {"plugins": "PDF Viewer"},
        {"timezoneOffset": "abc"},
        {"deviceMemory": "lots"},
    ])
    def test_malformed(self, payload):
        with pytest.raises(MalformedInput) as exc:
            FingerprintInput.from_dict(payload)
        assert exc.value.signal == SignalKind.FINGERPRINT


class UnreachableStore:
    async def increment(self, key):
        raise ConnectionError("redis down")

    async def get(self, key):
        raise ConnectionError("redis down")


class TestStoreOutage:
    @pytest.mark.asyncio
    async def test_analysis_survives_store_error(self):
        analysis = await analyze_fingerprint_with_store(real_fp(), UnreachableStore())
        assert analysis.seen_count == 0
        assert not analysis.is_replayed
        assert analysis.score == 100

    @pytest.mark.asyncio
    async def test_headless_still_detected(self):
        fp = real_fp(webgl_vendor="Google Inc.", webgl_renderer="Google SwiftShader")
        analysis = await analyze_fingerprint_with_store(fp, UnreachableStore())
        assert analysis.is_headless
