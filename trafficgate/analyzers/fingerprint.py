"""
Fingerprint Analyzer - Scores the browser fingerprint reported by the interstitial.

Detects software/headless WebGL renderers, spoofed or noised canvas and audio
readings, timezone and platform contradictions, and fingerprints replayed
across many sessions.
"""
import hashlib
import json
from dataclasses import dataclass, fields
from datetime import datetime, timezone as dt_timezone
from typing import TYPE_CHECKING, Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..errors import MalformedInput, SignalKind
from ..logging_config import log_signal_error

if TYPE_CHECKING:
    from ..replay_store import HashCounter

HEADLESS_WEBGL_SIGNATURES = (
    "swiftshader",
    "llvmpipe",
    "mesa offscreen",
    "basic render driver",
    "software rasterizer",
)

VM_WEBGL_SIGNATURES = ("svga3d", "virtualbox", "virtio", "parallels", "qemu", "hyper-v")

HEADLESS_DEFAULT_RESOLUTIONS = frozenset({"800x600"})
SUSPICIOUS_RESOLUTIONS = frozenset({"0x0", "1x1", "100x100", "320x240", "9999x9999"})
SPOOFED_CANVAS_HASHES = frozenset({"0", "ffffffff", "00000000", "undefined", "null", "error"})

# navigator.platform prefix -> UA substrings that confirm it
_PLATFORM_UA_TOKENS = {
    "win": ("windows",),
    "mac": ("macintosh", "mac os x", "iphone", "ipad"),
    "linux": ("linux", "x11", "android", "cros"),
    "iphone": ("iphone",),
    "ipad": ("ipad", "macintosh"),
}

DEFAULT_REPLAY_LIMIT = 8
HEADLESS_SCORE_CAP = 5
SPOOFED_PENALTY = 40
REPLAYED_PENALTY = 30
NO_WEBGL_PENALTY = 20
SUSPICIOUS_RESOLUTION_PENALTY = 20
NO_PLUGINS_PENALTY = 10
LOCALE_MISMATCH_PENALTY = 10

# payload key -> field name
_PAYLOAD_KEYS = {
    "canvasHash": "canvas_hash",
    "webglVendor": "webgl_vendor",
    "webglRenderer": "webgl_renderer",
    "audioHash": "audio_hash",
    "screenResolution": "screen_resolution",
    "timezone": "timezone",
    "timezoneOffset": "timezone_offset",
    "plugins": "plugins",
    "language": "language",
    "languages": "languages",
    "platform": "platform",
    "userAgent": "user_agent",
    "hardwareConcurrency": "hardware_concurrency",
    "deviceMemory": "device_memory",
    "colorDepth": "color_depth",
    "maxTouchPoints": "max_touch_points",
    "canvasNoise": "canvas_noise",
    "audioNoise": "audio_noise",
}


@dataclass(frozen=True)
class FingerprintInput:
    canvas_hash: str = ""
    webgl_vendor: str = ""
    webgl_renderer: str = ""
    audio_hash: str = ""
    screen_resolution: str = ""
    timezone: str = ""
    plugins: tuple[str, ...] = ()
    timezone_offset: Optional[int] = None  # minutes, Date.getTimezoneOffset() convention
    language: str = ""
    languages: tuple[str, ...] = ()
    platform: str = ""
    user_agent: str = ""
    hardware_concurrency: Optional[int] = None
    device_memory: Optional[float] = None
    color_depth: Optional[int] = None
    max_touch_points: Optional[int] = None
    canvas_noise: bool = False
    audio_noise: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> "FingerprintInput":
        """Accept camelCase payload keys or field names. Raises MalformedInput."""
        if not isinstance(data, dict):
            raise MalformedInput(SignalKind.FINGERPRINT, "fingerprint must be an object")
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            name = _PAYLOAD_KEYS.get(key, key)
            if name in known and value is not None:
                kwargs[name] = value
        try:
            for name in ("plugins", "languages"):
                if name in kwargs:
                    if isinstance(kwargs[name], str):
                        raise TypeError(f"{name} must be a list")
                    kwargs[name] = tuple(str(v) for v in kwargs[name])
            for name in ("timezone_offset", "hardware_concurrency", "color_depth", "max_touch_points"):
                if name in kwargs:
                    kwargs[name] = int(kwargs[name])
            if "device_memory" in kwargs:
                kwargs["device_memory"] = float(kwargs["device_memory"])
            for name in ("canvas_noise", "audio_noise"):
                if name in kwargs:
                    kwargs[name] = bool(kwargs[name])
            for name in ("canvas_hash", "webgl_vendor", "webgl_renderer", "audio_hash",
                         "screen_resolution", "timezone", "language", "platform", "user_agent"):
                if name in kwargs:
                    kwargs[name] = str(kwargs[name])
        except (TypeError, ValueError) as e:
            raise MalformedInput(SignalKind.FINGERPRINT, str(e)) from e
        return cls(**kwargs)


@dataclass(frozen=True)
class FingerprintAnalysis:
    is_legitimate: bool
    is_headless: bool
    is_spoofed: bool
    master_hash: str
    score: int
    is_replayed: bool = False
    seen_count: int = 0
    issues: tuple[str, ...] = ()
    positive_signals: tuple[str, ...] = ()


def _norm(value: Any) -> str:
    return str(value).strip().lower() if value is not None else ""


def get_master_fingerprint_hash(fp: FingerprintInput) -> str:
    """SHA-256 over normalized components, independent of whitespace, case and plugin order"""
    components = {
        "canvas": _norm(fp.canvas_hash),
        "webgl_vendor": _norm(fp.webgl_vendor),
        "webgl_renderer": _norm(fp.webgl_renderer),
        "audio": _norm(fp.audio_hash),
        "screen": _norm(fp.screen_resolution).replace(" ", ""),
        "timezone": _norm(fp.timezone),
        "plugins": sorted(_norm(p) for p in fp.plugins if _norm(p)),
        "platform": _norm(fp.platform),
        "language": _norm(fp.language),
        "hardware_concurrency": fp.hardware_concurrency,
        "device_memory": fp.device_memory,
        "color_depth": fp.color_depth,
    }
    encoded = json.dumps(components, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _parse_resolution(value: str) -> Optional[tuple[int, int]]:
    try:
        w, h = value.lower().replace(" ", "").split("x")
        return int(w), int(h)
    except ValueError:
        return None


def _is_desktop_ua(ua: str) -> bool:
    ua = ua.lower()
    if any(t in ua for t in ("mobile", "android", "iphone", "ipad", "ipod")):
        return False
    return any(t in ua for t in ("windows", "macintosh", "x11", "linux", "cros"))


def _expected_js_offsets(tz_name: str) -> Optional[set[int]]:
    """getTimezoneOffset() values for January and July, None if the zone is unknown"""
    try:
        zone = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        # "America" and friends are tzdata directories, not zones
        return None
    year = datetime.now(dt_timezone.utc).year
    offsets = set()
    for month in (1, 7):
        delta = datetime(year, month, 1, 12, tzinfo=zone).utcoffset()
        if delta is not None:
            offsets.add(-int(delta.total_seconds() // 60))
    return offsets


def _platform_mismatch(platform: str, ua: str) -> bool:
    platform = platform.strip().lower()
    ua = ua.lower()
    if not platform or not ua:
        return False
    for prefix, tokens in _PLATFORM_UA_TOKENS.items():
        if platform.startswith(prefix):
            return not any(t in ua for t in tokens)
    return False


def _is_headless(fp: FingerprintInput) -> Optional[str]:
    webgl = f"{fp.webgl_vendor} {fp.webgl_renderer}".lower()
    for sig in HEADLESS_WEBGL_SIGNATURES:
        if sig in webgl:
            return f"headless_webgl:{sig}"
    ua = fp.user_agent.lower()
    if (not fp.plugins and _norm(fp.screen_resolution) in HEADLESS_DEFAULT_RESOLUTIONS
            and "chrome/" in ua and _is_desktop_ua(ua)):
        return "headless_default_profile"
    return None


def _spoof_issues(fp: FingerprintInput) -> list[str]:
    issues = []
    if fp.canvas_hash and _norm(fp.canvas_hash) in SPOOFED_CANVAS_HASHES:
        issues.append("spoofed_canvas_hash")
    if fp.canvas_noise:
        issues.append("canvas_noise")
    if fp.audio_noise:
        issues.append("audio_noise")
    if fp.timezone and fp.timezone_offset is not None:
        expected = _expected_js_offsets(fp.timezone.strip())
        if expected and fp.timezone_offset not in expected:
            issues.append("timezone_offset_mismatch")
    if _platform_mismatch(fp.platform, fp.user_agent):
        issues.append("platform_mismatch")
    return issues


def _locale_mismatch(fp: FingerprintInput) -> bool:
    if fp.timezone and _expected_js_offsets(fp.timezone.strip()) is None:
        return True
    if fp.language and fp.languages:
        primary = _norm(fp.language).split("-")[0]
        return primary not in {_norm(lang).split("-")[0] for lang in fp.languages}
    return False


def analyze_fingerprint(
    fp: FingerprintInput,
    seen_count: int = 0,
    replay_limit: int = DEFAULT_REPLAY_LIMIT,
) -> FingerprintAnalysis:
    """
    Score a fingerprint.

    Args:
        fp: Reported fingerprint
        seen_count: Times this master hash was seen in the replay window
        replay_limit: Counts above this mark the fingerprint as replayed
    """
    score = 100
    issues: list[str] = []
    positives: list[str] = []

    headless = _is_headless(fp)
    if headless:
        issues.append(headless)

    spoof = _spoof_issues(fp)
    if spoof:
        issues.extend(spoof)
        score -= SPOOFED_PENALTY

    replayed = seen_count > replay_limit
    if replayed:
        issues.append(f"replayed:{seen_count}")
        score -= REPLAYED_PENALTY

    if not fp.webgl_vendor.strip() and not fp.webgl_renderer.strip():
        issues.append("no_webgl")
        score -= NO_WEBGL_PENALTY
    else:
        webgl = f"{fp.webgl_vendor} {fp.webgl_renderer}".lower()
        if any(sig in webgl for sig in VM_WEBGL_SIGNATURES):
            issues.append("virtual_machine_webgl")
        elif not headless:
            positives.append("hardware_webgl")

    resolution = _parse_resolution(fp.screen_resolution)
    if (resolution is None or _norm(fp.screen_resolution) in SUSPICIOUS_RESOLUTIONS
            or not (0 < resolution[0] <= 10000 and 0 < resolution[1] <= 10000)):
        issues.append("suspicious_resolution")
        score -= SUSPICIOUS_RESOLUTION_PENALTY

    if not fp.plugins and _is_desktop_ua(fp.user_agent):
        issues.append("no_plugins_desktop")
        score -= NO_PLUGINS_PENALTY
    elif fp.plugins:
        positives.append("plugins_present")

    if _locale_mismatch(fp):
        issues.append("timezone_language_mismatch")
        score -= LOCALE_MISMATCH_PENALTY

    if headless:
        score = min(score, HEADLESS_SCORE_CAP)

    return FingerprintAnalysis(
        is_legitimate=not headless and not spoof and not replayed,
        is_headless=headless is not None,
        is_spoofed=bool(spoof),
        master_hash=get_master_fingerprint_hash(fp),
        score=max(0, min(100, score)),
        is_replayed=replayed,
        seen_count=seen_count,
        issues=tuple(issues),
        positive_signals=tuple(positives),
    )


async def analyze_fingerprint_with_store(
    fp: FingerprintInput,
    store: "HashCounter",
    replay_limit: int = DEFAULT_REPLAY_LIMIT,
) -> FingerprintAnalysis:
    """
    Count this sighting in the replay store, then analyze.

    A store failure only loses the replay count: the fingerprint is still
    analyzed with seen_count=0 so headless and spoof checks keep working.
    """
    try:
        seen = await store.increment(get_master_fingerprint_hash(fp))
    except Exception as e:
        log_signal_error(
            SignalKind.FINGERPRINT.value,
            f"replay store unavailable: {e}",
            error_type=type(e).__name__,
            component="replay_store",
        )
        seen = 0
    return analyze_fingerprint(fp, seen_count=seen, replay_limit=replay_limit)


def is_legitimate_fingerprint(fp: FingerprintInput) -> bool:
    return analyze_fingerprint(fp).is_legitimate


def is_headless_fingerprint(fp: FingerprintInput) -> bool:
    return analyze_fingerprint(fp).is_headless


def is_spoofed_fingerprint(fp: FingerprintInput) -> bool:
    return analyze_fingerprint(fp).is_spoofed


def get_fingerprint_score(fp: FingerprintInput, seen_count: int = 0) -> int:
    return analyze_fingerprint(fp, seen_count).score
