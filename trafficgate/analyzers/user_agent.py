"""
User-Agent Analyzer - Classifies a raw User-Agent string.

Detects known crawlers and automation tools, empty or generic strings, and
internally inconsistent platform/browser claims. Pure function of the string:
the same input always yields the same UserAgentAnalysis and nothing raises.
"""
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

# (label, substrings) - matched case-insensitively against the UA
_CRAWLER_SIGNATURES: list[tuple[str, tuple[str, ...]]] = [
    ("search_engine", (
        "googlebot", "google-inspectiontool", "storebot-google", "google-extended",
        "bingbot", "bingpreview", "msnbot", "yandexbot", "yandex.com/bots",
        "baiduspider", "duckduckbot", "applebot", "slurp", "sogou", "exabot",
        "seznambot", "petalbot", "qwantify",
    )),
    ("link_preview", (
        "facebookexternalhit", "facebot", "twitterbot", "linkedinbot", "slackbot",
        "discordbot", "telegrambot", "whatsapp", "pinterestbot", "redditbot",
        "embedly", "skypeuripreview",
    )),
    ("seo_tool", (
        "ahrefsbot", "semrushbot", "dotbot", "mj12bot", "screaming frog",
        "rogerbot", "serpstatbot", "dataforseo", "blexbot", "seokicks", "sistrix",
    )),
    ("monitor", (
        "uptimerobot", "pingdom", "statuscake", "site24x7", "newrelicpinger",
        "datadog", "lighthouse", "gtmetrix",
    )),
    ("scanner", (
        "nikto", "nmap", "masscan", "sqlmap", "wpscan", "acunetix", "nessus",
        "qualys", "zgrab", "censys",
    )),
    ("archiver", (
        "ia_archiver", "archive.org_bot", "ccbot", "heritrix",
    )),
    ("ai_crawler", (
        "gptbot", "oai-searchbot", "chatgpt-user", "claudebot", "perplexitybot",
        "bytespider", "amazonbot",
    )),
]

_HEADLESS_MARKERS: tuple[str, ...] = (
    "headlesschrome", "headless", "puppeteer", "playwright", "selenium",
    "webdriver", "phantomjs", "nightmare", "cypress", "jsdom", "htmlunit",
    "slimerjs", "casperjs", "splash",
)

_HTTP_LIBRARY_MARKERS: tuple[str, ...] = (
    "curl/", "wget/", "libwww", "httpie", "python-requests", "python-urllib",
    "python-httpx", "aiohttp", "axios", "node-fetch", "undici", "okhttp",
    "go-http-client", "apache-httpclient", "java/", "guzzle", "scrapy",
    "mechanize", "httrack", "postmanruntime", "insomnia",
)

_GENERIC_BOT_RE = re.compile(r"bot\b|crawl|spider|scrap|fetcher|archiver", re.IGNORECASE)

# Bare product tokens with no platform or engine information
_GENERIC_UA_RES = [
    re.compile(p, re.IGNORECASE) for p in (
        r"^mozilla/[45]\.0$",
        r"^java/",
        r"^python",
        r"^okhttp",
        r"^go-http-client",
        r"^ruby",
        r"^perl",
        r"^node",
        r"^php",
        r"^[a-z0-9_.-]+/?[0-9.]*$",
    )
]

_MIN_UA_LENGTH = 20
_MAX_UA_LENGTH = 512

# (name, pattern) ordered from most to least specific
_OS_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("iOS", re.compile(r"iPhone OS (\d+)|CPU OS (\d+)", re.IGNORECASE)),
    ("Android", re.compile(r"Android (\d+)", re.IGNORECASE)),
    ("Windows", re.compile(r"Windows NT (\d+\.\d+)", re.IGNORECASE)),
    ("macOS", re.compile(r"Mac OS X (\d+)[._](\d+)", re.IGNORECASE)),
    ("ChromeOS", re.compile(r"CrOS", re.IGNORECASE)),
    ("Linux", re.compile(r"Linux|X11", re.IGNORECASE)),
]

# (name, version pattern, highest plausible major version)
_BROWSER_PATTERNS: list[tuple[str, re.Pattern, int]] = [
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/(\d+)"), 250),
    ("Opera", re.compile(r"OPR/(\d+)"), 250),
    ("Samsung Internet", re.compile(r"SamsungBrowser/(\d+)"), 60),
    ("Chrome", re.compile(r"(?:Chrome|CriOS)/(\d+)"), 250),
    ("Firefox", re.compile(r"(?:Firefox|FxiOS)/(\d+)"), 250),
    ("Safari", re.compile(r"Version/(\d+).*Safari"), 40),
]

CRAWLER_SCORE_CAP = 5
GENERIC_PENALTY = 60
INCONSISTENCY_PENALTY = 25


@dataclass(frozen=True)
class UserAgentAnalysis:
    """Result of analyzing a single User-Agent string"""
    ua_string: str
    is_crawler: bool
    is_empty_or_generic: bool
    has_inconsistencies: bool
    score: int
    is_headless: bool = False
    is_http_library: bool = False
    detected_crawler: Optional[str] = None
    browser: Optional[str] = None
    browser_version: Optional[int] = None
    os_name: Optional[str] = None
    device_type: str = "unknown"
    inconsistencies: tuple[str, ...] = ()
    details: tuple[str, ...] = ()

    def summary(self) -> dict:
        return {
            "score": self.score,
            "is_crawler": self.is_crawler,
            "is_empty_or_generic": self.is_empty_or_generic,
            "has_inconsistencies": self.has_inconsistencies,
            "detected_crawler": self.detected_crawler,
            "browser": self.browser,
            "browser_version": self.browser_version,
            "os": self.os_name,
            "device_type": self.device_type,
            "inconsistencies": list(self.inconsistencies),
        }


def _match_crawler(ua_lower: str) -> tuple[Optional[str], bool, bool]:
    """Return (crawler label, is_headless, is_http_library)"""
    for label, signatures in _CRAWLER_SIGNATURES:
        for sig in signatures:
            if sig in ua_lower:
                return f"{label}:{sig}", False, False
    for marker in _HEADLESS_MARKERS:
        if marker in ua_lower:
            return f"headless:{marker}", True, False
    for marker in _HTTP_LIBRARY_MARKERS:
        if marker in ua_lower:
            return f"http_library:{marker.rstrip('/')}", False, True
    match = _GENERIC_BOT_RE.search(ua_lower)
    if match:
        return f"generic:{match.group(0).lower()}", False, False
    return None, False, False


def _is_generic(ua: str) -> bool:
    if len(ua) < _MIN_UA_LENGTH:
        return True
    return any(p.search(ua) for p in _GENERIC_UA_RES)


def _detect_os(ua: str) -> Optional[str]:
    for name, pattern in _OS_PATTERNS:
        if pattern.search(ua):
            return name
    return None


def _detect_browser(ua: str) -> tuple[Optional[str], Optional[int], int]:
    for name, pattern, max_version in _BROWSER_PATTERNS:
        match = pattern.search(ua)
        if match:
            return name, int(match.group(1)), max_version
    return None, None, 0


def _device_type(ua_lower: str) -> str:
    if re.search(r"ipad|tablet|playbook|silk", ua_lower):
        return "tablet"
    if re.search(r"mobile|iphone|ipod|android|blackberry|opera mini|iemobile", ua_lower):
        return "mobile"
    if re.search(r"windows|macintosh|x11|linux|cros", ua_lower):
        return "desktop"
    return "unknown"


def _find_inconsistencies(ua: str, browser: Optional[str], version: Optional[int], max_version: int) -> list[str]:
    """Platform/browser claims that cannot co-exist in a real browser"""
    found: list[str] = []
    has_iphone = bool(re.search(r"iphone|ipad|ipod", ua, re.IGNORECASE))
    has_android = bool(re.search(r"android", ua, re.IGNORECASE))
    has_windows = bool(re.search(r"windows nt", ua, re.IGNORECASE))
    has_mac = bool(re.search(r"macintosh", ua, re.IGNORECASE))

    if has_windows and (has_iphone or has_android or has_mac):
        found.append("conflicting_platforms_windows")
    if has_iphone and has_android:
        found.append("conflicting_platforms_ios_android")

    chrome = re.search(r"Chrome/(\d+)", ua)
    chrome_version = int(chrome.group(1)) if chrome else None

    if has_iphone and chrome and not re.search(r"CriOS", ua):
        found.append("ios_chrome_without_crios")

    ios = re.search(r"iPhone OS (\d+)", ua)
    if ios and chrome_version is not None and int(ios.group(1)) <= 11 and chrome_version >= 90:
        found.append("ios_chrome_version_mismatch")

    android = re.search(r"Android (\d+)", ua)
    if android and chrome_version is not None and int(android.group(1)) < 7 and chrome_version >= 90:
        found.append("android_chrome_version_mismatch")

    if re.search(r"Windows NT (5\.[12]|6\.0)", ua) and chrome_version is not None and chrome_version >= 50:
        found.append("legacy_windows_modern_chrome")

    if (re.search(r"Linux|X11", ua) and not has_android and "Safari" in ua
            and not re.search(r"Chrome|Chromium|CriOS|Firefox", ua)):
        found.append("linux_bare_safari")

    if browser and version is not None and version > max_version:
        found.append("impossible_browser_version")

    if len(ua) > _MAX_UA_LENGTH:
        found.append("ua_too_long")

    return found


def _combine_score(is_crawler: bool, is_generic: bool, has_inconsistencies: bool, is_empty: bool) -> int:
    """Combine the three UA verdicts into a 0-100 score"""
    if is_empty:
        return 0
    score = 100
    if is_generic:
        score -= GENERIC_PENALTY
    if has_inconsistencies:
        score -= INCONSISTENCY_PENALTY
    if is_crawler:
        score = min(score, CRAWLER_SCORE_CAP)
    return max(0, min(100, score))


@lru_cache(maxsize=2048)
def _analyze(ua: str) -> UserAgentAnalysis:
    stripped = ua.strip()
    if not stripped:
        return UserAgentAnalysis(
            ua_string=ua,
            is_crawler=False,
            is_empty_or_generic=True,
            has_inconsistencies=False,
            score=0,
            details=("empty user agent",),
        )

    lower = stripped.lower()
    details: list[str] = []

    crawler, is_headless, is_http_library = _match_crawler(lower)
    if crawler:
        details.append(f"crawler signature: {crawler}")

    is_generic = _is_generic(stripped)
    if is_generic:
        details.append("generic or truncated user agent")

    browser, version, max_version = _detect_browser(stripped)
    inconsistencies = _find_inconsistencies(stripped, browser, version, max_version)
    for item in inconsistencies:
        details.append(f"inconsistency: {item}")

    return UserAgentAnalysis(
        ua_string=ua,
        is_crawler=crawler is not None,
        is_empty_or_generic=is_generic,
        has_inconsistencies=bool(inconsistencies),
        score=_combine_score(crawler is not None, is_generic, bool(inconsistencies), False),
        is_headless=is_headless,
        is_http_library=is_http_library,
        detected_crawler=crawler,
        browser=browser,
        browser_version=version,
        os_name=_detect_os(stripped),
        device_type=_device_type(lower),
        inconsistencies=tuple(inconsistencies),
        details=tuple(details),
    )


def analyze_user_agent(ua: Optional[str]) -> UserAgentAnalysis:
    """Analyze a User-Agent string. Absent or non-string input scores 0."""
    if not isinstance(ua, str):
        ua = ""
    return _analyze(ua)


def is_crawler_ua(ua: Optional[str]) -> bool:
    return analyze_user_agent(ua).is_crawler


def is_empty_or_generic_ua(ua: Optional[str]) -> bool:
    return analyze_user_agent(ua).is_empty_or_generic


def has_ua_inconsistencies(ua: Optional[str]) -> bool:
    return analyze_user_agent(ua).has_inconsistencies


def get_ua_score(ua: Optional[str]) -> int:
    return analyze_user_agent(ua).score
