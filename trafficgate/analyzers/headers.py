"""
Headers Analyzer - Scores the HTTP request headers.

Checks that the standard content-negotiation headers are present and
well-formed, flags suspicious referers and proxy chains, and verifies that
client hints agree with the User-Agent.
"""
import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional
from urllib.parse import urlsplit

from .network import is_datacenter_ip

ACCEPT_PENALTY = 10
ACCEPT_LANGUAGE_PENALTY = 15
ACCEPT_ENCODING_PENALTY = 10
REFERER_PENALTY = 30
PROXY_PENALTY = 10
CLIENT_HINT_PENALTY = 20
SEC_FETCH_PENALTY = 10

# ISO-639-1 codes, then the three-letter ones browsers send for languages without one
VALID_LANGUAGE_CODES = frozenset("""
aa ab af ak am an ar as av ay az ba be bg bh bi bm bn bo br bs ca ce ch co cr cs
cu cv cy da de dv dz ee el en eo es et eu fa ff fi fj fo fr fy ga gd gl gn gu gv
ha he hi ho hr ht hu hy hz ia id ie ig ii ik io is it iu ja jv ka kg ki kj kk kl
km kn ko kr ks ku kv kw ky la lb lg li ln lo lt lu lv mg mh mi mk ml mn mr ms mt
my na nb nd ne ng nl nn no nr nv ny oc oj om or os pa pi pl ps pt qu rm rn ro ru
rw sa sc sd se sg si sk sl sm sn so sq sr ss st su sv sw ta te tg th ti tk tl tn
to tr ts tt tw ty ug uk ur uz ve vi vo wa wo xh yi yo za zh zu
ast ceb chr ckb cmn dsb fil fur gsw haw hsb kab kok mai mfe nds nso sah sat scn
wuu yue zgh
""".split())

# Referers left by crawlers and archive fetchers. Entries match the referer
# host or a subdomain of it; "host/path" entries also need the path prefix.
DEFAULT_REFERER_DENYLIST: tuple[str, ...] = (
    "googlebot.com",
    "bingbot.com",
    "yandex.com/bots",
    "baidu.com/search/spider",
    "facebook.com/externalhit",
    "crawler.com",
    "spider.com",
    "bot.com",
    "archive.org",
    "web.archive.org",
)

PROXY_HEADERS = ("via", "forwarded", "x-proxy-id", "proxy-connection", "x-originating-ip")

VALID_SEC_FETCH = {
    "sec-fetch-site": {"cross-site", "same-origin", "same-site", "none"},
    "sec-fetch-mode": {"cors", "navigate", "no-cors", "same-origin", "websocket"},
    "sec-fetch-dest": {
        "audio", "audioworklet", "document", "embed", "empty", "font", "frame",
        "iframe", "image", "manifest", "object", "paintworklet", "report",
        "script", "serviceworker", "sharedworker", "style", "track", "video",
        "worker", "xslt",
    },
    "sec-fetch-user": {"?1"},
}

# Sec-CH-UA-Platform value -> UA substrings that confirm it
_PLATFORM_UA_TOKENS = {
    "windows": ("windows",),
    "macos": ("macintosh", "mac os x"),
    "android": ("android",),
    "ios": ("iphone", "ipad", "ipod"),
    "chrome os": ("cros",),
    "chromium os": ("cros",),
    "linux": ("linux", "x11"),
}

_MEDIA_RANGE_RE = re.compile(r"^(\*|[\w.+-]+)/(\*|[\w.+-]+)$")
_LANG_TAG_RE = re.compile(r"^([a-z]{2,3})(-[a-z0-9]{1,8})*$|^\*$", re.IGNORECASE)
_TOKEN_RE = re.compile(r"^[\w.+*-]+$")
_Q_RE = re.compile(r"^q=([0-9.]+)$", re.IGNORECASE)


@dataclass(frozen=True)
class HeadersAnalysis:
    has_valid_headers: bool
    suspicious_referer: bool
    proxy_detected: bool
    score: int
    missing_headers: tuple[str, ...] = ()
    issues: tuple[str, ...] = ()
    forwarded_ips: tuple[str, ...] = ()
    referer_domain: Optional[str] = None


def _lower_keys(headers: Optional[Mapping[str, str]]) -> dict[str, str]:
    if not headers:
        return {}
    return {str(k).lower(): str(v) for k, v in headers.items() if v is not None}


def _valid_q(params: list[str]) -> bool:
    for param in params:
        param = param.strip()
        if not param:
            continue
        m = _Q_RE.match(param)
        if m is None:
            continue
        try:
            q = float(m.group(1))
        except ValueError:
            return False
        if q < 0 or q > 1:
            return False
    return True


def _check_accept(value: str) -> Optional[str]:
    if not value.strip():
        return "empty_accept"
    for part in value.split(","):
        media, *params = part.strip().split(";")
        if _MEDIA_RANGE_RE.match(media.strip()) and _valid_q(params):
            continue
        return "malformed_accept"
    return None


def _check_accept_language(value: str) -> Optional[str]:
    if not value.strip():
        return "empty_accept_language"
    parts = [p.strip() for p in value.split(",") if p.strip()]
    if not parts:
        return "empty_accept_language"
    if len(parts) > 10:
        return "too_many_languages"
    tags = []
    for part in parts:
        tag, *params = part.split(";")
        tag = tag.strip()
        if not _LANG_TAG_RE.match(tag) or not _valid_q(params):
            return "malformed_accept_language"
        tags.append(tag.lower())
    if tags == ["*"]:
        return "wildcard_only_language"
    for tag in tags:
        primary = tag.split("-")[0]
        if primary != "*" and primary not in VALID_LANGUAGE_CODES:
            return f"invalid_lang_code:{primary}"
    return None


def _check_accept_encoding(value: str) -> Optional[str]:
    if not value.strip():
        return "empty_accept_encoding"
    for part in value.split(","):
        token, *params = part.strip().split(";")
        if not _TOKEN_RE.match(token.strip()) or not _valid_q(params):
            return "malformed_accept_encoding"
    return None


def _check_referer(referer: str, denylist: Iterable[str]) -> tuple[Optional[str], Optional[str]]:
    """Return (domain, issue). An absent referer is normal direct navigation."""
    if not referer.strip():
        return None, None
    try:
        parts = urlsplit(referer.strip())
    except ValueError:
        return None, "malformed_referer"
    if parts.scheme not in ("http", "https"):
        return None, f"referer_scheme:{parts.scheme or 'none'}"
    domain = (parts.hostname or "").lower()
    if not domain:
        return None, "malformed_referer"
    path = parts.path.lower()
    for entry in denylist:
        entry = entry.lower().strip()
        host, _, prefix = entry.partition("/")
        if not host or not (domain == host or domain.endswith("." + host)):
            continue
        # "host/path" entries only match under that path
        if not prefix or path.startswith("/" + prefix):
            return domain, f"denylisted_referer:{entry}"
    return domain, None


def _split_forwarded_for(value: str) -> list[str]:
    return [p.strip() for p in value.split(",") if p.strip()]


def _check_proxy(headers: dict[str, str]) -> tuple[list[str], list[str]]:
    """Return (issues, forwarded ips)"""
    issues: list[str] = []
    forwarded = _split_forwarded_for(headers.get("x-forwarded-for", ""))

    for name in PROXY_HEADERS:
        if headers.get(name):
            issues.append(f"proxy_header:{name}")

    if len(forwarded) > 1:
        issues.append("multi_hop_forwarded_for")

    real_ip = headers.get("x-real-ip", "").strip()
    if real_ip and forwarded and real_ip != forwarded[0]:
        issues.append("real_ip_mismatch")

    client_ip = forwarded[0] if forwarded else real_ip
    if client_ip and is_datacenter_ip(client_ip):
        issues.append("datacenter_forwarded_ip")

    return issues, forwarded


def _check_client_hints(headers: dict[str, str], user_agent: Optional[str]) -> list[str]:
    issues: list[str] = []
    ua = (user_agent if user_agent is not None else headers.get("user-agent", "")).lower()
    if not ua:
        return issues

    is_firefox = "firefox/" in ua
    is_safari = "safari/" in ua and not re.search(r"chrome|chromium|crios|edg", ua)
    if headers.get("sec-ch-ua") and (is_firefox or is_safari):
        issues.append("client_hints_from_non_chromium")

    platform = headers.get("sec-ch-ua-platform", "").strip().strip('"').lower()
    if platform and platform != "unknown":
        tokens = _PLATFORM_UA_TOKENS.get(platform)
        if tokens is None:
            issues.append(f"unknown_ch_platform:{platform}")
        elif not any(t in ua for t in tokens):
            issues.append(f"ch_platform_mismatch:{platform}")

    mobile = headers.get("sec-ch-ua-mobile", "").strip()
    if mobile == "?1" and not re.search(r"mobile|android|iphone", ua):
        issues.append("ch_mobile_mismatch")

    return issues


def _check_sec_fetch(headers: dict[str, str]) -> list[str]:
    issues = []
    for name, allowed in VALID_SEC_FETCH.items():
        value = headers.get(name)
        if value is not None and value.strip().lower() not in allowed:
            issues.append(f"invalid_{name.replace('-', '_')}")
    return issues


def analyze_headers(
    headers: Optional[Mapping[str, str]],
    user_agent: Optional[str] = None,
    referer_denylist: Iterable[str] = DEFAULT_REFERER_DENYLIST,
) -> HeadersAnalysis:
    """
    Analyze request headers.

    Args:
        headers: Header name -> value, any case
        user_agent: UA to check client hints against (defaults to the User-Agent header)
        referer_denylist: Domains or URL fragments treated as suspicious referers
    """
    h = _lower_keys(headers)
    score = 100
    issues: list[str] = []
    missing: list[str] = []

    for name, check, penalty in (
        ("accept", _check_accept, ACCEPT_PENALTY),
        ("accept-language", _check_accept_language, ACCEPT_LANGUAGE_PENALTY),
        ("accept-encoding", _check_accept_encoding, ACCEPT_ENCODING_PENALTY),
    ):
        value = h.get(name)
        if value is None:
            missing.append(name)
            score -= penalty
            continue
        problem = check(value)
        if problem:
            issues.append(problem)
            score -= penalty

    referer_domain, referer_issue = _check_referer(h.get("referer", ""), referer_denylist)
    if referer_issue:
        issues.append(referer_issue)
        score -= REFERER_PENALTY

    proxy_issues, forwarded = _check_proxy(h)
    if proxy_issues:
        issues.extend(proxy_issues)
        score -= PROXY_PENALTY

    hint_issues = _check_client_hints(h, user_agent)
    if hint_issues:
        issues.extend(hint_issues)
        score -= CLIENT_HINT_PENALTY

    fetch_issues = _check_sec_fetch(h)
    if fetch_issues:
        issues.extend(fetch_issues)
        score -= SEC_FETCH_PENALTY

    negotiation_ok = not missing and not any(
        i.startswith(("empty_accept", "malformed_accept", "invalid_lang", "wildcard_only", "too_many"))
        for i in issues
    )

    return HeadersAnalysis(
        has_valid_headers=negotiation_ok,
        suspicious_referer=referer_issue is not None,
        proxy_detected=bool(proxy_issues),
        score=max(0, min(100, score)),
        missing_headers=tuple(missing),
        issues=tuple(issues),
        forwarded_ips=tuple(forwarded),
        referer_domain=referer_domain,
    )


def has_valid_headers(headers: Optional[Mapping[str, str]]) -> bool:
    return analyze_headers(headers).has_valid_headers


def has_suspicious_referer(headers: Optional[Mapping[str, str]]) -> bool:
    return analyze_headers(headers).suspicious_referer


def is_proxy_detected(headers: Optional[Mapping[str, str]]) -> bool:
    return analyze_headers(headers).proxy_detected


def get_headers_score(headers: Optional[Mapping[str, str]], user_agent: Optional[str] = None) -> int:
    return analyze_headers(headers, user_agent).score
