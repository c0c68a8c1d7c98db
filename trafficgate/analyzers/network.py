"""
Network Analyzer - IP reputation score that arrives after the quick decision.

Scores the client address on datacenter membership, validity and country,
and applies the country and device allowlists.
The result feeds update_with_network_score().
"""
import ipaddress
from dataclasses import dataclass
from typing import Iterable, Optional

# Cloud and hosting provider ranges
DATACENTER_CIDRS = [
    # AWS
    "3.0.0.0/8", "13.32.0.0/12", "18.128.0.0/9", "52.0.0.0/10", "54.64.0.0/11",
    "99.77.0.0/16",
    # Google Cloud
    "34.64.0.0/10", "35.184.0.0/13", "104.154.0.0/15", "104.196.0.0/14",
    # Azure
    "13.64.0.0/11", "20.33.0.0/16", "40.64.0.0/10", "52.224.0.0/11",
    # DigitalOcean
    "64.225.0.0/16", "68.183.0.0/16", "104.131.0.0/16", "134.209.0.0/16",
    "138.68.0.0/16", "139.59.0.0/16", "142.93.0.0/16", "157.245.0.0/16",
    "159.65.0.0/16", "159.89.0.0/16", "161.35.0.0/16", "164.90.0.0/16",
    # Linode
    "45.33.0.0/16", "45.56.0.0/16", "45.79.0.0/16", "50.116.0.0/16",
    "139.162.0.0/16", "172.104.0.0/15",
    # Vultr
    "45.32.0.0/16", "45.63.0.0/16", "45.76.0.0/16", "45.77.0.0/16",
    "108.61.0.0/16", "149.28.0.0/16",
    # Hetzner
    "5.9.0.0/16", "46.4.0.0/14", "78.46.0.0/15", "88.99.0.0/16",
    "95.216.0.0/14", "135.181.0.0/16", "136.243.0.0/16",
    # OVH
    "51.38.0.0/16", "51.68.0.0/16", "51.75.0.0/16", "51.77.0.0/16",
    "51.79.0.0/16", "51.81.0.0/16", "51.89.0.0/16", "51.91.0.0/16",
    "137.74.0.0/16", "139.99.0.0/16", "144.217.0.0/16", "149.56.0.0/16",
    "158.69.0.0/16", "167.114.0.0/16",
]

DATACENTER_NETWORKS = [ipaddress.ip_network(cidr) for cidr in DATACENTER_CIDRS]

DATACENTER_PENALTY = 50
INVALID_PENALTY = 30
BLOCKED_COUNTRY_PENALTY = 40
COUNTRY_FILTER_PENALTY = 25
DEVICE_FILTER_PENALTY = 15


@dataclass(frozen=True)
class NetworkAnalysis:
    ip: str
    is_valid: bool
    is_datacenter: bool
    is_private: bool
    country_blocked: bool
    score: int
    country: Optional[str] = None
    issues: tuple[str, ...] = ()
    passes_filters: bool = True


def _parse_ip(ip_str: Optional[str]):
    if not ip_str:
        return None
    try:
        return ipaddress.ip_address(ip_str.strip())
    except ValueError:
        return None


def is_datacenter_ip(ip_str: Optional[str]) -> bool:
    """Check if IP belongs to a known datacenter."""
    ip = _parse_ip(ip_str)
    if ip is None:
        return False
    return any(ip in network for network in DATACENTER_NETWORKS)


def analyze_network(
    ip: Optional[str],
    country: Optional[str] = None,
    blocked_countries: Iterable[str] = (),
    allowed_countries: Iterable[str] = (),
    device_type: Optional[str] = None,
    allowed_devices: Iterable[str] = (),
) -> NetworkAnalysis:
    """
    Score a client address.

    A known country outside a non-empty allowed_countries costs
    COUNTRY_FILTER_PENALTY and a device type outside allowed_devices costs
    DEVICE_FILTER_PENALTY. Any filter failure, a blocked country included,
    clears passes_filters.

    Private and loopback addresses are reported but not penalized, since the
    gate commonly runs behind a reverse proxy in development.
    """
    issues: list[str] = []
    score = 100
    parsed = _parse_ip(ip)

    is_valid = parsed is not None
    if not is_valid:
        issues.append("invalid_ip")
        score -= INVALID_PENALTY

    is_private = bool(parsed and (parsed.is_private or parsed.is_loopback))
    datacenter = bool(parsed and not is_private and any(parsed in n for n in DATACENTER_NETWORKS))
    if datacenter:
        issues.append("datacenter_ip")
        score -= DATACENTER_PENALTY

    normalized_country = country.strip().upper() if country else None
    blocked = {c.strip().upper() for c in blocked_countries if c and c.strip()}
    country_blocked = bool(normalized_country and normalized_country in blocked)
    if country_blocked:
        issues.append(f"blocked_country:{normalized_country}")
        score -= BLOCKED_COUNTRY_PENALTY

    allowed = {c.strip().upper() for c in allowed_countries if c and c.strip()}
    country_filtered = bool(allowed and normalized_country and not country_blocked and normalized_country not in allowed)
    if country_filtered:
        issues.append(f"country_not_allowed:{normalized_country}")
        score -= COUNTRY_FILTER_PENALTY

    devices = {d.strip().lower() for d in allowed_devices if d and d.strip()}
    device_filtered = bool(devices and device_type and device_type.lower() not in devices)
    if device_filtered:
        issues.append(f"device_filtered:{device_type.lower()}")
        score -= DEVICE_FILTER_PENALTY

    return NetworkAnalysis(
        ip=ip or "",
        is_valid=is_valid,
        is_datacenter=datacenter,
        is_private=is_private,
        country_blocked=country_blocked,
        score=max(0, min(100, score)),
        country=normalized_country,
        issues=tuple(issues),
        passes_filters=not (country_blocked or country_filtered or device_filtered),
    )
