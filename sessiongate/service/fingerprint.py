from __future__ import annotations

import hashlib
from ipaddress import IPv6Address, ip_address
from typing import Optional

from sessiongate.config import TrustMode

UNKNOWN_DEVICE = "unknown-device"


def normalize_ip(raw: Optional[str]) -> str:
    """Canonical text form of an address; IPv4-mapped IPv6 collapses to IPv4."""

    if not raw:
        return ""
    candidate = raw.strip()
    try:
        parsed = ip_address(candidate)
    except ValueError:
        return candidate
    if isinstance(parsed, IPv6Address) and parsed.ipv4_mapped is not None:
        return str(parsed.ipv4_mapped)
    return str(parsed)


class DeviceFingerprinter:
    """Derive a stable device identity from connection metadata.

    STRICT binds the identity to both the user agent and the network address.
    RELAXED uses the user agent alone, for deployments whose clients sit
    behind proxies that rotate the visible address.
    """

    def __init__(self, trust_mode: TrustMode = TrustMode.STRICT) -> None:
        self.trust_mode = TrustMode(trust_mode)

    def fingerprint(self, user_agent: Optional[str], ip_addr: Optional[str]) -> str:
        agent = (user_agent or "").strip()
        if self.trust_mode == TrustMode.RELAXED:
            material = agent or UNKNOWN_DEVICE
        else:
            material = f"{agent}:{normalize_ip(ip_addr)}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()
