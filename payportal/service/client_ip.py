"""Client address handling for session IP binding.

The connection's peer address is the source of truth. ``X-Forwarded-For`` is
read only when the peer is one of the configured trusted proxies, and then the
right-most hop that is not itself a trusted proxy is taken as the client.
"""

from __future__ import annotations

from ipaddress import IPv6Address, ip_address
from typing import Iterable, Optional

LOOPBACK_V4 = "127.0.0.1"
LOOPBACK_V6 = "::1"


def normalize_ip(raw_ip: Optional[str]) -> str:
    """Canonical string form of an address.

    IPv4-mapped IPv6 addresses collapse to their IPv4 form so ``::ffff:10.0.0.1``
    and ``10.0.0.1`` compare equal. Values that are not IP addresses (test
    client placeholders, unix sockets) are kept as stripped lowercase text.
    """
    if raw_ip is None:
        return ""
    stripped = str(raw_ip).strip()
    # Bracketed IPv6 and zone ids show up in some proxy headers
    candidate = stripped.strip("[]").split("%", 1)[0]
    try:
        parsed = ip_address(candidate)
    except ValueError:
        return stripped.lower()
    if isinstance(parsed, IPv6Address) and parsed.ipv4_mapped is not None:
        parsed = parsed.ipv4_mapped
    return parsed.compressed


def is_loopback(raw_ip: Optional[str]) -> bool:
    normalized = normalize_ip(raw_ip)
    try:
        return ip_address(normalized).is_loopback
    except ValueError:
        return False


def same_client(bound_ip: str, observed_ip: str, *, allow_loopback_equivalence: bool = True) -> bool:
    """Whether ``observed_ip`` may use a session bound to ``bound_ip``.

    Loopback forms are interchangeable only when both sides are loopback.
    """
    bound = normalize_ip(bound_ip)
    observed = normalize_ip(observed_ip)
    if bound == observed:
        return True
    return allow_loopback_equivalence and is_loopback(bound) and is_loopback(observed)


def resolve_client_ip(
    peer_ip: Optional[str],
    forwarded_for: Optional[str],
    trusted_proxies: Iterable[str] = (),
) -> str:
    peer = normalize_ip(peer_ip)
    trusted = {normalize_ip(p) for p in trusted_proxies}
    if not forwarded_for or peer not in trusted:
        return peer
    hops = [normalize_ip(h) for h in forwarded_for.split(",") if h.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return peer
