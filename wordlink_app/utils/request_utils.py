"""Helpers that turn raw request data into privacy-safe click attributes."""

import hashlib
import ipaddress
from typing import Mapping, Optional, Sequence
from urllib.parse import urlsplit

# Matched against host labels, not substrings ("microsoft.com" is not "t.co")
SOCIAL_LABELS = {"facebook", "twitter", "linkedin", "instagram", "youtube",
                 "tiktok", "reddit", "pinterest"}
SOCIAL_HOSTS = {"t.co", "x.com", "lnkd.in", "fb.me", "youtu.be"}
SEARCH_LABELS = {"google", "bing", "yahoo", "duckduckgo", "baidu", "yandex", "ecosia"}

UTM_FIELDS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")


def _is_trusted(address: Optional[str], trusted_proxies: Sequence[str]) -> bool:
    """Match an address against proxy IPs / CIDRs; "*" trusts any peer."""
    if not address:
        return False
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        ip = None  # Unix socket paths, test client names
    for entry in trusted_proxies:
        if entry == "*" or entry == address:
            return True
        if ip is None:
            continue
        try:
            if ip in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def get_client_ip(
    headers: Mapping[str, str],
    peer: Optional[str],
    trusted_proxies: Sequence[str] = (),
) -> Optional[str]:
    """
    Address of the client that reached the nearest trusted proxy.

    Forwarding headers are only read when the socket peer is a trusted proxy.
    X-Forwarded-For is walked from the right, skipping trusted hops, so entries
    a client prepends itself are never believed. Then X-Real-IP / CF-Connecting-IP,
    then the peer.
    """
    if not _is_trusted(peer, trusted_proxies):
        return peer

    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
        for hop in reversed(hops):
            if not _is_trusted(hop, trusted_proxies):
                return hop
        if hops:
            return hops[0]
    return headers.get("x-real-ip") or headers.get("cf-connecting-ip") or peer


def derive_visitor_id(
    ip_address: Optional[str],
    user_agent: Optional[str],
    accept_language: Optional[str],
    salt: str,
) -> str:
    """
    Salted SHA-256 over the request fingerprint, truncated to 16 hex chars.

    Stable for the same browser on the same network, never reversible to the IP.
    """
    components = [salt] + [part for part in (ip_address, user_agent, accept_language) if part]
    return hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()[:16]


def referrer_source(referrer: Optional[str]) -> str:
    """Host of the referrer ("direct" when there is none)."""
    if not referrer or not referrer.strip():
        return "direct"
    host = urlsplit(referrer.strip()).hostname
    if not host:
        return referrer.strip().lower()
    return host[4:] if host.startswith("www.") else host


def classify_referrer(referrer: Optional[str]) -> str:
    """direct / social / search / other"""
    source = referrer_source(referrer)
    if source == "direct":
        return "direct"
    labels = set(source.split("."))
    if source in SOCIAL_HOSTS or labels & SOCIAL_LABELS:
        return "social"
    if labels & SEARCH_LABELS:
        return "search"
    return "other"


def extract_utm_params(query: Mapping[str, str]) -> dict:
    return {field: (query.get(field) or None) for field in UTM_FIELDS}
