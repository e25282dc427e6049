"""
Domain / IP allow-list evaluation for API keys.

Rules (same for both lists):
  • None            → open policy, everything allowed
  • "*"             → everything allowed, regardless of other entries
  • "*.example.com" → hostname ends with "example.com" (domains only)
  • anything else   → exact match against the hostname / literal address
  • no entry matches (including an empty list) → denied

Origins are matched on their hostname component only. An origin that is
not an absolute URL (e.g. the literal "null" browsers send from sandboxed
frames) has no hostname and is denied, never treated as an error.
"""

from __future__ import annotations

from collections.abc import Sequence
from urllib.parse import urlsplit

WILDCARD = "*"
_SUBDOMAIN_WILDCARD = "*."


def origin_hostname(origin: str) -> str | None:
    """Extract the hostname of an Origin header value, or None if malformed."""
    try:
        return urlsplit(origin.strip()).hostname
    except ValueError:
        return None


def _domain_matches(pattern: str, hostname: str) -> bool:
    if pattern == WILDCARD:
        return True
    if pattern.startswith(_SUBDOMAIN_WILDCARD):
        return hostname.endswith(pattern[len(_SUBDOMAIN_WILDCARD):])
    return hostname == pattern


def is_origin_allowed(allowed_domains: Sequence[str] | None, origin: str) -> bool:
    """Check a request Origin against a key's domain allow-list."""
    if allowed_domains is None or WILDCARD in allowed_domains:
        return True

    hostname = origin_hostname(origin)
    if not hostname:
        return False

    return any(_domain_matches(pattern, hostname) for pattern in allowed_domains)


def is_ip_allowed(allowed_ips: Sequence[str] | None, ip: str) -> bool:
    """Check a client address against a key's IP allow-list."""
    if allowed_ips is None or WILDCARD in allowed_ips:
        return True
    return ip in allowed_ips
