"""
Client identity resolution for rate limiting.

Resolution order (fixed, since it decides whose budget a request spends):

1. First entry of ``X-Forwarded-For``
2. ``X-Real-IP``
3. Transport-level peer address
4. The literal ``"unknown"``

Forwarded headers are client-controlled and therefore untrusted; they
are honoured because the gateway is expected to run behind a proxy.
"""

from typing import Mapping, Optional

UNKNOWN_CLIENT = "unknown"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def resolve_client_id(
    headers: Optional[Mapping[str, str]] = None,
    peer: Optional[str] = None,
) -> str:
    """Derive the rate limit client identifier for a request.

    Args:
        headers: Request headers (case-insensitive lookup).
        peer: Direct peer host, if known.

    Returns:
        The resolved client identifier; never empty.
    """
    headers = headers or {}

    forwarded = _header(headers, "X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = _header(headers, "X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if peer:
        return peer
    return UNKNOWN_CLIENT


def mask_client_id(client_id: str, visible: int = 8) -> str:
    """Partially mask a client identifier for reporting."""
    return client_id[:visible] + "****"
