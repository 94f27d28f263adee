from __future__ import annotations

import ipaddress
from datetime import datetime, timezone
from typing import Any, List, Optional
from urllib.parse import urlparse


def normalize_base_url(base_url: str, default_scheme: str = "http") -> str:
    """Trim a base URL and add a scheme when missing.

    Accepts:
      - http://host:port/api
      - host:port/api
      - host
    """
    url = str(base_url or "").strip().rstrip("/")
    if not url:
        return ""
    if "://" not in url:
        url = f"{default_scheme}://{url}"
    return url


def format_host_for_url(host: str) -> str:
    """Format host part for URL.

    - Wrap IPv6 literals in brackets: 2001:db8::1 -> [2001:db8::1]
    - Do NOT wrap hostname:port like example.com:443
    """
    h = (host or "").strip()
    if not h:
        return h
    if h.startswith("[") and h.endswith("]"):
        return h

    if h.count(":") == 1 and h.rsplit(":", 1)[1].isdigit():
        return h

    if ":" in h:
        core = h.split("%", 1)[0]
        try:
            ip = ipaddress.ip_address(core)
            if ip.version == 6:
                return f"[{h}]"
        except ValueError:
            if h.count(":") > 1:
                return f"[{h}]"

    return h


def normalize_host_input(h: str) -> str:
    """Normalize a node address and strip an optional scheme or port.

    Allows the operator to paste a URL, host:port, [ipv6]:port or a raw host.
    """
    h = (h or "").strip()
    if not h:
        return ""

    if "://" in h:
        try:
            return urlparse(h).hostname or ""
        except ValueError:
            return ""

    if h.startswith("[") and "]" in h:
        return h[1 : h.index("]")].strip()

    # host:port (only one ':' so we don't break IPv6)
    if h.count(":") == 1 and h.rsplit(":", 1)[1].isdigit():
        return h.rsplit(":", 1)[0].strip()

    return h


def safe_int_list(values: Any) -> List[int]:
    """Convert an iterable of values to a list of unique ints; drop invalid items."""
    out: List[int] = []
    if not isinstance(values, (list, tuple, set)):
        return out
    for v in values:
        if isinstance(v, bool):
            continue
        try:
            n = int(v)
        except (TypeError, ValueError):
            continue
        if n not in out:
            out.append(n)
    return out


def parse_bool(raw: Any, default: bool = False) -> bool:
    if isinstance(raw, bool):
        return raw
    s = str(raw if raw is not None else "").strip().lower()
    if not s:
        return default
    if s in ("1", "true", "yes", "y", "on"):
        return True
    if s in ("0", "false", "no", "n", "off"):
        return False
    return default


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the authority into an aware datetime.

    Naive values and bare dates are treated as UTC.
    """
    if raw is None:
        return None
    if isinstance(raw, datetime):
        dt = raw
    else:
        s = str(raw).strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
