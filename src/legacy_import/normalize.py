"""Normalization functions for legacy CSV export values.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import hashlib
import ipaddress
import re
from datetime import datetime, timezone

_SENTINEL_TS = "0000-00-00 00:00:00"
TS_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: parse_int_prefix
# ---------------------------------------------------------------------------

def parse_int_prefix(value: str | None) -> int | None:
    """Return the leading integer of a string ('12abc' → 12), or None."""
    if value is None:
        return None
    m = _LEADING_INT_RE.match(value)
    return int(m.group(1)) if m else None


# ---------------------------------------------------------------------------
# Rule 3: format_local_ts
# ---------------------------------------------------------------------------

def parse_any_ts(value: str | None) -> datetime | None:
    """Parse the timestamp shapes legacy exports use.

    Accepts ISO-8601 (with or without offset, 'Z' suffix), plain dates and
    the '%Y-%m-%d %H:%M:%S' form.  Aware values are converted to local time
    and returned naive.  Sentinel '0000-00-00 00:00:00' → None.
    """
    v = trim(value)
    if v is None or v == _SENTINEL_TS:
        return None
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(v)
    except ValueError:
        return None
    if ts.tzinfo is not None:
        ts = ts.astimezone().replace(tzinfo=None)
    return ts


def format_local_ts(value: str | None) -> str | None:
    """Reformat a timestamp string to '%Y-%m-%d %H:%M:%S' local time."""
    ts = parse_any_ts(value)
    return ts.strftime(TS_FORMAT) if ts is not None else None


def local_ts_to_iso_utc(value: str | None) -> str | None:
    """'2020-01-01 00:00:00' (local) → '2019-12-31T23:00:00.000Z' style UTC."""
    ts = parse_any_ts(value)
    if ts is None:
        return None
    utc = ts.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


# ---------------------------------------------------------------------------
# Rule 4: parse_inet
# ---------------------------------------------------------------------------

def parse_inet(
    value: str | None,
) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    v = trim(value)
    if v is None:
        return None
    try:
        return ipaddress.ip_address(v)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Helper: synthetic client identity
# ---------------------------------------------------------------------------

def synthetic_client(key: str) -> tuple[ipaddress.IPv4Address, str]:
    """Return a deterministic (loopback address, fingerprint) pair for key.

    The address always has the form 127.a.b.c with each octet < 255, so
    the same legacy identity maps to the same synthetic client every run.
    """
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    a, b, c = (octet % 255 for octet in digest[:3])
    address = ipaddress.IPv4Address(f"127.{a}.{b}.{c}")
    fingerprint = "l" + digest.hex()[:31]
    return address, fingerprint
