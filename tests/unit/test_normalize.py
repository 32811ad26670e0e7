"""Unit tests for legacy_import.normalize."""

import ipaddress
from datetime import datetime

import pytest

from legacy_import.normalize import (
    format_local_ts,
    local_ts_to_iso_utc,
    parse_any_ts,
    parse_inet,
    parse_int_prefix,
    synthetic_client,
    trim,
)


# ---------------------------------------------------------------------------
# trim
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_none_returns_none(self):
        assert trim(None) is None


# ---------------------------------------------------------------------------
# parse_int_prefix
# ---------------------------------------------------------------------------

class TestParseIntPrefix:
    @pytest.mark.parametrize("raw,expected", [
        ("42", 42),
        ("  7", 7),
        ("-3", -3),
        ("12abc", 12),
    ])
    def test_leading_integer(self, raw, expected):
        assert parse_int_prefix(raw) == expected

    @pytest.mark.parametrize("raw", ["NULL", "", "abc12", None])
    def test_no_integer(self, raw):
        assert parse_int_prefix(raw) is None


# ---------------------------------------------------------------------------
# timestamps
# ---------------------------------------------------------------------------

class TestTimestamps:
    def test_plain_date_gets_midnight(self):
        assert format_local_ts("2020-01-01") == "2020-01-01 00:00:00"

    def test_space_separated_passthrough(self):
        assert format_local_ts("2021-06-15 08:30:05") == "2021-06-15 08:30:05"

    def test_iso_with_t_separator(self):
        assert format_local_ts("2021-06-15T08:30:05") == "2021-06-15 08:30:05"

    def test_aware_value_converted_to_local(self):
        expected = (
            datetime.fromisoformat("2021-06-15T08:30:05+00:00")
            .astimezone()
            .strftime("%Y-%m-%d %H:%M:%S")
        )
        assert format_local_ts("2021-06-15T08:30:05Z") == expected

    def test_sentinel_and_garbage(self):
        assert format_local_ts("0000-00-00 00:00:00") is None
        assert format_local_ts("yesterday") is None
        assert format_local_ts("") is None

    def test_parse_any_ts_returns_naive(self):
        ts = parse_any_ts("2021-06-15T08:30:05+02:00")
        assert ts is not None
        assert ts.tzinfo is None

    def test_iso_utc_round_trip_shape(self):
        iso = local_ts_to_iso_utc("2020-01-01 00:00:00")
        assert iso is not None
        assert iso.endswith(".000Z")
        assert len(iso) == len("2020-01-01T00:00:00.000Z")

    def test_iso_utc_none(self):
        assert local_ts_to_iso_utc(None) is None


# ---------------------------------------------------------------------------
# inet
# ---------------------------------------------------------------------------

class TestParseInet:
    def test_ipv4(self):
        assert parse_inet("10.0.0.1") == ipaddress.IPv4Address("10.0.0.1")

    def test_ipv6(self):
        assert parse_inet("::1") == ipaddress.IPv6Address("::1")

    def test_invalid(self):
        assert parse_inet("not-an-ip") is None
        assert parse_inet(None) is None


# ---------------------------------------------------------------------------
# synthetic_client
# ---------------------------------------------------------------------------

class TestSyntheticClient:
    def test_deterministic(self):
        assert synthetic_client("author:17") == synthetic_client("author:17")

    def test_loopback_shape(self):
        address, fingerprint = synthetic_client("author:17")
        octets = str(address).split(".")
        assert octets[0] == "127"
        assert all(0 <= int(o) < 255 for o in octets[1:])
        assert len(fingerprint) == 32

    def test_distinct_keys_differ(self):
        assert synthetic_client("author:17")[1] != synthetic_client("author:18")[1]
