"""Tests for _fbc/_fbp cookie parsing and fbclid promotion."""

import pytest

from funnelcast.core.cookies import (
    BrowserCookie,
    click_cookie_from_fbclid,
    is_valid_cookie,
    parse_cookie,
)


def test_parse_valid_click_cookie():
    cookie = parse_cookie("fb.1.1700000000000.IwAR2abcDEF")
    assert cookie == BrowserCookie(subdomain_index=1, created_ms=1700000000000, token="IwAR2abcDEF")


def test_str_rebuilds_wire_value():
    raw = "fb.2.1700000000123.9876543210"
    assert str(parse_cookie(raw)) == raw


def test_parse_trims_whitespace():
    assert parse_cookie("  fb.1.1700000000000.abc  ").token == "abc"


def test_token_case_preserved():
    assert parse_cookie("fb.1.1700000000000.IwAR_MixedCase").token == "IwAR_MixedCase"


@pytest.mark.parametrize("raw", [
    None,
    "",
    "   ",
    "FALLBACK",
    "fb.1.1700000000000.FALLBACK",
    "fb.1.fallback_user_42",
    "fb.1.1700000000000.",
    "fb.3.1700000000000.abc",       # subdomain index out of range
    "fb.1.17000.abc",               # timestamp too short
    "fbc.1.1700000000000.abc",
    "random-garbage",
])
def test_invalid_cookies_rejected(raw):
    assert parse_cookie(raw) is None
    assert is_valid_cookie(raw) is False


def test_click_cookie_from_fbclid_uses_millis():
    assert click_cookie_from_fbclid("IwAR2xyz", now=1700000000.5) == "fb.1.1700000000500.IwAR2xyz"


def test_click_cookie_from_fbclid_is_valid_cookie():
    assert is_valid_cookie(click_cookie_from_fbclid("IwAR2xyz"))


@pytest.mark.parametrize("fbclid", [None, "", "  ", "FALLBACK"])
def test_click_cookie_from_empty_fbclid(fbclid):
    assert click_cookie_from_fbclid(fbclid) is None
