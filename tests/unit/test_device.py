"""Unit tests for user agent parsing and session token checks."""

import pytest

from tenant_idp.sso.device import is_valid_session_token, parse_user_agent, sanitize_device_name
from tenant_idp.sso.schemas import DeviceType

from conftest import CHROME_UA


@pytest.mark.parametrize(
    "user_agent,device_type,device_name",
    [
        (CHROME_UA, DeviceType.DESKTOP, "Chrome on Windows"),
        (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.1 Safari/605.1.15",
            DeviceType.DESKTOP,
            "Safari on macOS",
        ),
        (
            "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0",
            DeviceType.DESKTOP,
            "Firefox on Linux",
        ),
        (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36 Edg/120.0.2210.91",
            DeviceType.DESKTOP,
            "Edge on Windows",
        ),
        (
            "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1",
            DeviceType.MOBILE,
            "Safari on iOS",
        ),
        (
            "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36",
            DeviceType.MOBILE,
            "Chrome on Android",
        ),
        (
            "Mozilla/5.0 (iPad; CPU OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1",
            DeviceType.TABLET,
            "Safari on iOS",
        ),
        ("curl/8.4.0", DeviceType.DESKTOP, None),
    ],
)
def test_parse_user_agent(user_agent, device_type, device_name):
    info = parse_user_agent(user_agent)
    assert info.device_type == device_type
    assert info.device_name == device_name


@pytest.mark.parametrize("user_agent", [None, ""])
def test_parse_missing_user_agent(user_agent):
    info = parse_user_agent(user_agent)
    assert info.device_type == DeviceType.UNKNOWN
    assert info.device_name is None


def test_sanitize_device_name():
    assert sanitize_device_name("Chrome; on <Windows>") == "Chrome on Windows"
    assert sanitize_device_name("Safari (iOS)") == "Safari (iOS)"
    assert sanitize_device_name("x" * 150) == "x" * 100
    assert sanitize_device_name("<>;") is None
    assert sanitize_device_name(None) is None


@pytest.mark.parametrize(
    "token,valid",
    [
        ("sso_" + "a" * 48, True),
        ("sso_" + "A1_-" * 12, True),
        ("sso_" + "a" * 47, False),
        ("sso_" + "a" * 49, False),
        ("abc_" + "a" * 48, False),
        ("sso_" + "a" * 47 + "!", False),
        ("", False),
        (None, False),
    ],
)
def test_is_valid_session_token(token, valid):
    assert is_valid_session_token(token) is valid
