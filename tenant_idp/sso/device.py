"""
User agent heuristics and session token format checks.
"""

import re
from typing import Optional

from tenant_idp.sso.schemas import DeviceInfo, DeviceType

SESSION_TOKEN_PATTERN = re.compile(r"^sso_[A-Za-z0-9_-]{48}$")

# Order matters: Edge and Opera also advertise Chrome, Chrome also advertises Safari.
_BROWSERS = (
    ("Edg", "Edge"),
    ("OPR", "Opera"),
    ("Opera", "Opera"),
    ("Firefox", "Firefox"),
    ("Chrome", "Chrome"),
    ("Safari", "Safari"),
)

# iOS before macOS (iPad/iPhone agents say "like Mac OS X"), Android before Linux.
_OPERATING_SYSTEMS = (
    ("Windows", "Windows"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("Android", "Android"),
    ("Mac OS", "macOS"),
    ("Linux", "Linux"),
)


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """
    Classify a user agent by keyword match. Tablets win over mobile so iPads and
    Android tablets are not reported as phones.
    """
    if not user_agent:
        return DeviceInfo()
    lowered = user_agent.lower()
    if re.search(r"ipad|tablet", lowered):
        device_type = DeviceType.TABLET
    elif re.search(r"mobile|android|iphone", lowered):
        device_type = DeviceType.MOBILE
    else:
        device_type = DeviceType.DESKTOP

    browser = next((name for marker, name in _BROWSERS if marker in user_agent), None)
    os_name = next((name for marker, name in _OPERATING_SYSTEMS if marker in user_agent), None)

    device_name = None
    if browser and os_name:
        device_name = f"{browser} on {os_name}"
    elif browser or os_name:
        device_name = browser or os_name
    return DeviceInfo(device_type=device_type, device_name=device_name, browser=browser, os=os_name)


def sanitize_device_name(name: Optional[str], max_length: int = 100) -> Optional[str]:
    if not name:
        return None
    cleaned = re.sub(r"[^\w\s\-\.()]", "", name).strip()
    return cleaned[:max_length] or None


def is_valid_session_token(token: Optional[str]) -> bool:
    """Cheap format pre-filter before any store lookup."""
    return bool(token) and isinstance(token, str) and SESSION_TOKEN_PATTERN.match(token) is not None
