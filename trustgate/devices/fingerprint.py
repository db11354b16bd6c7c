"""
Device fingerprinting.

The fingerprint is a SHA-256 over a fixed, ordered list of stable device
signals joined with "|", truncated to 32 hex chars. Absent signals are
omitted, never substituted, so a client that stops reporting one signal
produces a different (new) fingerprint rather than a collision.
"""

import hashlib
import re
from typing import Optional

from trustgate.devices.schemas import DevicePlatform, DeviceSignals

FINGERPRINT_LENGTH = 32

_IOS_VERSION = re.compile(r"OS (\d+[._]\d+)")
_ANDROID_VERSION = re.compile(r"Android (\d+\.?\d*)")
_WINDOWS_VERSION = re.compile(r"Windows NT (\d+\.\d+)")
_MACOS_VERSION = re.compile(r"Mac OS X (\d+[._]\d+)")
_ANDROID_MODEL = re.compile(r";\s*([^;]+?)\s*Build")


def fingerprint_components(signals: DeviceSignals) -> list[str]:
    """Ordered, present-only signal values."""
    resolution = None
    if signals.screen_width is not None and signals.screen_height is not None:
        resolution = f"{signals.screen_width}x{signals.screen_height}"

    ordered = [
        signals.user_agent,
        signals.platform,
        resolution,
        signals.color_depth,
        signals.timezone,
        signals.language,
        signals.hardware_concurrency,
        signals.canvas_hash,
        signals.webgl_vendor,
        signals.webgl_renderer,
        signals.fonts_hash,
        signals.device_id,
    ]
    return [str(v) for v in ordered if v is not None and v != ""]


def generate_fingerprint(signals: DeviceSignals) -> str:
    digest = hashlib.sha256("|".join(fingerprint_components(signals)).encode()).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


def detect_platform(user_agent: str) -> DevicePlatform:
    ua = user_agent.lower()
    if "iphone" in ua or "ipad" in ua:
        return DevicePlatform.IOS
    if "android" in ua:
        return DevicePlatform.ANDROID
    if "mozilla" in ua or "chrome" in ua or "safari" in ua:
        return DevicePlatform.WEB
    return DevicePlatform.UNKNOWN


def extract_os_version(user_agent: str) -> Optional[str]:
    match = _IOS_VERSION.search(user_agent)
    if match:
        return f"iOS {match.group(1).replace('_', '.')}"
    match = _ANDROID_VERSION.search(user_agent)
    if match:
        return f"Android {match.group(1)}"
    match = _WINDOWS_VERSION.search(user_agent)
    if match:
        return f"Windows {match.group(1)}"
    match = _MACOS_VERSION.search(user_agent)
    if match:
        return f"macOS {match.group(1).replace('_', '.')}"
    return None


def extract_device_model(user_agent: str) -> Optional[str]:
    if "iPhone" in user_agent:
        return "iPhone"
    if "iPad" in user_agent:
        return "iPad"
    match = _ANDROID_MODEL.search(user_agent)
    if match:
        return match.group(1).strip()
    return None


def device_display_name(model: Optional[str], platform: DevicePlatform, os_version: Optional[str]) -> str:
    base = model or {
        DevicePlatform.IOS: "iOS device",
        DevicePlatform.ANDROID: "Android device",
        DevicePlatform.WEB: "Web browser",
    }.get(platform, "Unknown device")
    return f"{base} ({os_version})" if os_version else base
