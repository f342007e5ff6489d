import re
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ClientInfo:
    display_name: str
    platform: str


_HAPP_VERSION = re.compile(r"Happ/([\d.]+)", re.IGNORECASE)

# (marker, app name, [(os marker, platform)], default platform)
_KNOWN_CLIENTS = (
    ("v2raytun", "V2RayTun", (("ios", "iPhone"), ("iphone", "iPhone"), ("mac", "Mac"),
                             ("android", "Android"), ("win", "Windows")), "Standard"),
    ("streisand", "Streisand", (("ios", "iPhone"), ("iphone", "iPhone"), ("mac", "Mac"),
                               ("android", "Android")), "Standard"),
    ("hiddify", "Hiddify", (("ios", "iPhone"), ("android", "Android"), ("mac", "Mac"),
                           ("windows", "Windows"), ("linux", "Linux")), "Standard"),
    ("sing-box", "sing-box", (("ios", "iPhone"), ("android", "Android"), ("mac", "Mac")), "Standard"),
    ("v2box", "V2Box", (), "iPhone"),
    ("foxray", "FoXray", (), "iPhone"),
    ("nekoray", "Nekoray", (), "Windows"),
    ("nekobox", "Nekoray", (), "Windows"),
    ("v2rayng", "v2rayNG", (), "Android"),
    ("clashx", "ClashX", (), "Mac"),
    ("clash", "Clash", (), "Standard"),
)

_OS_FALLBACK = (
    (("iphone", "ios"), "iPhone"),
    (("mac", "darwin"), "Mac"),
    (("android",), "Android"),
    (("windows", "win"), "Windows"),
    (("linux",), "Linux"),
)


def parse_client_string(user_agent: str) -> ClientInfo:
    """Classify a VPN client's User-Agent into an app name and a platform."""
    ua = (user_agent or "").strip()
    ua_lower = ua.lower()
    base_name = ua.split("/")[0].strip() or "Unknown"

    if "happ" in ua_lower:
        match = _HAPP_VERSION.search(ua)
        return ClientInfo(f"Happ {match.group(1)}" if match else "Happ", "iPhone")

    for marker, app_name, platforms, default_platform in _KNOWN_CLIENTS:
        if marker not in ua_lower:
            continue
        for os_marker, platform in platforms:
            if os_marker in ua_lower:
                return ClientInfo(app_name, platform)
        return ClientInfo(app_name, default_platform)

    for markers, platform in _OS_FALLBACK:
        if any(marker in ua_lower for marker in markers):
            return ClientInfo(base_name, platform)

    return ClientInfo(base_name, "Standard")
