"""
auth/fingerprint.py -- Device identification from request metadata.

The fingerprint hash covers only the stable subset of client signals
(User-Agent + Accept-Language). IP is deliberately excluded: it churns across
mobile networks and VPNs, and a new IP should not look like a new device.

User-Agent parsing is a small substring/regex matcher, not a full UA
database. It only has to be good enough for session listings ("Chrome 120 on
Windows 10") and the bot heuristic; nothing security-critical depends on the
browser name being right.

Nothing here raises on bad input. Absent headers degrade to "Unknown".
"""

from __future__ import annotations

import hashlib
import ipaddress
import json
import logging
import re
from collections.abc import Iterable, Mapping
from typing import NamedTuple

from auth.models import DeviceInfo, RequestContext

logger = logging.getLogger("sessionguard.auth.fingerprint")

UNKNOWN = "Unknown"

BOT_PATTERNS = ("bot", "crawler", "spider", "scraper", "curl", "wget")

# Proxy headers consulted for the client address, first match wins. They are
# only believed when the connection peer is a trusted proxy.
_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")

_WINDOWS_VERSIONS = {
    "10.0": "10",
    "6.3": "8.1",
    "6.2": "8",
    "6.1": "7",
    "6.0": "Vista",
    "5.1": "XP",
}

_EDGE_RE = re.compile(r"edg/([\d.]+)")
_CHROME_RE = re.compile(r"chrome/([\d.]+)")
_FIREFOX_RE = re.compile(r"firefox/([\d.]+)")
_SAFARI_RE = re.compile(r"version/([\d.]+)")
_OPERA_RE = re.compile(r"(?:opera|opr)/([\d.]+)")
_WINDOWS_RE = re.compile(r"windows nt ([\d.]+)")
_MACOS_RE = re.compile(r"mac os x ([\d_]+)")
_ANDROID_RE = re.compile(r"android ([\d.]+)")
_IOS_RE = re.compile(r"os ([\d_]+)")


class ParsedUserAgent(NamedTuple):
    browser: str = UNKNOWN
    browser_version: str = UNKNOWN
    os: str = UNKNOWN
    os_version: str = UNKNOWN
    device: str = UNKNOWN
    is_bot: bool = False


def _match(pattern: re.Pattern, text: str) -> str:
    m = pattern.search(text)
    return m.group(1) if m else UNKNOWN


def parse_user_agent(user_agent: str | None) -> ParsedUserAgent:
    """Extract browser, OS and device class from a User-Agent string."""
    if not user_agent:
        return ParsedUserAgent()

    ua = user_agent.lower()
    is_bot = any(p in ua for p in BOT_PATTERNS)

    # Order matters: Edge and Opera also advertise "chrome/", Chrome also
    # advertises "safari/".
    browser, browser_version = UNKNOWN, UNKNOWN
    if "edg/" in ua:
        browser, browser_version = "Edge", _match(_EDGE_RE, ua)
    elif "chrome/" in ua:
        browser, browser_version = "Chrome", _match(_CHROME_RE, ua)
    elif "firefox/" in ua:
        browser, browser_version = "Firefox", _match(_FIREFOX_RE, ua)
    elif "safari/" in ua:
        browser, browser_version = "Safari", _match(_SAFARI_RE, ua)
    elif "opera/" in ua or "opr/" in ua:
        browser, browser_version = "Opera", _match(_OPERA_RE, ua)

    # iOS says "like Mac OS X" and Android says "Linux", so both go first.
    os_name, os_version = UNKNOWN, UNKNOWN
    if "windows nt" in ua:
        os_name = "Windows"
        nt = _match(_WINDOWS_RE, ua)
        os_version = _WINDOWS_VERSIONS.get(nt, nt)
    elif "iphone" in ua or "ipad" in ua:
        os_name = "iOS"
        os_version = _match(_IOS_RE, ua).replace("_", ".")
    elif "mac os x" in ua:
        os_name = "macOS"
        os_version = _match(_MACOS_RE, ua).replace("_", ".")
    elif "android" in ua:
        os_name = "Android"
        os_version = _match(_ANDROID_RE, ua)
    elif "linux" in ua:
        os_name = "Linux"

    device = "Desktop"
    if "mobile" in ua:
        device = "Mobile"
    elif "tablet" in ua or "ipad" in ua:
        device = "Tablet"

    return ParsedUserAgent(browser, browser_version, os_name, os_version, device, is_bot)


def sanitize_ip(ip: str | None) -> str:
    """Strip the IPv4-mapped IPv6 prefix (::ffff:1.2.3.4 -> 1.2.3.4)."""
    if not ip:
        return UNKNOWN
    if ip.startswith("::ffff:"):
        return ip[7:]
    return ip


ProxyNetworks = tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...] | None


def parse_trusted_proxies(entries: Iterable[str] | None) -> ProxyNetworks:
    """Turn TRUSTED_PROXIES entries into networks.

    None or a "*" entry means every peer is trusted. Raises ValueError on an
    entry that is neither an address nor a CIDR block.
    """
    if entries is None:
        return None
    entries = [e.strip() for e in entries if e and e.strip()]
    if "*" in entries:
        return None
    return tuple(ipaddress.ip_network(e, strict=False) for e in entries)


def peer_is_trusted(client_host: str | None, networks: ProxyNetworks) -> bool:
    if networks is None:
        return True
    try:
        peer = ipaddress.ip_address(sanitize_ip(client_host))
    except ValueError:
        return False
    return any(peer in net for net in networks)


def client_ip(ctx: RequestContext, trusted_proxies: ProxyNetworks = None) -> str:
    """Resolve the client address: first X-Forwarded-For hop, then X-Real-IP,
    then CF-Connecting-IP, then the connection peer.

    With trusted_proxies set, the headers are ignored unless the peer falls
    inside one of the networks.
    """
    if not peer_is_trusted(ctx.client_host, trusted_proxies):
        return sanitize_ip(ctx.client_host)
    for name in _IP_HEADERS:
        value = ctx.header(name)
        if value:
            first = value.split(",")[0].strip()
            if first:
                return sanitize_ip(first)
    return sanitize_ip(ctx.client_host)


def fingerprint_hash(user_agent: str, accept_language: str) -> str:
    payload = json.dumps(
        {"acceptLanguage": accept_language, "userAgent": user_agent},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def describe(parsed: ParsedUserAgent) -> str:
    """Human-readable label, e.g. "Chrome 120 on Windows 10 (Mobile)"."""
    parts = ""
    if parsed.browser != UNKNOWN:
        parts = parsed.browser
        if parsed.browser_version != UNKNOWN:
            parts += f" {parsed.browser_version.split('.')[0]}"
    if parsed.os != UNKNOWN:
        if parts:
            parts += " on "
        parts += parsed.os
        if parsed.os_version != UNKNOWN:
            parts += f" {parsed.os_version}"
    if parts and parsed.device not in ("Desktop", UNKNOWN):
        parts += f" ({parsed.device})"
    return parts or "Unknown Device"


class DeviceFingerprinter:
    """Build DeviceInfo records. Stateless apart from the proxy allow-list."""

    def __init__(self, trusted_proxies: Iterable[str] | None = None) -> None:
        self.trusted_proxies = parse_trusted_proxies(trusted_proxies)

    def from_context(self, ctx: RequestContext) -> DeviceInfo:
        user_agent = ctx.header("user-agent") or ""
        accept_language = ctx.header("accept-language") or UNKNOWN
        parsed = parse_user_agent(user_agent)
        return DeviceInfo(
            fingerprint_hash=fingerprint_hash(user_agent, accept_language),
            ip_address=client_ip(ctx, self.trusted_proxies),
            user_agent=user_agent,
            accept_language=accept_language,
            browser=parsed.browser,
            browser_version=parsed.browser_version,
            os=parsed.os,
            os_version=parsed.os_version,
            device=parsed.device,
            description=describe(parsed),
            is_bot=parsed.is_bot,
        )

    def from_headers(self, headers: Mapping[str, str] | None, client_host: str | None = None) -> DeviceInfo:
        return self.from_context(RequestContext.build(headers, client_host))
