from __future__ import annotations

import base64
import enum
import json
from dataclasses import dataclass
from typing import Any, Optional


class Branch(str, enum.Enum):
    STABLE = "stable"
    PTB = "ptb"
    CANARY = "canary"

    @property
    def base_url(self) -> str:
        if self is Branch.STABLE:
            return "https://discord.com"
        return f"https://{self.value}.discord.com"


@dataclass(frozen=True)
class Disguise:
    """Client identity presented to Discord on the gateway and over REST."""

    user_agent: str
    capabilities: int
    os: str
    browser: str
    release_channel: str
    client_version: str
    os_version: str
    os_arch: str
    system_locale: str
    client_build_number: int
    client_event_source: Optional[str] = None

    def properties(self) -> dict[str, Any]:
        return {
            "os": self.os,
            "browser": self.browser,
            "release_channel": self.release_channel,
            "client_version": self.client_version,
            "os_version": self.os_version,
            "os_arch": self.os_arch,
            "system_locale": self.system_locale,
            "browser_user_agent": self.user_agent,
            "client_build_number": self.client_build_number,
            "client_event_source": self.client_event_source,
        }

    def super_properties(self) -> str:
        encoded = json.dumps(self.properties(), separators=(",", ":"))
        return base64.b64encode(encoded.encode("utf-8")).decode("ascii")

    def http_headers(self, origin: str) -> dict[str, str]:
        origin = origin.rstrip("/")
        return {
            "User-Agent": self.user_agent,
            "X-Super-Properties": self.super_properties(),
            "X-Discord-Locale": self.system_locale,
            "X-Debug-Options": "bugReporterEnabled",
            "Accept-Language": f"{self.system_locale},en;q=0.9",
            "Origin": origin,
            "Referer": f"{origin}/channels/@me",
        }


# TODO: scrape client_version and client_build_number from the web client at
# startup instead of pinning them here.
DEFAULT_DISGUISE = Disguise(
    user_agent=(
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) discord/0.0.278 Chrome/91.0.4472.164 "
        "Electron/13.4.0 Safari/537.36"
    ),
    capabilities=125,
    os="Mac OS X",
    browser="Discord Client",
    release_channel="canary",
    client_version="0.0.278",
    os_version="21.2.0",
    os_arch="x64",
    system_locale="en-US",
    client_build_number=105780,
    client_event_source=None,
)
