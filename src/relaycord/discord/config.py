from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from .constants import (
    DEFAULT_CLOSE_TIMEOUT_SECONDS,
    DEFAULT_HELLO_TIMEOUT_SECONDS,
    DEFAULT_RECONNECT_BASE_SECONDS,
    DEFAULT_RECONNECT_MAX_SECONDS,
    DISCORD_API_VERSION,
    DISCORD_GATEWAY_URL,
)
from .disguise import Branch
from .errors import ClientConfigError
from .gateway import ClosePolicy
from .packet_log import DEFAULT_MAX_ENTRIES

DEFAULT_TOKEN_ENV = "RELAYCORD_TOKEN"
DEFAULT_BRANCH = Branch.CANARY
DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0
DEFAULT_HTTP_MAX_RETRIES = 3
DEFAULT_HTTP_RETRY_BASE_DELAY = 1.0
DEFAULT_HTTP_RETRY_MAX_DELAY = 30.0
DEFAULT_LOG_LEVEL = "INFO"

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_HTTP_MAX_RETRIES
    retry_base_delay: float = DEFAULT_HTTP_RETRY_BASE_DELAY
    retry_max_delay: float = DEFAULT_HTTP_RETRY_MAX_DELAY


@dataclass(frozen=True)
class ReconnectConfig:
    base_seconds: float = DEFAULT_RECONNECT_BASE_SECONDS
    max_seconds: float = DEFAULT_RECONNECT_MAX_SECONDS


@dataclass(frozen=True)
class LogConfig:
    level: str = DEFAULT_LOG_LEVEL
    path: Optional[Path] = None

    @property
    def level_number(self) -> int:
        return int(getattr(logging, self.level))


@dataclass(frozen=True)
class ClientConfig:
    token_env: str = DEFAULT_TOKEN_ENV
    token: Optional[str] = field(default=None, repr=False)
    branch: Branch = DEFAULT_BRANCH
    gateway_url: str = DISCORD_GATEWAY_URL
    api_version: int = DISCORD_API_VERSION
    intents: Optional[int] = None
    hello_timeout: float = DEFAULT_HELLO_TIMEOUT_SECONDS
    close_timeout: float = DEFAULT_CLOSE_TIMEOUT_SECONDS
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    close_policy: ClosePolicy = field(default_factory=ClosePolicy)
    http: HttpConfig = field(default_factory=HttpConfig)
    log: LogConfig = field(default_factory=LogConfig)
    packet_log_max_entries: int = DEFAULT_MAX_ENTRIES

    @classmethod
    def from_raw(
        cls,
        raw: Optional[Mapping[str, Any]],
        *,
        root: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ClientConfig":
        cfg: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
        env = os.environ if environ is None else environ

        token_env = str(cfg.get("token_env", DEFAULT_TOKEN_ENV)).strip()
        if not token_env:
            raise ClientConfigError("token_env must be non-empty")
        token = env.get(token_env) or None

        branch_value = str(cfg.get("branch", DEFAULT_BRANCH.value)).strip().lower()
        try:
            branch = Branch(branch_value)
        except ValueError as exc:
            choices = ", ".join(item.value for item in Branch)
            raise ClientConfigError(f"branch must be one of: {choices}") from exc

        gateway_url = cfg.get("gateway_url", DISCORD_GATEWAY_URL)
        if not isinstance(gateway_url, str) or not gateway_url.startswith(
            ("wss://", "ws://")
        ):
            raise ClientConfigError("gateway_url must be a ws:// or wss:// URL")

        intents = cfg.get("intents")
        if intents is not None and (
            not isinstance(intents, int) or isinstance(intents, bool) or intents < 0
        ):
            raise ClientConfigError("intents must be a non-negative integer")

        reconnect_cfg = _section(cfg, "reconnect")
        reconnect = ReconnectConfig(
            base_seconds=_parse_positive_float_or_default(
                reconnect_cfg.get("base_seconds"),
                default=DEFAULT_RECONNECT_BASE_SECONDS,
                key="reconnect.base_seconds",
            ),
            max_seconds=_parse_positive_float_or_default(
                reconnect_cfg.get("max_seconds"),
                default=DEFAULT_RECONNECT_MAX_SECONDS,
                key="reconnect.max_seconds",
            ),
        )
        if reconnect.max_seconds < reconnect.base_seconds:
            raise ClientConfigError(
                "reconnect.max_seconds must be >= reconnect.base_seconds"
            )

        close_codes_cfg = _section(cfg, "close_codes")
        close_policy = ClosePolicy.from_codes(
            fatal=_parse_close_codes(close_codes_cfg.get("fatal"), key="close_codes.fatal"),
            non_resumable=_parse_close_codes(
                close_codes_cfg.get("non_resumable"), key="close_codes.non_resumable"
            ),
        )
        overlap = close_policy.fatal_codes & close_policy.non_resumable_codes
        if overlap:
            raise ClientConfigError(
                "close_codes.fatal and close_codes.non_resumable overlap: "
                + ", ".join(str(code) for code in sorted(overlap))
            )

        http_cfg = _section(cfg, "http")
        http = HttpConfig(
            timeout_seconds=_parse_positive_float_or_default(
                http_cfg.get("timeout_seconds"),
                default=DEFAULT_HTTP_TIMEOUT_SECONDS,
                key="http.timeout_seconds",
            ),
            max_retries=_parse_non_negative_int_or_default(
                http_cfg.get("max_retries"),
                default=DEFAULT_HTTP_MAX_RETRIES,
                key="http.max_retries",
            ),
            retry_base_delay=_parse_positive_float_or_default(
                http_cfg.get("retry_base_delay"),
                default=DEFAULT_HTTP_RETRY_BASE_DELAY,
                key="http.retry_base_delay",
            ),
            retry_max_delay=_parse_positive_float_or_default(
                http_cfg.get("retry_max_delay"),
                default=DEFAULT_HTTP_RETRY_MAX_DELAY,
                key="http.retry_max_delay",
            ),
        )

        log_cfg = _section(cfg, "log")
        level = str(log_cfg.get("level", DEFAULT_LOG_LEVEL)).strip().upper()
        if level not in _LOG_LEVELS:
            raise ClientConfigError(
                f"log.level must be one of: {', '.join(sorted(_LOG_LEVELS))}"
            )
        log_path_value = log_cfg.get("path")
        log_path: Optional[Path] = None
        if log_path_value is not None:
            if not isinstance(log_path_value, str) or not log_path_value.strip():
                raise ClientConfigError("log.path must be a string path")
            log_path = Path(log_path_value).expanduser()
            if root is not None and not log_path.is_absolute():
                log_path = (root / log_path).resolve()

        packet_log_cfg = _section(cfg, "packet_log")
        packet_log_max_entries = _parse_non_negative_int_or_default(
            packet_log_cfg.get("max_entries"),
            default=DEFAULT_MAX_ENTRIES,
            key="packet_log.max_entries",
        )

        return cls(
            token_env=token_env,
            token=token,
            branch=branch,
            gateway_url=gateway_url,
            api_version=_parse_non_negative_int_or_default(
                cfg.get("api_version"), default=DISCORD_API_VERSION, key="api_version"
            ),
            intents=intents,
            hello_timeout=_parse_positive_float_or_default(
                cfg.get("hello_timeout"),
                default=DEFAULT_HELLO_TIMEOUT_SECONDS,
                key="hello_timeout",
            ),
            close_timeout=_parse_positive_float_or_default(
                cfg.get("close_timeout"),
                default=DEFAULT_CLOSE_TIMEOUT_SECONDS,
                key="close_timeout",
            ),
            reconnect=reconnect,
            close_policy=close_policy,
            http=http,
            log=LogConfig(level=level, path=log_path),
            packet_log_max_entries=packet_log_max_entries,
        )

    def require_token(self) -> str:
        if not self.token:
            raise ClientConfigError(f"env var {self.token_env} is unset")
        return self.token


def _section(cfg: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = cfg.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ClientConfigError(f"{key} must be a mapping")
    return value


def _parse_close_codes(value: Any, *, key: str) -> Optional[frozenset[int]]:
    if value is None:
        return None
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ClientConfigError(f"{key} must be a list of close codes")
    codes: set[int] = set()
    for item in value:
        if not isinstance(item, int) or isinstance(item, bool):
            raise ClientConfigError(f"{key} entries must be integers")
        if not 1000 <= item <= 4999:
            raise ClientConfigError(f"{key} entry {item} is not a close code")
        codes.add(item)
    return frozenset(codes)


def _parse_positive_float_or_default(value: Any, *, default: float, key: str) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ClientConfigError(f"{key} must be a number")
    if value <= 0:
        raise ClientConfigError(f"{key} must be > 0")
    return float(value)


def _parse_non_negative_int_or_default(value: Any, *, default: int, key: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ClientConfigError(f"{key} must be an integer")
    if value < 0:
        raise ClientConfigError(f"{key} must be >= 0")
    return value
