from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx

from ..core.logging_utils import log_event
from ..core.retry import transient_retrying
from .constants import (
    DISCORD_API_VERSION,
    DISCORD_MAX_HISTORY_LIMIT,
    DISCORD_MAX_MESSAGE_LENGTH,
)
from .disguise import DEFAULT_DISGUISE, Branch, Disguise
from .errors import (
    DiscordAPIError,
    DiscordAuthenticationError,
    DiscordHTTPError,
    DiscordRateLimitError,
    DiscordTransientError,
)
from .models import CurrentUser, Message
from .snowflake import Snowflake

# Route segments whose id is part of the rate limit bucket.
_MAJOR_PARAMETERS = frozenset({"channels", "guilds", "webhooks"})
_DEFAULT_RETRY_AFTER_SECONDS = 1.0


def rate_limit_bucket(method: str, path: str) -> str:
    segments = path.split("?", 1)[0].strip("/").split("/")
    normalized: list[str] = []
    for index, segment in enumerate(segments):
        is_major = index > 0 and segments[index - 1] in _MAJOR_PARAMETERS
        if segment.isdigit() and not is_major:
            normalized.append("{id}")
        else:
            normalized.append(segment)
    return f"{method.upper()} /{'/'.join(normalized)}"


def make_nonce(
    moment: Optional[datetime] = None,
    *,
    rand_bits: Callable[[int], int] = random.getrandbits,
) -> str:
    """Time-ordered idempotency token in snowflake format."""
    base = Snowflake.from_datetime(moment or datetime.now(timezone.utc))
    return str(Snowflake(int(base) | rand_bits(22)))


def _body_preview(response: httpx.Response) -> str:
    return (response.text or "").strip().replace("\n", " ")[:200]


def parse_retry_after(response: httpx.Response) -> tuple[float, bool]:
    """Seconds to wait and whether the limit is global, from a 429 response."""
    payload: Any = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    retry_after: Optional[float] = None
    header = response.headers.get("Retry-After")
    if header is not None:
        try:
            retry_after = float(header)
        except ValueError:
            retry_after = None
    if retry_after is None and isinstance(payload, dict):
        value = payload.get("retry_after")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            retry_after = float(value)
    if retry_after is None:
        retry_after = _DEFAULT_RETRY_AFTER_SECONDS
    is_global = response.headers.get("X-RateLimit-Global", "").lower() == "true"
    if isinstance(payload, dict) and payload.get("global") is True:
        is_global = True
    return max(retry_after, 0.0), is_global


@dataclass
class _RateLimitBudget:
    rate_limited: bool = False


class RestClient:
    """REST access for a user account, with per-bucket rate limiting.

    Rate limit state lives only in this client. A 429 suspends its bucket
    (or every bucket, for a global limit) and the request is retried once
    after the suspension. Server errors and network failures are retried
    with exponential backoff; other 4xx responses are surfaced as is.
    """

    def __init__(
        self,
        *,
        token: str,
        branch: Branch = Branch.CANARY,
        disguise: Disguise = DEFAULT_DISGUISE,
        api_version: int = DISCORD_API_VERSION,
        base_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock_fn: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not token:
            raise ValueError("REST client requires a non-empty token")
        origin = branch.base_url
        headers = {"Authorization": token, **disguise.http_headers(origin)}
        self._client = httpx.AsyncClient(
            base_url=base_url or f"{origin}/api/v{api_version}",
            timeout=timeout_seconds,
            headers=headers,
            transport=transport,
        )
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._sleep = sleep_fn
        self._clock = clock_fn
        self._logger = logger or logging.getLogger(__name__)
        self._suspended_until: dict[str, float] = {}
        self._global_suspended_until = 0.0

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "RestClient":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    def bucket_delay(self, bucket: str) -> float:
        until = max(self._suspended_until.get(bucket, 0.0), self._global_suspended_until)
        return max(until - self._clock(), 0.0)

    def _suspend(self, bucket: str, seconds: float, *, is_global: bool) -> None:
        now = self._clock()
        until = now + seconds
        expired_buckets = [
            key for key, value in self._suspended_until.items() if value <= now
        ]
        for expired in expired_buckets:
            del self._suspended_until[expired]
        if is_global:
            self._global_suspended_until = max(self._global_suspended_until, until)
        else:
            self._suspended_until[bucket] = max(self._suspended_until.get(bucket, 0.0), until)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        bucket = rate_limit_bucket(method, path)
        budget = _RateLimitBudget()
        retrying = transient_retrying(
            max_retries=self._max_retries,
            base_wait=self._retry_base_delay,
            max_wait=self._retry_max_delay,
            sleep=self._sleep,
            logger=self._logger,
            operation=f"{method.upper()} {path}",
        )
        async for attempt in retrying:
            with attempt:
                return await self._request_once(
                    method, path, bucket, params, json, budget
                )
        raise AssertionError("retry loop exited without an outcome")

    async def _request_once(
        self,
        method: str,
        path: str,
        bucket: str,
        params: Optional[dict[str, Any]],
        json: Any,
        budget: _RateLimitBudget,
    ) -> Any:
        while True:
            response = await self._send(method, path, bucket, params, json)
            if response.status_code != 429:
                return self._decode(method, path, response)
            retry_after, is_global = parse_retry_after(response)
            self._suspend(bucket, retry_after, is_global=is_global)
            # One 429 is honored per request, across transient retries too.
            if budget.rate_limited:
                raise DiscordRateLimitError(
                    f"Discord API rate limit exceeded for {method} {path}",
                    status=429,
                    body=_body_preview(response),
                    retry_after=retry_after,
                )
            budget.rate_limited = True
            log_event(
                self._logger,
                logging.INFO,
                "rest.rate_limited",
                method=method,
                path=path,
                bucket=bucket,
                retry_after=retry_after,
                is_global=is_global,
            )

    async def _send(
        self,
        method: str,
        path: str,
        bucket: str,
        params: Optional[dict[str, Any]],
        json: Any,
    ) -> httpx.Response:
        delay = self.bucket_delay(bucket)
        if delay > 0:
            self._logger.debug("waiting %.2fs for bucket %s", delay, bucket)
            await self._sleep(delay)
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.TransportError as exc:
            raise DiscordTransientError(
                f"Discord API network error for {method} {path}: {exc}"
            ) from exc
        self._observe_bucket_headers(bucket, response)
        return response

    def _observe_bucket_headers(self, bucket: str, response: httpx.Response) -> None:
        if response.headers.get("X-RateLimit-Remaining") != "0":
            return
        try:
            reset_after = float(response.headers.get("X-RateLimit-Reset-After", ""))
        except ValueError:
            return
        self._suspend(bucket, max(reset_after, 0.0), is_global=False)

    def _decode(self, method: str, path: str, response: httpx.Response) -> Any:
        status = response.status_code
        if 200 <= status < 300:
            if status == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                raise DiscordAPIError(
                    f"Discord API returned non-JSON success response for {method} {path}"
                ) from exc
        body = _body_preview(response)
        if status >= 500:
            raise DiscordTransientError(
                f"Discord API server error for {method} {path}: "
                f"status={status} body={body!r}"
            )
        if status in {401, 403}:
            raise DiscordAuthenticationError(
                f"Discord API authentication failure for {method} {path}: "
                f"status={status} body={body!r}",
                status=status,
                body=body,
            )
        raise DiscordHTTPError(
            f"Discord API request failed for {method} {path}: "
            f"status={status} body={body!r}",
            status=status,
            body=body,
        )

    async def get_gateway(self) -> dict[str, Any]:
        payload = await self.request("GET", "/gateway")
        return payload if isinstance(payload, dict) else {}

    async def fetch_current_user(self) -> CurrentUser:
        return CurrentUser.from_json(await self.request("GET", "/users/@me"))

    async def fetch_messages(
        self,
        channel_id: Snowflake | int | str,
        *,
        limit: int = 50,
        before: Snowflake | int | str | None = None,
    ) -> list[Message]:
        """Fetch one page of history, newest message first."""
        if not 1 <= limit <= DISCORD_MAX_HISTORY_LIMIT:
            raise ValueError(
                f"limit must be between 1 and {DISCORD_MAX_HISTORY_LIMIT}, got {limit}"
            )
        params: dict[str, Any] = {"limit": limit}
        if before is not None:
            params["before"] = str(Snowflake.parse(before))
        payload = await self.request(
            "GET", f"/channels/{Snowflake.parse(channel_id)}/messages", params=params
        )
        if not isinstance(payload, list):
            raise DiscordAPIError(
                f"expected a list of messages for channel {channel_id}"
            )
        return [Message.from_json(item) for item in payload]

    async def send_message(
        self,
        channel_id: Snowflake | int | str,
        content: str,
        *,
        tts: bool = False,
        nonce: Optional[str] = None,
    ) -> Message:
        if not content.strip():
            raise ValueError("message content must not be empty")
        if len(content) > DISCORD_MAX_MESSAGE_LENGTH:
            raise ValueError(
                f"message content exceeds {DISCORD_MAX_MESSAGE_LENGTH} characters"
            )
        body = {
            "content": content,
            "tts": tts,
            "nonce": nonce if nonce is not None else make_nonce(),
        }
        payload = await self.request(
            "POST", f"/channels/{Snowflake.parse(channel_id)}/messages", json=body
        )
        return Message.from_json(payload)
