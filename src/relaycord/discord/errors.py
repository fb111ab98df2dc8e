from __future__ import annotations

from typing import Optional

from ..core.exceptions import PermanentError, RelaycordError, TransientError


class DiscordError(RelaycordError):
    """Base Discord client error."""


class ClientConfigError(DiscordError, PermanentError):
    """Client configuration is invalid."""

    recoverable = PermanentError.recoverable
    severity = PermanentError.severity


class DiscordAPIError(DiscordError):
    """Discord REST request error."""

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[float] = None,
        user_message: Optional[str] = None,
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.retry_after = retry_after


class DiscordTransientError(DiscordAPIError, TransientError):
    """Retryable REST failure (server errors, network issues)."""


class DiscordHTTPError(DiscordAPIError, PermanentError):
    """Non-retryable REST failure carrying the response status and body."""

    recoverable = PermanentError.recoverable
    severity = PermanentError.severity

    def __init__(
        self,
        message: str,
        *,
        status: int,
        body: str = "",
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, retry_after=retry_after)
        self.status = status
        self.body = body


class DiscordAuthenticationError(DiscordHTTPError):
    """The API rejected the token (401/403)."""


class DiscordRateLimitError(DiscordHTTPError):
    """Still rate limited after honoring Retry-After once."""


class GatewayError(DiscordError):
    """Base gateway error."""


class GatewayConnectError(GatewayError):
    """Socket could not be opened or HELLO never arrived."""


class GatewayProtocolError(GatewayError):
    """A frame could not be decoded into a gateway packet."""


class GatewayStateError(GatewayError):
    """Operation is not valid in the connection's current state."""


class GatewayClosedError(GatewayError):
    """The gateway closed the session with a terminal close code."""

    def __init__(self, message: str, *, code: Optional[int], reason: str = "") -> None:
        super().__init__(message)
        self.code = code
        self.reason = reason


class GatewayAuthenticationError(GatewayClosedError):
    """The gateway rejected the token."""
