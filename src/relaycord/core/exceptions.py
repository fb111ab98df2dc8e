"""Shared error base classes.

Integration layers compose these so retry and severity behavior stays
consistent: anything deriving from `TransientError` may be retried, anything
deriving from `PermanentError` must be surfaced to the caller.
"""

from __future__ import annotations

from typing import Optional


class RelaycordError(Exception):
    """Base error for the package."""

    recoverable: bool = False
    severity: str = "error"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class TransientError(RelaycordError):
    """Failure that is expected to clear up on retry."""

    recoverable = True
    severity = "warning"


class PermanentError(RelaycordError):
    """Failure that will not clear up on retry."""

    recoverable = False
    severity = "error"
