"""Collector for gateway traffic, for diagnostics surfaces.

The log is created once per application run and handed to the gateway
(sent packets) and the dispatcher (received packets). Nothing reaches it
implicitly.
"""

from __future__ import annotations

import copy
import enum
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

DEFAULT_MAX_ENTRIES = 1000

_SECRET_KEYS = frozenset({"token"})


class Direction(str, enum.Enum):
    SENT = "sent"
    RECEIVED = "received"


@dataclass(frozen=True)
class LogEntry:
    direction: Direction
    timestamp: datetime
    packet: dict[str, Any]

    @property
    def op(self) -> Optional[int]:
        op = self.packet.get("op")
        return op if isinstance(op, int) else None

    @property
    def event_name(self) -> Optional[str]:
        name = self.packet.get("t")
        return name if isinstance(name, str) else None


def redact_packet(packet: dict[str, Any]) -> dict[str, Any]:
    """Copy of `packet` with credentials in its payload masked."""
    redacted = copy.deepcopy(packet)
    data = redacted.get("d")
    if isinstance(data, dict):
        for key in _SECRET_KEYS & data.keys():
            data[key] = "<redacted>"
    return redacted


class PacketLog:
    def __init__(
        self,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=max(max_entries, 1))
        self._now = now_fn or (lambda: datetime.now(timezone.utc))

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: LogEntry) -> None:
        self._entries.append(entry)

    def record_sent(self, packet: dict[str, Any]) -> LogEntry:
        entry = LogEntry(Direction.SENT, self._now(), redact_packet(packet))
        self.append(entry)
        return entry

    def record_received(self, packet: dict[str, Any]) -> LogEntry:
        entry = LogEntry(Direction.RECEIVED, self._now(), packet)
        self.append(entry)
        return entry

    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def drain(self) -> list[LogEntry]:
        drained = list(self._entries)
        self._entries.clear()
        return drained

    def clear(self) -> None:
        self._entries.clear()
