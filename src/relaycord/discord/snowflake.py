from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from .constants import DISCORD_EPOCH_MS

T = TypeVar("T")

_MAX_SNOWFLAKE = (1 << 64) - 1


class Snowflake(int):
    """A 64-bit Discord identifier with its creation time in the top 42 bits."""

    __slots__ = ()

    def __new__(cls, value: Any) -> "Snowflake":
        if isinstance(value, bool):
            raise TypeError("snowflake cannot be a bool")
        if isinstance(value, str):
            value = value.strip()
            if not value.isdigit():
                raise ValueError(f"invalid snowflake: {value!r}")
        parsed = int(value)
        if parsed < 0 or parsed > _MAX_SNOWFLAKE:
            raise ValueError(f"snowflake out of range: {parsed}")
        return super().__new__(cls, parsed)

    @classmethod
    def parse(cls, value: Any) -> "Snowflake":
        if isinstance(value, cls):
            return value
        return cls(value)

    @classmethod
    def from_datetime(cls, moment: datetime) -> "Snowflake":
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        millis = int(moment.timestamp() * 1000) - DISCORD_EPOCH_MS
        return cls(max(millis, 0) << 22)

    @property
    def created_at(self) -> datetime:
        millis = (int(self) >> 22) + DISCORD_EPOCH_MS
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)

    def ref(self, kind: "EntityKind") -> "Ref[Any]":
        return Ref(kind, self)

    def __repr__(self) -> str:
        return f"Snowflake({int(self)})"

    def __str__(self) -> str:
        return str(int(self))


def parse_optional_snowflake(value: Any) -> Snowflake | None:
    if value is None:
        return None
    return Snowflake.parse(value)


class EntityKind(str, enum.Enum):
    GUILD = "guild"
    CHANNEL = "channel"
    PRIVATE_CHANNEL = "private_channel"
    USER = "user"


@dataclass(frozen=True)
class Ref(Generic[T]):
    """Non-owning reference to an entity, resolved only through the cache.

    Two refs are equal when their ids are equal; the kind tag only routes
    lookups.
    """

    kind: EntityKind = field(compare=False)
    id: Snowflake

    @classmethod
    def of(cls, entity: Any) -> "Ref[Any]":
        kind = getattr(entity, "entity_kind", None)
        if not isinstance(kind, EntityKind):
            raise TypeError(f"{type(entity).__name__} is not a cacheable entity")
        return cls(kind, entity.id)

    def __repr__(self) -> str:
        return f"Ref({self.kind.value}, {int(self.id)})"
