"""Typed views over Discord entity payloads.

Every entity is an immutable value decoded from a gateway or REST payload.
Keys the decoder does not recognize are kept in `extra` so newer payloads do
not break typed code paths. `extra` never takes part in equality: two
entities are equal when their recognized fields are.

Decoders raise `KeyError`, `TypeError` or `ValueError` on malformed input.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .constants import DISCORD_CDN_URL, PERMISSION_VIEW_CHANNEL
from .snowflake import EntityKind, Ref, Snowflake, parse_optional_snowflake


def _require_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise TypeError(f"{what} payload must be an object, got {type(data).__name__}")
    return data


def _extra(data: Mapping[str, Any], known: frozenset[str]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if key not in known}


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"timestamp must be a string, got {type(value).__name__}")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


class ChannelType(enum.IntEnum):
    GUILD_TEXT = 0
    DM = 1
    GUILD_VOICE = 2
    GROUP_DM = 3
    GUILD_CATEGORY = 4
    GUILD_ANNOUNCEMENT = 5
    ANNOUNCEMENT_THREAD = 10
    PUBLIC_THREAD = 11
    PRIVATE_THREAD = 12
    GUILD_STAGE_VOICE = 13
    GUILD_DIRECTORY = 14
    GUILD_FORUM = 15
    GUILD_MEDIA = 16


def parse_channel_type(value: Any) -> Union[ChannelType, int]:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"channel type must be an integer, got {value!r}")
    try:
        return ChannelType(value)
    except ValueError:
        # Newer channel types are carried opaquely.
        return value


PRIVATE_CHANNEL_TYPES = frozenset({ChannelType.DM, ChannelType.GROUP_DM})
_VOICE_LIKE = frozenset({ChannelType.GUILD_VOICE, ChannelType.GUILD_STAGE_VOICE})


# User


_USER_KEYS = frozenset(
    {"id", "username", "discriminator", "global_name", "avatar", "bot"}
)
_CURRENT_USER_KEYS = _USER_KEYS | {"email", "verified", "mfa_enabled", "premium_type"}


@dataclass(frozen=True)
class User:
    id: Snowflake
    username: str
    discriminator: str = "0"
    global_name: Optional[str] = None
    avatar: Optional[str] = None
    bot: bool = False
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    entity_kind = EntityKind.USER

    @classmethod
    def from_json(cls, data: Any) -> "User":
        data = _require_mapping(data, "user")
        return cls(
            id=Snowflake.parse(data["id"]),
            username=str(data["username"]),
            discriminator=str(data.get("discriminator") or "0"),
            global_name=data.get("global_name"),
            avatar=data.get("avatar"),
            bot=bool(data.get("bot", False)),
            extra=_extra(data, _USER_KEYS),
        )

    @property
    def display_name(self) -> str:
        return self.global_name or self.username

    @property
    def tag(self) -> str:
        if self.discriminator in ("", "0"):
            return self.username
        return f"{self.username}#{self.discriminator}"

    def avatar_url(self, extension: str = "png") -> Optional[str]:
        if not self.avatar:
            return None
        return f"{DISCORD_CDN_URL}/avatars/{self.id}/{self.avatar}.{extension}"

    def ref(self) -> Ref["User"]:
        return Ref(EntityKind.USER, self.id)


@dataclass(frozen=True)
class CurrentUser(User):
    email: Optional[str] = None
    verified: bool = False
    mfa_enabled: bool = False
    premium_type: int = 0

    @classmethod
    def from_json(cls, data: Any) -> "CurrentUser":
        data = _require_mapping(data, "current user")
        return cls(
            id=Snowflake.parse(data["id"]),
            username=str(data["username"]),
            discriminator=str(data.get("discriminator") or "0"),
            global_name=data.get("global_name"),
            avatar=data.get("avatar"),
            bot=bool(data.get("bot", False)),
            email=data.get("email"),
            verified=bool(data.get("verified", False)),
            mfa_enabled=bool(data.get("mfa_enabled", False)),
            premium_type=int(data.get("premium_type") or 0),
            extra=_extra(data, _CURRENT_USER_KEYS),
        )


# Guild channels


class OverwriteType(enum.IntEnum):
    ROLE = 0
    MEMBER = 1


@dataclass(frozen=True)
class PermissionOverwrite:
    id: Snowflake
    type: OverwriteType
    allow: int = 0
    deny: int = 0

    @classmethod
    def from_json(cls, data: Any) -> "PermissionOverwrite":
        data = _require_mapping(data, "permission overwrite")
        return cls(
            id=Snowflake.parse(data["id"]),
            type=OverwriteType(int(data["type"])),
            allow=int(data.get("allow") or 0),
            deny=int(data.get("deny") or 0),
        )


_CHANNEL_KEYS = frozenset(
    {
        "id",
        "guild_id",
        "parent_id",
        "type",
        "name",
        "topic",
        "position",
        "permission_overwrites",
        "last_message_id",
    }
)


@dataclass(frozen=True)
class Channel:
    id: Snowflake
    guild_id: Optional[Snowflake]
    type: Union[ChannelType, int]
    name: str
    parent_id: Optional[Snowflake] = None
    topic: Optional[str] = None
    position: int = 0
    overwrites: tuple[PermissionOverwrite, ...] = ()
    last_message_id: Optional[Snowflake] = None
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    entity_kind = EntityKind.CHANNEL

    @classmethod
    def from_json(cls, data: Any, *, guild_id: Any = None) -> "Channel":
        data = _require_mapping(data, "channel")
        raw_guild_id = data.get("guild_id", guild_id)
        return cls(
            id=Snowflake.parse(data["id"]),
            guild_id=parse_optional_snowflake(raw_guild_id),
            type=parse_channel_type(data["type"]),
            name=str(data.get("name") or ""),
            parent_id=parse_optional_snowflake(data.get("parent_id")),
            topic=data.get("topic"),
            position=int(data.get("position") or 0),
            overwrites=tuple(
                PermissionOverwrite.from_json(item)
                for item in data.get("permission_overwrites") or ()
            ),
            last_message_id=parse_optional_snowflake(data.get("last_message_id")),
            extra=_extra(data, _CHANNEL_KEYS),
        )

    @property
    def is_category(self) -> bool:
        return self.type == ChannelType.GUILD_CATEGORY

    @property
    def type_class(self) -> int:
        """Sibling rank: text-like channels, then voice-like, then categories."""
        if self.type == ChannelType.GUILD_CATEGORY:
            return 2
        if self.type in _VOICE_LIKE:
            return 1
        return 0

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return (self.type_class, self.position, int(self.id))

    def is_visible_to(self, user_id: Optional[Snowflake]) -> bool:
        visible = True
        if self.guild_id is not None:
            for overwrite in self.overwrites:
                if overwrite.id == self.guild_id:
                    visible = _apply_view_bit(visible, overwrite)
        if user_id is not None:
            for overwrite in self.overwrites:
                if overwrite.type == OverwriteType.MEMBER and overwrite.id == user_id:
                    visible = _apply_view_bit(visible, overwrite)
        return visible

    def ref(self) -> Ref["Channel"]:
        return Ref(EntityKind.CHANNEL, self.id)


def _apply_view_bit(visible: bool, overwrite: PermissionOverwrite) -> bool:
    if overwrite.deny & PERMISSION_VIEW_CHANNEL:
        visible = False
    if overwrite.allow & PERMISSION_VIEW_CHANNEL:
        visible = True
    return visible


def sort_channels(channels: Iterable[Channel]) -> tuple[Channel, ...]:
    return tuple(sorted(channels, key=lambda channel: channel.sort_key))


# Guild


@dataclass(frozen=True)
class Role:
    id: Snowflake
    name: str
    permissions: int = 0
    position: int = 0

    @classmethod
    def from_json(cls, data: Any) -> "Role":
        data = _require_mapping(data, "role")
        return cls(
            id=Snowflake.parse(data["id"]),
            name=str(data.get("name") or ""),
            permissions=int(data.get("permissions") or 0),
            position=int(data.get("position") or 0),
        )


_GUILD_KEYS = frozenset(
    {"id", "name", "icon", "owner_id", "channels", "roles", "properties"}
)


@dataclass(frozen=True)
class Guild:
    id: Snowflake
    name: str
    icon: Optional[str] = None
    owner_id: Optional[Snowflake] = None
    channels: tuple[Channel, ...] = ()
    roles: tuple[Role, ...] = ()
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    entity_kind = EntityKind.GUILD

    @classmethod
    def from_json(cls, data: Any) -> "Guild":
        data = _require_mapping(data, "guild")
        guild_id = Snowflake.parse(data["id"])
        # User-account sessions nest guild metadata under "properties".
        properties = _require_mapping(data.get("properties") or data, "guild properties")
        return cls(
            id=guild_id,
            name=str(properties["name"]),
            icon=properties.get("icon"),
            owner_id=parse_optional_snowflake(properties.get("owner_id")),
            channels=sort_channels(
                Channel.from_json(item, guild_id=guild_id)
                for item in data.get("channels") or ()
            ),
            roles=tuple(Role.from_json(item) for item in data.get("roles") or ()),
            extra=_extra(data, _GUILD_KEYS),
        )

    def icon_url(self, extension: str = "png") -> Optional[str]:
        if not self.icon:
            return None
        return f"{DISCORD_CDN_URL}/icons/{self.id}/{self.icon}.{extension}"

    def channel(self, channel_id: Snowflake) -> Optional[Channel]:
        for channel in self.channels:
            if channel.id == channel_id:
                return channel
        return None

    def sorted_top_level_channels(
        self, user_id: Optional[Snowflake] = None
    ) -> list[Channel]:
        return [
            channel
            for channel in self.channels
            if channel.parent_id is None and channel.is_visible_to(user_id)
        ]

    def children_of(
        self, category_id: Snowflake, user_id: Optional[Snowflake] = None
    ) -> list[Channel]:
        return [
            channel
            for channel in self.channels
            if channel.parent_id == category_id and channel.is_visible_to(user_id)
        ]

    def with_channel(self, channel: Channel) -> "Guild":
        others = [existing for existing in self.channels if existing.id != channel.id]
        return replace(self, channels=sort_channels([*others, channel]))

    def without_channel(self, channel_id: Snowflake) -> "Guild":
        return replace(
            self,
            channels=tuple(
                channel for channel in self.channels if channel.id != channel_id
            ),
        )

    def ref(self) -> Ref["Guild"]:
        return Ref(EntityKind.GUILD, self.id)


# Private channels


def _recipient_refs(data: Mapping[str, Any]) -> list[Ref[User]]:
    raw_ids = data.get("recipient_ids")
    if raw_ids is None:
        raw_ids = [
            _require_mapping(item, "recipient")["id"]
            for item in data.get("recipients") or ()
        ]
    return [Ref(EntityKind.USER, Snowflake.parse(item)) for item in raw_ids]


def embedded_recipients(data: Any) -> list[User]:
    """Full user objects some private channel payloads carry inline."""
    data = _require_mapping(data, "private channel")
    return [User.from_json(item) for item in data.get("recipients") or ()]


_PRIVATE_CHANNEL_KEYS = frozenset(
    {
        "id",
        "type",
        "name",
        "icon",
        "owner_id",
        "recipients",
        "recipient_ids",
        "last_message_id",
    }
)


@dataclass(frozen=True)
class DirectMessage:
    id: Snowflake
    recipient: Ref[User]
    last_message_id: Optional[Snowflake] = None
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    entity_kind = EntityKind.PRIVATE_CHANNEL

    @property
    def recipients(self) -> frozenset[Ref[User]]:
        return frozenset({self.recipient})

    def display_name(self, users: Mapping[Snowflake, User]) -> str:
        user = users.get(self.recipient.id)
        if user is None:
            return f"<unknown user {self.recipient.id}>"
        return user.display_name

    def ref(self) -> Ref["PrivateChannel"]:
        return Ref(EntityKind.PRIVATE_CHANNEL, self.id)


@dataclass(frozen=True)
class GroupDirectMessage:
    id: Snowflake
    recipient_refs: frozenset[Ref[User]]
    name: Optional[str] = None
    icon: Optional[str] = None
    owner_id: Optional[Snowflake] = None
    last_message_id: Optional[Snowflake] = None
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    entity_kind = EntityKind.PRIVATE_CHANNEL

    @property
    def recipients(self) -> frozenset[Ref[User]]:
        return self.recipient_refs

    def display_name(self, users: Mapping[Snowflake, User]) -> str:
        if self.name:
            return self.name
        names = sorted(
            users[ref.id].display_name for ref in self.recipient_refs if ref.id in users
        )
        if not names:
            return "Unnamed Group"
        return ", ".join(names)

    def ref(self) -> Ref["PrivateChannel"]:
        return Ref(EntityKind.PRIVATE_CHANNEL, self.id)


PrivateChannel = Union[DirectMessage, GroupDirectMessage]


def parse_private_channel(data: Any) -> PrivateChannel:
    data = _require_mapping(data, "private channel")
    channel_type = parse_channel_type(data["type"])
    channel_id = Snowflake.parse(data["id"])
    recipients = _recipient_refs(data)
    last_message_id = parse_optional_snowflake(data.get("last_message_id"))
    extra = _extra(data, _PRIVATE_CHANNEL_KEYS)
    if channel_type == ChannelType.DM:
        if len(recipients) != 1:
            raise ValueError(
                f"direct message {channel_id} must have exactly one recipient"
            )
        return DirectMessage(
            id=channel_id,
            recipient=recipients[0],
            last_message_id=last_message_id,
            extra=extra,
        )
    if channel_type == ChannelType.GROUP_DM:
        return GroupDirectMessage(
            id=channel_id,
            recipient_refs=frozenset(recipients),
            name=data.get("name") or None,
            icon=data.get("icon"),
            owner_id=parse_optional_snowflake(data.get("owner_id")),
            last_message_id=last_message_id,
            extra=extra,
        )
    raise ValueError(f"channel type {channel_type!r} is not a private channel")


def is_private_channel_payload(data: Any) -> bool:
    if not isinstance(data, Mapping):
        return False
    return data.get("type") in PRIVATE_CHANNEL_TYPES and data.get("guild_id") is None


# Messages


_MESSAGE_KEYS = frozenset(
    {
        "id",
        "channel_id",
        "guild_id",
        "author",
        "content",
        "timestamp",
        "edited_timestamp",
        "nonce",
        "tts",
    }
)


@dataclass(frozen=True)
class Message:
    id: Snowflake
    channel_id: Snowflake
    author: User
    content: str = ""
    timestamp: Optional[datetime] = None
    edited_timestamp: Optional[datetime] = None
    guild_id: Optional[Snowflake] = None
    nonce: Optional[str] = None
    tts: bool = False
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_json(cls, data: Any) -> "Message":
        data = _require_mapping(data, "message")
        nonce = data.get("nonce")
        return cls(
            id=Snowflake.parse(data["id"]),
            channel_id=Snowflake.parse(data["channel_id"]),
            author=User.from_json(data["author"]),
            content=str(data.get("content") or ""),
            timestamp=_parse_timestamp(data.get("timestamp")),
            edited_timestamp=_parse_timestamp(data.get("edited_timestamp")),
            guild_id=parse_optional_snowflake(data.get("guild_id")),
            nonce=None if nonce is None else str(nonce),
            tts=bool(data.get("tts", False)),
            extra=_extra(data, _MESSAGE_KEYS),
        )


# User settings


class GuildFolder(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    id: Optional[int] = None
    name: Optional[str] = None
    color: Optional[int] = None
    guild_ids: list[int] = Field(default_factory=list)


class UserSettings(BaseModel):
    """The user's settings document.

    Only the keys used to order guilds are interpreted; every other key is
    kept in `model_extra` and round-trips through `model_dump()`.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    guild_positions: list[int] = Field(default_factory=list)
    guild_folders: list[GuildFolder] = Field(default_factory=list)

    @classmethod
    def from_json(cls, data: Any) -> "UserSettings":
        return cls.model_validate(_require_mapping(data, "user settings"))

    def merged(self, partial: Mapping[str, Any]) -> "UserSettings":
        document = self.model_dump()
        document.update(_require_mapping(partial, "user settings update"))
        return type(self).model_validate(document)

    def guild_order(self) -> list[int]:
        if self.guild_positions:
            return list(self.guild_positions)
        order: list[int] = []
        for folder in self.guild_folders:
            order.extend(folder.guild_ids)
        return order

    def sort_guilds(self, guilds: Iterable[Guild]) -> list[Guild]:
        order = {guild_id: index for index, guild_id in enumerate(self.guild_order())}
        unknown = len(order)
        indexed = list(enumerate(guilds))
        indexed.sort(key=lambda item: (order.get(int(item[1].id), unknown), item[0]))
        return [guild for _, guild in indexed]
