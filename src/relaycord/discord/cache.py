"""In-memory store of every entity the session knows about.

Readers never take the lock. Each mutation builds replacement mappings and
assigns them in one step, so a reader sees either the state before a
dispatch event or the state after it. Only `PacketDispatcher` calls the
`_apply_*`/`_remove_*` coroutines.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Optional, Union

from ..core.logging_utils import log_event
from .broadcast import Broadcast, CurrentValue
from .models import (
    Channel,
    CurrentUser,
    Guild,
    PrivateChannel,
    User,
    UserSettings,
)
from .snowflake import EntityKind, Ref, Snowflake


@dataclass(frozen=True)
class ReadySnapshot:
    """Decoded contents of a READY dispatch."""

    current_user: CurrentUser
    users: tuple[User, ...] = ()
    guilds: tuple[Guild, ...] = ()
    private_channels: tuple[PrivateChannel, ...] = ()
    user_settings: Optional[UserSettings] = None
    extra: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)


def _index(entities: Iterable[Any]) -> dict[Snowflake, Any]:
    return {entity.id: entity for entity in entities}


class EntityCache:
    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._lock = asyncio.Lock()
        self._guilds: dict[Snowflake, Guild] = {}
        self._private_channels: dict[Snowflake, PrivateChannel] = {}
        self._users: dict[Snowflake, User] = {}
        self._current_user: Optional[CurrentUser] = None

        self.guilds_changed: Broadcast[None] = Broadcast()
        self.private_channels_changed: Broadcast[None] = Broadcast()
        self.user_settings: CurrentValue[Optional[UserSettings]] = CurrentValue(None)

    # Reads

    async def lookup(self, ref: Ref[Any]) -> Optional[Any]:
        kind = ref.kind
        if kind is EntityKind.GUILD:
            return self._guilds.get(ref.id)
        if kind is EntityKind.CHANNEL:
            return await self.channel(ref.id)
        if kind is EntityKind.PRIVATE_CHANNEL:
            return self._private_channels.get(ref.id)
        if kind is EntityKind.USER:
            return self._user(ref.id)
        raise ValueError(f"unsupported entity kind: {kind!r}")

    async def batch_resolve(self, refs: Iterable[Ref[User]]) -> frozenset[User]:
        """Resolve every cached user among `refs`; misses are left out."""
        resolved: set[User] = set()
        for ref in set(refs):
            user = self._user(ref.id)
            if user is not None:
                resolved.add(user)
        return frozenset(resolved)

    async def guild(self, guild_id: Snowflake) -> Optional[Guild]:
        return self._guilds.get(guild_id)

    async def guilds(self) -> list[Guild]:
        return list(self._guilds.values())

    async def private_channels(self) -> list[PrivateChannel]:
        return list(self._private_channels.values())

    async def users(self) -> dict[Snowflake, User]:
        return dict(self._users)

    async def current_user(self) -> Optional[CurrentUser]:
        return self._current_user

    async def channel(self, channel_id: Snowflake) -> Optional[Union[Channel, PrivateChannel]]:
        private = self._private_channels.get(channel_id)
        if private is not None:
            return private
        for guild in self._guilds.values():
            channel = guild.channel(channel_id)
            if channel is not None:
                return channel
        return None

    def _user(self, user_id: Snowflake) -> Optional[User]:
        user = self._users.get(user_id)
        if user is None and self._current_user is not None:
            if self._current_user.id == user_id:
                return self._current_user
        return user

    # Mutations

    async def _apply_ready(self, snapshot: ReadySnapshot) -> None:
        async with self._lock:
            self._users = _index(snapshot.users)
            self._current_user = snapshot.current_user
            self._guilds = _index(snapshot.guilds)
            self._private_channels = _index(snapshot.private_channels)
        log_event(
            self._logger,
            logging.INFO,
            "cache.ready",
            guilds=len(snapshot.guilds),
            private_channels=len(snapshot.private_channels),
            users=len(snapshot.users),
        )
        self.guilds_changed.publish(None)
        self.private_channels_changed.publish(None)
        self.user_settings.set(snapshot.user_settings)

    async def _apply_guild(
        self,
        guild: Guild,
        *,
        replace_channels: bool = True,
        members: Iterable[User] = (),
    ) -> bool:
        async with self._lock:
            self._merge_users(members)
            existing = self._guilds.get(guild.id)
            if existing is not None and not replace_channels:
                guild = replace(guild, channels=existing.channels)
            if existing == guild:
                return False
            guilds = dict(self._guilds)
            guilds[guild.id] = guild
            self._guilds = guilds
        self.guilds_changed.publish(None)
        return True

    async def _remove_guild(self, guild_id: Snowflake) -> bool:
        async with self._lock:
            if guild_id not in self._guilds:
                return False
            guilds = dict(self._guilds)
            del guilds[guild_id]
            self._guilds = guilds
        self.guilds_changed.publish(None)
        return True

    async def _apply_channel(self, channel: Channel) -> bool:
        async with self._lock:
            guild = self._guilds.get(channel.guild_id) if channel.guild_id else None
            if guild is None:
                log_event(
                    self._logger,
                    logging.DEBUG,
                    "cache.channel.unknown_guild",
                    channel_id=channel.id,
                    guild_id=channel.guild_id,
                )
                return False
            updated = guild.with_channel(channel)
            if updated == guild:
                return False
            guilds = dict(self._guilds)
            guilds[guild.id] = updated
            self._guilds = guilds
        self.guilds_changed.publish(None)
        return True

    async def _remove_channel(
        self, channel_id: Snowflake, guild_id: Optional[Snowflake] = None
    ) -> bool:
        async with self._lock:
            if channel_id in self._private_channels:
                private_channels = dict(self._private_channels)
                del private_channels[channel_id]
                self._private_channels = private_channels
                removed_private = True
            else:
                removed_private = False
                owner: Optional[Guild] = None
                if guild_id is not None:
                    owner = self._guilds.get(guild_id)
                else:
                    owner = next(
                        (
                            guild
                            for guild in self._guilds.values()
                            if guild.channel(channel_id) is not None
                        ),
                        None,
                    )
                if owner is None or owner.channel(channel_id) is None:
                    return False
                guilds = dict(self._guilds)
                guilds[owner.id] = owner.without_channel(channel_id)
                self._guilds = guilds
        if removed_private:
            self.private_channels_changed.publish(None)
        else:
            self.guilds_changed.publish(None)
        return True

    async def _apply_private_channel(
        self, channel: PrivateChannel, recipients: Iterable[User] = ()
    ) -> bool:
        async with self._lock:
            self._merge_users(recipients)
            if self._private_channels.get(channel.id) == channel:
                return False
            private_channels = dict(self._private_channels)
            private_channels[channel.id] = channel
            self._private_channels = private_channels
        self.private_channels_changed.publish(None)
        return True

    async def _apply_users(self, users: Iterable[User]) -> None:
        async with self._lock:
            self._merge_users(users)

    async def _apply_current_user(self, user: CurrentUser) -> None:
        async with self._lock:
            self._current_user = user

    async def _apply_user_settings(self, partial: Mapping[str, Any]) -> bool:
        async with self._lock:
            current = self.user_settings.value
            if current is None:
                updated = UserSettings.from_json(partial)
            else:
                updated = current.merged(partial)
            if updated == current:
                return False
            self.user_settings.set(updated)
        return True

    def _merge_users(self, users: Iterable[User]) -> None:
        incoming = [user for user in users if self._users.get(user.id) != user]
        if not incoming:
            return
        merged = dict(self._users)
        for user in incoming:
            merged[user.id] = user
        self._users = merged

    def close(self) -> None:
        self.guilds_changed.close()
        self.private_channels_changed.close()
        self.user_settings.close()
