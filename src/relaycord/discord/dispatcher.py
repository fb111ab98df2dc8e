from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from ..core.logging_utils import log_event
from .broadcast import Broadcast, Subscription
from .cache import EntityCache, ReadySnapshot
from .gateway import GatewayPacket, Opcode
from .models import (
    Channel,
    CurrentUser,
    Guild,
    Message,
    User,
    UserSettings,
    embedded_recipients,
    is_private_channel_payload,
    parse_private_channel,
)
from .packet_log import PacketLog
from .snowflake import Snowflake, parse_optional_snowflake

Handler = Callable[[Any], Awaitable[None]]

# Forwarded to observers but carry nothing the cache keeps.
_FORWARD_ONLY_EVENTS = frozenset({"READY_SUPPLEMENTAL", "SESSIONS_REPLACE"})


def _mapping(data: Any, event: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise TypeError(f"{event} payload must be an object, got {type(data).__name__}")
    return data


def decode_ready(data: Any) -> ReadySnapshot:
    data = _mapping(data, "READY")
    current_user = CurrentUser.from_json(data["user"])
    users: dict[Snowflake, User] = {}
    for item in data.get("users") or ():
        user = User.from_json(item)
        users[user.id] = user
    private_channels = []
    for item in data.get("private_channels") or ():
        private_channels.append(parse_private_channel(item))
        for user in embedded_recipients(item):
            users.setdefault(user.id, user)
    # Guilds still unavailable at READY arrive later through GUILD_CREATE.
    guilds = tuple(
        Guild.from_json(item)
        for item in data.get("guilds") or ()
        if not (isinstance(item, Mapping) and item.get("unavailable"))
    )
    settings_data = data.get("user_settings")
    return ReadySnapshot(
        current_user=current_user,
        users=tuple(users.values()),
        guilds=guilds,
        private_channels=tuple(private_channels),
        user_settings=UserSettings.from_json(settings_data) if settings_data else None,
    )


class PacketDispatcher:
    """Applies gateway dispatches to the cache, strictly in arrival order."""

    def __init__(
        self,
        packets: Broadcast[GatewayPacket],
        cache: EntityCache,
        *,
        packet_log: Optional[PacketLog] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._packets = packets
        self._cache = cache
        self._packet_log = packet_log
        self._logger = logger or logging.getLogger(__name__)
        self._task: Optional[asyncio.Task[None]] = None
        self.observed: Broadcast[GatewayPacket] = Broadcast()
        self.messages: Broadcast[Message] = Broadcast()
        self._handlers: dict[str, Handler] = {
            "READY": self._on_ready,
            "GUILD_CREATE": self._on_guild_create,
            "GUILD_UPDATE": self._on_guild_update,
            "GUILD_DELETE": self._on_guild_delete,
            "CHANNEL_CREATE": self._on_channel_upsert,
            "CHANNEL_UPDATE": self._on_channel_upsert,
            "CHANNEL_DELETE": self._on_channel_delete,
            "MESSAGE_CREATE": self._on_message_create,
            "USER_UPDATE": self._on_user_update,
            "USER_SETTINGS_UPDATE": self._on_user_settings_update,
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        # Subscribe before the task runs so no packet published in between is missed.
        subscription = self._packets.subscribe()
        self._task = asyncio.create_task(
            self.run(subscription), name="relaycord-dispatcher"
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run(self, subscription: Optional[Subscription[GatewayPacket]] = None) -> None:
        if subscription is None:
            subscription = self._packets.subscribe()
        try:
            async for packet in subscription:
                await self.handle(packet)
        finally:
            subscription.close()

    async def handle(self, packet: GatewayPacket) -> None:
        if self._packet_log is not None:
            self._packet_log.record_received(packet.to_json())
        self.observed.publish(packet)
        if packet.op != Opcode.DISPATCH or packet.t is None:
            return
        handler = self._handlers.get(packet.t)
        if handler is None:
            if packet.t not in _FORWARD_ONLY_EVENTS:
                self._logger.debug("dispatch %s not handled", packet.t)
            return
        try:
            await handler(packet.d)
        except (KeyError, TypeError, ValueError) as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "dispatch.decode_failed",
                event_name=packet.t,
                sequence=packet.s,
                exc=exc,
            )
        except Exception:
            self._logger.exception(
                "dispatch handler for %s (s=%s) failed", packet.t, packet.s
            )

    async def _on_ready(self, data: Any) -> None:
        await self._cache._apply_ready(decode_ready(data))

    async def _on_guild_create(self, data: Any) -> None:
        data = _mapping(data, "GUILD_CREATE")
        guild = Guild.from_json(data)
        members = [
            User.from_json(member["user"])
            for member in data.get("members") or ()
            if isinstance(member, Mapping) and "user" in member
        ]
        await self._cache._apply_guild(guild, members=members)

    async def _on_guild_update(self, data: Any) -> None:
        data = _mapping(data, "GUILD_UPDATE")
        await self._cache._apply_guild(
            Guild.from_json(data), replace_channels="channels" in data
        )

    async def _on_guild_delete(self, data: Any) -> None:
        data = _mapping(data, "GUILD_DELETE")
        guild_id = Snowflake.parse(data["id"])
        if data.get("unavailable"):
            log_event(
                self._logger, logging.INFO, "dispatch.guild.unavailable", guild_id=guild_id
            )
            return
        await self._cache._remove_guild(guild_id)

    async def _on_channel_upsert(self, data: Any) -> None:
        if is_private_channel_payload(data):
            await self._cache._apply_private_channel(
                parse_private_channel(data), embedded_recipients(data)
            )
            return
        channel = Channel.from_json(_mapping(data, "CHANNEL"))
        if channel.guild_id is None:
            raise ValueError(f"guild channel {channel.id} has no guild_id")
        await self._cache._apply_channel(channel)

    async def _on_channel_delete(self, data: Any) -> None:
        data = _mapping(data, "CHANNEL_DELETE")
        await self._cache._remove_channel(
            Snowflake.parse(data["id"]), parse_optional_snowflake(data.get("guild_id"))
        )

    async def _on_message_create(self, data: Any) -> None:
        message = Message.from_json(data)
        await self._cache._apply_users([message.author])
        self.messages.publish(message)

    async def _on_user_update(self, data: Any) -> None:
        current = await self._cache.current_user()
        user = CurrentUser.from_json(data)
        if current is None or current.id == user.id:
            await self._cache._apply_current_user(user)
        else:
            await self._cache._apply_users([User.from_json(data)])

    async def _on_user_settings_update(self, data: Any) -> None:
        await self._cache._apply_user_settings(_mapping(data, "USER_SETTINGS_UPDATE"))

    def close(self) -> None:
        self.observed.close()
        self.messages.close()
