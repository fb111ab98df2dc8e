from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..core.logging_utils import log_event
from .cache import EntityCache
from .config import ClientConfig
from .disguise import DEFAULT_DISGUISE, Branch, Disguise
from .dispatcher import PacketDispatcher
from .gateway import GatewayConnection, SocketFactory
from .history import MessageHistory
from .models import Guild, PrivateChannel, User
from .packet_log import PacketLog
from .rest import RestClient
from .snowflake import Snowflake


class Client:
    """A Discord user client: gateway session, entity cache and REST access."""

    def __init__(
        self,
        token: str,
        branch: Branch = Branch.CANARY,
        disguise: Disguise = DEFAULT_DISGUISE,
        *,
        config: Optional[ClientConfig] = None,
        packet_log: Optional[PacketLog] = None,
        logger: Optional[logging.Logger] = None,
        socket_factory: Optional[SocketFactory] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not token:
            raise ValueError("attempted to make a client with an empty token")
        self.config = config or ClientConfig(branch=branch)
        self.branch = branch
        self.disguise = disguise
        self.packet_log = packet_log
        self._logger = logger or logging.getLogger(__name__)

        self.gateway = GatewayConnection(
            token=token,
            disguise=disguise,
            intents=self.config.intents,
            logger=self._logger.getChild("gateway"),
            packet_log=packet_log,
            close_policy=self.config.close_policy,
            hello_timeout=self.config.hello_timeout,
            close_timeout=self.config.close_timeout,
            reconnect_base_seconds=self.config.reconnect.base_seconds,
            reconnect_max_seconds=self.config.reconnect.max_seconds,
            socket_factory=socket_factory,
        )
        self.cache = EntityCache(logger=self._logger.getChild("cache"))
        self.dispatcher = PacketDispatcher(
            self.gateway.packets,
            self.cache,
            packet_log=packet_log,
            logger=self._logger.getChild("dispatcher"),
        )
        self.rest = RestClient(
            token=token,
            branch=branch,
            disguise=disguise,
            api_version=self.config.api_version,
            timeout_seconds=self.config.http.timeout_seconds,
            max_retries=self.config.http.max_retries,
            retry_base_delay=self.config.http.retry_base_delay,
            retry_max_delay=self.config.http.retry_max_delay,
            transport=http_transport,
            logger=self._logger.getChild("rest"),
        )

    @classmethod
    def from_config(cls, config: ClientConfig, **kwargs: Any) -> "Client":
        if config.packet_log_max_entries > 0:
            kwargs.setdefault(
                "packet_log", PacketLog(max_entries=config.packet_log_max_entries)
            )
        return cls(
            config.require_token(), config.branch, config=config, **kwargs
        )

    async def connect(self) -> None:
        self.dispatcher.start()
        await self.gateway.connect(self.config.gateway_url, self.branch.base_url)

    async def disconnect(self) -> None:
        await self.gateway.disconnect()
        await self.dispatcher.stop()

    async def aclose(self) -> None:
        await self.disconnect()
        await self.rest.close()
        self.gateway.close_streams()
        self.dispatcher.close()
        self.cache.close()

    async def __aenter__(self) -> "Client":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.aclose()

    async def sorted_guilds(self) -> list[Guild]:
        guilds = await self.cache.guilds()
        settings = self.cache.user_settings.value
        if settings is None:
            return guilds
        return settings.sort_guilds(guilds)

    async def private_channel_participants(
        self, channel: PrivateChannel
    ) -> frozenset[User]:
        refs = channel.recipients
        users = await self.cache.batch_resolve(refs)
        if len(users) != len(refs):
            log_event(
                self._logger,
                logging.WARNING,
                "client.recipients.partial",
                channel_id=channel.id,
                requested=len(refs),
                resolved=len(users),
            )
        return users

    def history(self, channel_id: Snowflake | int | str, *, page_size: int = 50) -> MessageHistory:
        return MessageHistory(
            self.rest, channel_id, page_size=page_size, logger=self._logger.getChild("history")
        )
