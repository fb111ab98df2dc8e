"""Discord user client: gateway session, entity cache and REST access."""

from .broadcast import Broadcast, CurrentValue, Subscription
from .cache import EntityCache, ReadySnapshot
from .client import Client
from .config import ClientConfig
from .constants import (
    DISCORD_API_VERSION,
    DISCORD_GATEWAY_URL,
    DISCORD_MAX_MESSAGE_LENGTH,
)
from .disguise import DEFAULT_DISGUISE, Branch, Disguise
from .dispatcher import PacketDispatcher
from .errors import (
    ClientConfigError,
    DiscordAPIError,
    DiscordAuthenticationError,
    DiscordError,
    DiscordHTTPError,
    DiscordRateLimitError,
    DiscordTransientError,
    GatewayAuthenticationError,
    GatewayClosedError,
    GatewayConnectError,
    GatewayError,
    GatewayProtocolError,
    GatewayStateError,
)
from .gateway import (
    CloseAction,
    ClosePolicy,
    ConnectionState,
    GatewayConnection,
    GatewayPacket,
    Opcode,
)
from .history import MessageHistory
from .models import (
    Channel,
    ChannelType,
    CurrentUser,
    DirectMessage,
    Guild,
    GroupDirectMessage,
    Message,
    PrivateChannel,
    User,
    UserSettings,
)
from .packet_log import Direction, LogEntry, PacketLog
from .rest import RestClient, rate_limit_bucket
from .snowflake import EntityKind, Ref, Snowflake

__all__ = [
    "Broadcast",
    "CurrentValue",
    "Subscription",
    "EntityCache",
    "ReadySnapshot",
    "Client",
    "ClientConfig",
    "DISCORD_API_VERSION",
    "DISCORD_GATEWAY_URL",
    "DISCORD_MAX_MESSAGE_LENGTH",
    "DEFAULT_DISGUISE",
    "Branch",
    "Disguise",
    "PacketDispatcher",
    "ClientConfigError",
    "DiscordAPIError",
    "DiscordAuthenticationError",
    "DiscordError",
    "DiscordHTTPError",
    "DiscordRateLimitError",
    "DiscordTransientError",
    "GatewayAuthenticationError",
    "GatewayClosedError",
    "GatewayConnectError",
    "GatewayError",
    "GatewayProtocolError",
    "GatewayStateError",
    "CloseAction",
    "ClosePolicy",
    "ConnectionState",
    "GatewayConnection",
    "GatewayPacket",
    "Opcode",
    "MessageHistory",
    "Channel",
    "ChannelType",
    "CurrentUser",
    "DirectMessage",
    "Guild",
    "GroupDirectMessage",
    "Message",
    "PrivateChannel",
    "User",
    "UserSettings",
    "Direction",
    "LogEntry",
    "PacketLog",
    "RestClient",
    "rate_limit_bucket",
    "EntityKind",
    "Ref",
    "Snowflake",
]
