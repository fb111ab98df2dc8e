from __future__ import annotations

DISCORD_API_VERSION = 9
DISCORD_GATEWAY_URL = "wss://gateway.discord.gg/?encoding=json&v=9"
DISCORD_CDN_URL = "https://cdn.discordapp.com"

# Milliseconds since the Unix epoch for the first second of 2015.
DISCORD_EPOCH_MS = 1420070400000

# Discord hard limit for message content.
DISCORD_MAX_MESSAGE_LENGTH = 2000
DISCORD_MAX_HISTORY_LIMIT = 100

# https://discord.com/developers/docs/topics/permissions
PERMISSION_VIEW_CHANNEL = 1 << 10

DEFAULT_HELLO_TIMEOUT_SECONDS = 20.0
DEFAULT_CLOSE_TIMEOUT_SECONDS = 5.0
DEFAULT_RECONNECT_BASE_SECONDS = 1.0
DEFAULT_RECONNECT_MAX_SECONDS = 30.0
DEFAULT_UNVIABLE_AFTER = 0.5

# Close code sent when we abandon a socket but intend to resume the session.
# Anything other than 1000/1001 keeps the session alive server-side.
RESUMABLE_CLOSE_CODE = 4000
