from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

import typer

from ....discord.client import Client
from ....discord.config import ClientConfig
from ....discord.errors import ClientConfigError, DiscordError
from ....discord.gateway import Opcode
from ....discord.models import Channel, ChannelType, Guild, Message
from ....discord.snowflake import Snowflake
from .utils import configure_logging, load_client_config

ClientFactory = Callable[[ClientConfig, logging.Logger], Client]

DEFAULT_READY_TIMEOUT_SECONDS = 30.0


def _default_client_factory(config: ClientConfig, logger: logging.Logger) -> Client:
    return Client.from_config(config, logger=logger)


def _channel_label(channel: Channel) -> str:
    if channel.is_category:
        return channel.name.upper()
    if channel.type in (ChannelType.GUILD_VOICE, ChannelType.GUILD_STAGE_VOICE):
        return f"~ {channel.name}"
    return f"# {channel.name}"


def format_guild_tree(guild: Guild, user_id: Optional[Snowflake]) -> list[str]:
    lines = [guild.name]
    for channel in guild.sorted_top_level_channels(user_id):
        lines.append(f"  {_channel_label(channel)}")
        if channel.is_category:
            for child in guild.children_of(channel.id, user_id):
                lines.append(f"    {_channel_label(child)}")
    return lines


def format_message(message: Message) -> str:
    stamp = message.timestamp.strftime("%Y-%m-%d %H:%M") if message.timestamp else "?"
    return f"[{stamp}] {message.author.display_name}: {message.content}"


async def _watch(client: Client, *, show_all: bool) -> None:
    states = client.gateway.connection_state.subscribe()
    packets = client.dispatcher.observed.subscribe()

    async def print_states() -> None:
        async for state in states:
            typer.echo(f"state: {state.value}")

    async def print_packets() -> None:
        async for packet in packets:
            if packet.op == Opcode.DISPATCH:
                typer.echo(f"<- {packet.t} (s={packet.s})")
            elif show_all:
                typer.echo(f"<- op {packet.op}")

    printers = [
        asyncio.create_task(print_states()),
        asyncio.create_task(print_packets()),
    ]
    try:
        await client.connect()
        await client.gateway.wait_closed()
    finally:
        states.close()
        packets.close()
        for task in printers:
            task.cancel()
        await asyncio.gather(*printers, return_exceptions=True)
        await client.aclose()


async def _wait_for_ready(client: Client, timeout: float) -> None:
    changes = client.cache.guilds_changed.subscribe()
    try:
        await client.connect()
        changed = asyncio.create_task(changes.get())
        closed = asyncio.create_task(client.gateway.wait_closed())
        done, pending = await asyncio.wait(
            {changed, closed}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if closed in done:
            closed.result()
        if not done:
            raise TimeoutError(f"no READY within {timeout:.0f}s")
    finally:
        changes.close()


async def _print_guilds(client: Client, timeout: float) -> None:
    try:
        await _wait_for_ready(client, timeout)
        current_user = await client.cache.current_user()
        user_id = current_user.id if current_user else None
        for guild in await client.sorted_guilds():
            for line in format_guild_tree(guild, user_id):
                typer.echo(line)
    finally:
        await client.aclose()


async def _print_history(client: Client, channel_id: Snowflake, limit: int) -> None:
    try:
        history = client.history(channel_id, page_size=limit)
        for message in await history.load_initial():
            typer.echo(format_message(message))
    finally:
        await client.aclose()


async def _send(client: Client, channel_id: Snowflake, text: str) -> Message:
    try:
        return await client.rest.send_message(channel_id, text)
    finally:
        await client.aclose()


def register_session_commands(
    app: typer.Typer,
    *,
    raise_exit: Callable,
    load_config: Callable[[Optional[Path]], ClientConfig] = load_client_config,
    client_factory: ClientFactory = _default_client_factory,
) -> None:
    def _build_client(config_path: Optional[Path]) -> Client:
        config = load_config(config_path)
        logger = configure_logging(config)
        try:
            return client_factory(config, logger)
        except (ClientConfigError, ValueError) as exc:
            raise_exit(str(exc), cause=exc)

    def _parse_channel(value: str) -> Snowflake:
        try:
            return Snowflake.parse(value)
        except ValueError as exc:
            raise_exit(f"invalid channel id: {value}", cause=exc)

    @app.command("watch")
    def watch(
        config_path: Optional[Path] = typer.Option(
            None, "--config", help="Path to relaycord.yml"
        ),
        show_all: bool = typer.Option(
            False, "--all/--events", help="Print every op, not just dispatches"
        ),
    ) -> None:
        """Connect and print connection states and gateway events."""
        client = _build_client(config_path)
        try:
            asyncio.run(_watch(client, show_all=show_all))
        except DiscordError as exc:
            raise_exit(str(exc), cause=exc)
        except KeyboardInterrupt:
            typer.echo("Disconnected.")

    @app.command("guilds")
    def guilds(
        config_path: Optional[Path] = typer.Option(
            None, "--config", help="Path to relaycord.yml"
        ),
        timeout: float = typer.Option(
            DEFAULT_READY_TIMEOUT_SECONDS, "--timeout", help="Seconds to wait for READY"
        ),
    ) -> None:
        """Print guilds in the user's order with their visible channels."""
        client = _build_client(config_path)
        try:
            asyncio.run(_print_guilds(client, timeout))
        except (DiscordError, TimeoutError) as exc:
            raise_exit(str(exc), cause=exc)

    @app.command("history")
    def history(
        channel_id: str = typer.Argument(..., help="Channel id"),
        limit: int = typer.Option(50, "--limit", min=1, max=100),
        config_path: Optional[Path] = typer.Option(
            None, "--config", help="Path to relaycord.yml"
        ),
    ) -> None:
        """Print the latest messages of a channel, oldest first."""
        channel = _parse_channel(channel_id)
        client = _build_client(config_path)
        try:
            asyncio.run(_print_history(client, channel, limit))
        except DiscordError as exc:
            raise_exit(str(exc), cause=exc)

    @app.command("send")
    def send(
        channel_id: str = typer.Argument(..., help="Channel id"),
        text: str = typer.Argument(..., help="Message content"),
        config_path: Optional[Path] = typer.Option(
            None, "--config", help="Path to relaycord.yml"
        ),
    ) -> None:
        """Post a message to a channel."""
        channel = _parse_channel(channel_id)
        client = _build_client(config_path)
        try:
            message = asyncio.run(_send(client, channel, text))
        except (DiscordError, ValueError) as exc:
            raise_exit(str(exc), cause=exc)
        typer.echo(f"Sent message {message.id}.")
