from __future__ import annotations

import pytest

from relaycord.discord.cache import EntityCache, ReadySnapshot
from relaycord.discord.models import (
    Channel,
    CurrentUser,
    Guild,
    User,
    UserSettings,
    parse_private_channel,
)
from relaycord.discord.snowflake import EntityKind, Ref, Snowflake


def _user(user_id: int, name: str) -> User:
    return User(id=Snowflake(user_id), username=name)


def _guild(guild_id: int = 1, name: str = "Guild") -> Guild:
    return Guild.from_json(
        {
            "id": str(guild_id),
            "name": name,
            "channels": [
                {"id": "10", "type": 4, "name": "Info", "position": 0},
                {"id": "11", "type": 0, "name": "general", "parent_id": "10"},
                {"id": "12", "type": 2, "name": "Lounge", "position": 1},
            ],
        }
    )


def _snapshot(**overrides) -> ReadySnapshot:
    fields = {
        "current_user": CurrentUser(id=Snowflake(100), username="me"),
        "users": (_user(200, "alice"), _user(201, "bob")),
        "guilds": (_guild(),),
        "private_channels": (
            parse_private_channel({"id": "50", "type": 1, "recipient_ids": ["200"]}),
        ),
        "user_settings": UserSettings.from_json({"guild_positions": ["1"]}),
    }
    fields.update(overrides)
    return ReadySnapshot(**fields)


@pytest.mark.anyio
async def test_lookup_routes_by_kind() -> None:
    cache = EntityCache()
    await cache._apply_ready(_snapshot())

    guild = await cache.lookup(Ref(EntityKind.GUILD, Snowflake(1)))
    assert guild is not None and guild.name == "Guild"
    channel = await cache.lookup(Ref(EntityKind.CHANNEL, Snowflake(11)))
    assert isinstance(channel, Channel) and channel.name == "general"
    private = await cache.lookup(Ref(EntityKind.PRIVATE_CHANNEL, Snowflake(50)))
    assert private is not None and private.recipient.id == 200
    user = await cache.lookup(Ref(EntityKind.USER, Snowflake(201)))
    assert user is not None and user.username == "bob"
    assert await cache.lookup(Ref(EntityKind.GUILD, Snowflake(999))) is None


@pytest.mark.anyio
async def test_channel_lookup_also_finds_private_channels() -> None:
    cache = EntityCache()
    await cache._apply_ready(_snapshot())

    assert (await cache.channel(Snowflake(50))).id == 50
    assert await cache.channel(Snowflake(404)) is None


@pytest.mark.anyio
async def test_batch_resolve_returns_exactly_cached_users() -> None:
    cache = EntityCache()
    await cache._apply_ready(_snapshot())

    refs = [
        Ref(EntityKind.USER, Snowflake(200)),
        Ref(EntityKind.USER, Snowflake(201)),
        Ref(EntityKind.USER, Snowflake(999)),
        Ref(EntityKind.USER, Snowflake(200)),
    ]
    resolved = await cache.batch_resolve(refs)

    assert {int(user.id) for user in resolved} == {200, 201}
    assert await cache.batch_resolve([]) == frozenset()


@pytest.mark.anyio
async def test_current_user_resolves_through_user_refs() -> None:
    cache = EntityCache()
    await cache._apply_ready(_snapshot(users=()))

    resolved = await cache.batch_resolve([Ref(EntityKind.USER, Snowflake(100))])

    assert [user.username for user in resolved] == ["me"]


@pytest.mark.anyio
async def test_ready_replaces_state_wholesale(drain) -> None:
    cache = EntityCache()
    guild_changes = cache.guilds_changed.subscribe()
    await cache._apply_ready(_snapshot())
    await cache._apply_guild(_guild(2, "Second"))

    await cache._apply_ready(
        _snapshot(guilds=(_guild(3, "Third"),), private_channels=(), users=())
    )

    assert [guild.name for guild in await cache.guilds()] == ["Third"]
    assert await cache.private_channels() == []
    assert await cache.users() == {}
    assert len(await drain(guild_changes)) == 3


@pytest.mark.anyio
async def test_read_snapshots_are_not_mutated_by_later_writes() -> None:
    cache = EntityCache()
    await cache._apply_ready(_snapshot())
    before = await cache.guilds()

    renamed = Channel.from_json(
        {"id": "11", "guild_id": "1", "type": 0, "name": "chat", "parent_id": "10"}
    )
    assert await cache._apply_channel(renamed)

    assert before[0].channel(Snowflake(11)).name == "general"
    after = await cache.guild(Snowflake(1))
    assert after.channel(Snowflake(11)).name == "chat"


@pytest.mark.anyio
async def test_unchanged_writes_do_not_notify(drain) -> None:
    cache = EntityCache()
    await cache._apply_ready(_snapshot())
    guild_changes = cache.guilds_changed.subscribe()
    private_changes = cache.private_channels_changed.subscribe()

    assert not await cache._apply_guild(_guild())
    assert not await cache._apply_private_channel(
        parse_private_channel({"id": "50", "type": 1, "recipient_ids": ["200"]})
    )
    assert not await cache._remove_guild(Snowflake(77))
    assert not await cache._remove_channel(Snowflake(77))

    assert await drain(guild_changes) == []
    assert await drain(private_changes) == []


@pytest.mark.anyio
async def test_channel_for_unknown_guild_is_ignored() -> None:
    cache = EntityCache()
    await cache._apply_ready(_snapshot())

    orphan = Channel.from_json({"id": "90", "guild_id": "5", "type": 0, "name": "x"})

    assert not await cache._apply_channel(orphan)
    assert await cache.channel(Snowflake(90)) is None


@pytest.mark.anyio
async def test_user_settings_merge_keeps_unknown_keys() -> None:
    cache = EntityCache()
    settings = cache.user_settings.subscribe()
    await cache._apply_ready(
        _snapshot(
            user_settings=UserSettings.from_json(
                {"guild_positions": ["2", "1"], "theme": "dark"}
            )
        )
    )

    assert await cache._apply_user_settings({"theme": "light"})
    assert not await cache._apply_user_settings({"theme": "light"})

    current = cache.user_settings.value
    assert current.guild_positions == [2, 1]
    assert current.model_extra["theme"] == "light"
    assert current.model_dump()["theme"] == "light"
    # Initial None, READY, then exactly one update.
    assert settings.pending() == 3


@pytest.mark.anyio
async def test_close_ends_subscriptions() -> None:
    cache = EntityCache()
    changes = cache.guilds_changed.subscribe()
    cache.close()

    with pytest.raises(StopAsyncIteration):
        await changes.get()


@pytest.mark.anyio
async def test_guild_members_land_with_the_guild(drain) -> None:
    cache = EntityCache()
    await cache._apply_ready(_snapshot())
    guild_changes = cache.guilds_changed.subscribe()

    assert not await cache._apply_guild(_guild(), members=[_user(300, "carol")])
    assert await cache._apply_guild(_guild(2, "Second"), members=[_user(301, "dave")])

    users = await cache.batch_resolve(
        [Ref(EntityKind.USER, Snowflake(300)), Ref(EntityKind.USER, Snowflake(301))]
    )
    assert {user.username for user in users} == {"carol", "dave"}
    assert await cache.guild(Snowflake(2)) is not None
    assert await drain(guild_changes) == [None]
