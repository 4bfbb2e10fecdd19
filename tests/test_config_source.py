"""Notification config validation and the in-memory live source."""

import asyncio

from orderbell.services.dispatch.config_source import (
    MemoryConfigSource,
    NotificationConfig,
    config_key,
    parse_config_hash,
)


def test_only_enabled_well_formed_destinations_are_deliverable():
    assert NotificationConfig(enabled=True, destination="shop@x.com").deliverable_destination == "shop@x.com"
    assert NotificationConfig(enabled=True, destination="  shop@x.com \n").deliverable_destination == "shop@x.com"

    for config in (
        NotificationConfig(enabled=False, destination="shop@x.com"),
        NotificationConfig(enabled=True, destination=None),
        NotificationConfig(enabled=True, destination=""),
        NotificationConfig(enabled=True, destination="shop@x"),
        NotificationConfig(enabled=True, destination="shop x@y.com"),
        NotificationConfig.disabled(),
    ):
        assert not config.available


def test_parse_config_hash():
    assert parse_config_hash({}) == NotificationConfig.disabled()
    assert parse_config_hash({"enabled": "true", "destination": "a@b.co"}).available
    assert parse_config_hash({"enabled": "1", "email": "legacy@b.co"}).deliverable_destination == "legacy@b.co"
    assert not parse_config_hash({"enabled": "false", "destination": "a@b.co"}).available
    assert config_key("m1", "b2") == "notification-config:m1:b2"


def test_memory_source_yields_current_then_updates():
    source = MemoryConfigSource(NotificationConfig(enabled=True, destination="a@b.co"))

    async def collect():
        seen = []
        watcher = source.watch()
        seen.append(await watcher.__anext__())
        source.set(NotificationConfig.disabled())
        seen.append(await watcher.__anext__())
        await watcher.aclose()
        return seen

    first, second = asyncio.run(collect())

    assert first.available
    assert not second.available
    assert source._watchers == []
