"""
Tests for the control channel: typed results, no exceptions across the boundary
"""

import pytest

from devharbor.control import ControlChannel
from devharbor.core.errors import ErrorCode
from devharbor.monitor.event_monitor import EventMonitor


@pytest.fixture
def channel(engine):
    return ControlChannel(engine)


@pytest.mark.asyncio
async def test_install_and_query(channel, engine):
    await engine.initialize()
    progress = []

    result = await channel.install("memcached", {"start_immediately": True}, on_progress=progress.append)

    assert result.success
    assert result.data["container_id"]
    assert progress[-1].done

    listing = await channel.list_resources()
    assert {r["id"]: r["installed"] for r in listing.data}["memcached"] is True

    state = await channel.get_runtime_state("memcached")
    assert state.data["running"] is True
    assert state.data["ports"] == ["11211:11211/tcp"]

    resource = await channel.get_resource("memcached")
    assert resource.data["installed"] is True


@pytest.mark.asyncio
async def test_errors_become_results(channel, engine):
    await engine.initialize()

    unknown = await channel.install("nginx")
    assert unknown.success is False
    assert unknown.error_code == ErrorCode.NOT_FOUND.value
    assert unknown.data == {"resource_id": "nginx"}

    not_installed = await channel.start("redis")
    assert not_installed.error_code == ErrorCode.NOT_INSTALLED.value

    bad_options = await channel.install("redis", {"start_immediately": "sometimes"})
    assert bad_options.error_code == ErrorCode.VALIDATION_ERROR.value


@pytest.mark.asyncio
async def test_runtime_down(channel, engine, runtime):
    await engine.initialize()
    runtime.available = False

    result = await channel.install("redis")
    assert result.error_code == ErrorCode.RUNTIME_UNAVAILABLE.value

    state = await channel.get_runtime_state("redis")
    assert state.error_code == ErrorCode.RUNTIME_UNAVAILABLE.value


@pytest.mark.asyncio
async def test_unexpected_error_is_internal(channel, engine, monkeypatch):
    await engine.initialize()

    def broken():
        raise KeyError("definitions")

    monkeypatch.setattr(engine, "list_resources", broken)

    result = await channel.list_resources()
    assert result.success is False
    assert result.error_code == ErrorCode.INTERNAL_ERROR.value


@pytest.mark.asyncio
async def test_lifecycle_round_trip(channel, engine, runtime):
    await engine.initialize()
    await channel.install("memcached", {"start_immediately": False})

    assert (await channel.start("memcached")).success
    assert (await channel.restart("memcached")).success
    assert (await channel.stop("memcached")).success

    configured = await channel.update_config("memcached", {"image": "memcached:1.6"})
    assert configured.success

    removed = await channel.uninstall("memcached", remove_volumes=True)
    assert removed.success
    assert runtime.containers == {}


@pytest.mark.asyncio
async def test_projects(channel, engine):
    await engine.initialize()
    project = {
        "id": "shop",
        "name": "Shop",
        "path": "/home/dev/shop",
        "domain": "shop.local",
        "image": "php:8.3-fpm",
        "ports": ["8080:80"],
    }

    added = await channel.add_project(project)
    assert added.success
    assert added.data["order"] == 0

    listing = await channel.list_projects()
    assert [p["id"] for p in listing.data] == ["shop"]

    invalid = await channel.add_project({"id": "blog"})
    assert invalid.error_code == ErrorCode.VALIDATION_ERROR.value

    assert (await channel.remove_project("shop")).success
    missing = await channel.remove_project("shop")
    assert missing.error_code == ErrorCode.NOT_FOUND.value


@pytest.mark.asyncio
async def test_export_and_import(channel, engine, resource_store):
    await engine.initialize()
    await channel.install("memcached")

    exported = await channel.export_state()
    assert set(exported.data) == {"resources", "projects"}

    await channel.uninstall("memcached")
    assert not resource_store.is_installed("memcached")

    imported = await channel.import_state(exported.data)
    assert imported.data == {"imported": ["resources", "projects"]}
    assert resource_store.is_installed("memcached")

    rejected = await channel.import_state({"something": "else"})
    assert rejected.error_code == ErrorCode.VALIDATION_ERROR.value

    corrupt = await channel.import_state({"resources": {"items": []}})
    assert corrupt.error_code == ErrorCode.VALIDATION_ERROR.value


@pytest.mark.asyncio
async def test_import_rejects_whole_backup(channel, engine, resource_store):
    await engine.initialize()
    before = resource_store.export_data()

    result = await channel.import_state(
        {
            "resources": {"items": {}, "version": before["version"]},
            "projects": {"items": {"shop": {"id": "shop"}}, "version": before["version"]},
        }
    )

    assert result.success is False
    assert result.error_code == ErrorCode.VALIDATION_ERROR.value
    assert result.data == {"section": "projects"}
    assert resource_store.export_data()["items"] == before["items"]
    assert len(resource_store.get_all()) == 14


@pytest.mark.asyncio
async def test_system_stats(channel, engine):
    await engine.initialize()
    result = await channel.get_system_stats()
    assert result.data == {
        "cpus": 4,
        "cpu_percent": 12.5,
        "mem_total": 8 * 1024 ** 3,
        "mem_used": 1024 ** 3,
    }


@pytest.mark.asyncio
async def test_subscribe_requires_monitor(channel):
    with pytest.raises(RuntimeError):
        await channel.subscribe_events()
    assert channel.connection_status() is None


@pytest.mark.asyncio
async def test_subscribe_starts_monitor(engine, runtime, until):
    monitor = EventMonitor(runtime, reconnect_delay=0.01)
    channel = ControlChannel(engine, monitor)
    statuses = []
    try:
        subscription = await channel.subscribe_events(on_status=statuses.append)

        assert monitor.is_running
        assert subscription.active
        await until(lambda: statuses and statuses[0].connected)
        assert channel.connection_status()["connected"] is True
    finally:
        await monitor.stop()
