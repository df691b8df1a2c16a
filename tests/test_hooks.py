"""
Tests for the post-install hook registry and the reverse proxy hook
"""

import pytest

from devharbor.core.errors import RuntimeUnavailable, ValidationError
from devharbor.core.labels import project_container_labels
from devharbor.core.models import ProjectRecord
from devharbor.hooks.proxy_hook import (
    PROXY_SERVICE_ID,
    ProjectProxySync,
    hash_project_containers,
    make_proxy_hook,
)
from devharbor.hooks.registry import HookContext, HookRegistry, HookResult


class RecordingConfigurator:
    def __init__(self, result: bool = True):
        self.result = result
        self.synced = []

    async def sync(self, projects):
        self.synced.append([p.id for p in projects])
        return self.result


class FixedInstaller:
    def __init__(self, installed: bool):
        self.installed = installed
        self.calls = 0

    async def install(self) -> bool:
        self.calls += 1
        return self.installed


def _context(runtime, resource_id="caddy", projects=None) -> HookContext:
    return HookContext(
        resource_id=resource_id,
        container_id="a" * 64,
        custom_config=None,
        runtime=runtime,
        projects=projects,
    )


async def _add_project(store, project_id):
    await store.set_project(
        ProjectRecord(
            id=project_id,
            name=project_id,
            path=f"/home/dev/{project_id}",
            domain=f"{project_id}.local",
            image="php:8.3-fpm",
        )
    )


class TestHookRegistry:
    def test_register_and_lookup(self):
        registry = HookRegistry()

        async def hook(context):
            return HookResult(success=True)

        registry.register("caddy", hook)
        assert "caddy" in registry
        assert len(registry) == 1
        assert registry.get("caddy") is hook
        assert registry.resource_ids() == ["caddy"]

        assert registry.unregister("caddy") is True
        assert registry.unregister("caddy") is False
        assert registry.get("caddy") is None

    def test_register_validates_id(self):
        registry = HookRegistry()

        async def hook(context):
            return None

        with pytest.raises(ValidationError):
            registry.register("Not An Id", hook)

    @pytest.mark.asyncio
    async def test_run_without_hook(self, runtime):
        assert await HookRegistry().run(_context(runtime)) is None

    @pytest.mark.asyncio
    async def test_run_normalizes_results(self, runtime):
        registry = HookRegistry()

        async def returns_none(context):
            return None

        async def raises(context):
            raise RuntimeError("certutil not found")

        registry.register("caddy", returns_none)
        result = await registry.run(_context(runtime))
        assert result.success is True

        registry.register("caddy", raises)
        result = await registry.run(_context(runtime))
        assert result.success is False
        assert result.message == "certutil not found"


class TestProjectProxySync:
    def test_hash_is_order_independent(self):
        assert hash_project_containers({"a": "1", "b": "2"}) == hash_project_containers({"b": "2", "a": "1"})
        assert hash_project_containers({"a": "1"}) != hash_project_containers({"a": "2"})

    @pytest.mark.asyncio
    async def test_unchanged_projects_skip_sync(self, runtime, project_store):
        await project_store.initialize()
        await _add_project(project_store, "shop")
        runtime.add_container(project_container_labels("shop", "shop"), running=True)
        configurator = RecordingConfigurator()
        proxy_sync = ProjectProxySync(runtime, project_store, configurator)

        assert await proxy_sync.sync() is True
        assert await proxy_sync.sync() is True
        assert configurator.synced == [["shop"]]

        assert await proxy_sync.sync(force=True) is True
        assert len(configurator.synced) == 2

    @pytest.mark.asyncio
    async def test_new_project_container_triggers_sync(self, runtime, project_store):
        await project_store.initialize()
        await _add_project(project_store, "shop")
        await _add_project(project_store, "blog")
        configurator = RecordingConfigurator()
        proxy_sync = ProjectProxySync(runtime, project_store, configurator)
        await proxy_sync.sync()

        runtime.add_container(project_container_labels("blog", "blog"), running=True)
        await proxy_sync.sync()

        assert configurator.synced == [["shop", "blog"], ["shop", "blog"]]

    @pytest.mark.asyncio
    async def test_failed_sync_is_retried(self, runtime, project_store):
        await project_store.initialize()
        configurator = RecordingConfigurator(result=False)
        proxy_sync = ProjectProxySync(runtime, project_store, configurator)

        assert await proxy_sync.sync() is False
        assert await proxy_sync.sync() is False
        assert len(configurator.synced) == 2

    @pytest.mark.asyncio
    async def test_runtime_errors_still_sync(self, runtime, project_store):
        await project_store.initialize()
        await _add_project(project_store, "shop")
        configurator = RecordingConfigurator()
        proxy_sync = ProjectProxySync(runtime, project_store, configurator)
        runtime.failures["find_by_label"] = RuntimeUnavailable("Docker is not available")

        assert await proxy_sync.sync() is True
        assert await proxy_sync.sync() is True
        assert len(configurator.synced) == 2

    @pytest.mark.asyncio
    async def test_reset(self, runtime, project_store):
        await project_store.initialize()
        configurator = RecordingConfigurator()
        proxy_sync = ProjectProxySync(runtime, project_store, configurator)
        await proxy_sync.sync()
        proxy_sync.reset()
        await proxy_sync.sync()
        assert len(configurator.synced) == 2


class TestProxyHook:
    @pytest.mark.asyncio
    async def test_installs_certificate_and_syncs(self, runtime, project_store):
        await project_store.initialize()
        configurator = RecordingConfigurator()
        installer = FixedInstaller(True)
        hook = make_proxy_hook(ProjectProxySync(runtime, project_store, configurator), installer)

        result = await hook(_context(runtime, PROXY_SERVICE_ID, project_store))

        assert result.success is True
        assert result.message == "Proxy certificate installed"
        assert result.data == {"cert_installed": True}
        assert installer.calls == 1
        assert configurator.synced == [[]]

    @pytest.mark.asyncio
    async def test_sync_failure_reported(self, runtime, project_store):
        await project_store.initialize()
        hook = make_proxy_hook(
            ProjectProxySync(runtime, project_store, RecordingConfigurator(result=False)),
            FixedInstaller(False),
        )

        result = await hook(_context(runtime, PROXY_SERVICE_ID, project_store))

        assert result.success is False
        assert result.message == "Proxy installed without a trusted certificate; project sync failed"
        assert result.data == {"cert_installed": False}

    @pytest.mark.asyncio
    async def test_default_collaborators(self, runtime, project_store):
        await project_store.initialize()
        hook = make_proxy_hook(ProjectProxySync(runtime, project_store))

        result = await hook(_context(runtime, PROXY_SERVICE_ID, project_store))

        assert result.success is True
        assert result.data == {"cert_installed": False}
