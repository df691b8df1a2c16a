"""
Tests for the devharbor command line interface
"""

import json

import pytest
from click.testing import CliRunner

from devharbor.cli import cli
from devharbor.core.labels import service_container_labels


@pytest.fixture
def invoke(harbor_config, runtime):
    """Run a CLI command against the fake runtime and a temporary state dir"""
    runner = CliRunner()

    def run(*args):
        return runner.invoke(cli, list(args), obj={"config": harbor_config, "runtime": runtime})

    return run


def test_list(invoke):
    result = invoke("list")

    assert result.exit_code == 0, result.output
    assert "redis" in result.output
    assert "caddy" in result.output
    assert "○" in result.output


def test_install_status_stop_uninstall(invoke, runtime):
    installed = invoke("install", "memcached")
    assert installed.exit_code == 0, installed.output
    assert "✓ memcached installed" in installed.output
    assert "Pulling image: 100%" in installed.output
    assert "localhost:11211" in installed.output

    status = invoke("status", "memcached")
    assert status.exit_code == 0, status.output
    assert "memcached: running" in status.output
    assert "11211:11211/tcp" in status.output

    listing = invoke("list")
    assert "●" in listing.output

    stopped = invoke("stop", "memcached")
    assert stopped.exit_code == 0
    assert "✓ Resource memcached stopped" in stopped.output

    started = invoke("start", "memcached")
    assert "✓ Resource memcached started" in started.output

    restarted = invoke("restart", "memcached")
    assert restarted.exit_code == 0

    removed = invoke("uninstall", "memcached")
    assert removed.exit_code == 0
    assert runtime.containers == {}


def test_install_with_overrides(invoke, runtime):
    result = invoke("install", "redis", "--no-wait", "--port", "6390:6379", "--env", "REDIS_ARGS=--save 60 1")

    assert result.exit_code == 0, result.output
    container = runtime.container_named("devharbor-redis")
    assert [str(p) for p in container["ports"]] == ["6390:6379/tcp"]
    assert container["environment"]["REDIS_ARGS"] == "--save 60 1"


def test_install_no_start(invoke, runtime):
    result = invoke("install", "memcached", "--no-start")

    assert result.exit_code == 0, result.output
    assert runtime.container_named("devharbor-memcached")["running"] is False


def test_install_bad_port(invoke):
    result = invoke("install", "redis", "--port", "lots")
    assert result.exit_code == 2


def test_failure_exit_code(invoke):
    result = invoke("start", "redis")

    assert result.exit_code == 1
    assert "❌" in result.output
    assert "[DH2003]" in result.output


def test_runtime_unavailable(invoke, runtime):
    runtime.available = False

    result = invoke("install", "redis")

    assert result.exit_code == 1
    assert "[DH1001]" in result.output


def test_show(invoke):
    result = invoke("show", "redis")

    assert result.exit_code == 0, result.output
    assert "display_name: Redis Cache" in result.output
    assert "installed: false" in result.output


def test_status_without_container(invoke):
    result = invoke("status", "redis")
    assert "redis: no container" in result.output


def test_configure(invoke, runtime):
    assert invoke("configure", "memcached").exit_code == 2

    invoke("install", "memcached")
    result = invoke("configure", "memcached", "--image", "memcached:1.6")

    assert result.exit_code == 0, result.output
    assert "⚠️" in result.output


def test_events(invoke, runtime):
    container_id = runtime.add_container(service_container_labels("redis", "cache"), running=True)
    runtime.initial_events = [
        {
            "Type": "container",
            "Action": "health_status: healthy",
            "Actor": {"ID": container_id, "Attributes": service_container_labels("redis", "cache")},
        }
    ]

    result = invoke("events", "--limit", "1")

    assert result.exit_code == 0, result.output
    assert "Connected to container runtime" in result.output
    assert "health_status" in result.output
    assert "redis (healthy)" in result.output


def test_stats(invoke):
    result = invoke("stats")

    assert result.exit_code == 0, result.output
    assert "CPU: 12.5% of 4 cores" in result.output
    assert "Memory: 1024 MiB / 8192 MiB" in result.output


def test_projects(invoke, tmp_path):
    project_dir = tmp_path / "shop"
    project_dir.mkdir()

    added = invoke(
        "project", "add", "shop",
        "--name", "Shop",
        "--path", str(project_dir),
        "--domain", "shop.local",
        "--image", "php:8.3-fpm",
        "--port", "8080:80",
    )
    assert added.exit_code == 0, added.output
    assert "✓ Project shop added" in added.output

    listing = invoke("project", "list")
    assert "shop.local" in listing.output

    installed = invoke("install", "shop")
    assert installed.exit_code == 0, installed.output

    blocked = invoke("project", "remove", "shop")
    assert blocked.exit_code == 1

    invoke("uninstall", "shop")
    removed = invoke("project", "remove", "shop")
    assert removed.exit_code == 0
    assert "No projects" in invoke("project", "list").output


def test_store_export_import(invoke, tmp_path):
    backup = tmp_path / "backup.json"
    invoke("install", "memcached")

    exported = invoke("store", "export", str(backup))
    assert exported.exit_code == 0, exported.output
    data = json.loads(backup.read_text(encoding="utf-8"))
    assert data["resources"]["items"]["memcached"]["installed"] is True

    invoke("uninstall", "memcached")
    imported = invoke("store", "import", str(backup))
    assert imported.exit_code == 0, imported.output
    assert "●" in invoke("list").output


def test_store_import_invalid_json(invoke, tmp_path):
    backup = tmp_path / "backup.json"
    backup.write_text("{", encoding="utf-8")

    result = invoke("store", "import", str(backup))

    assert result.exit_code == 1
    assert "not valid JSON" in result.output


def test_hosts_rejects_invalid_entry(invoke):
    result = invoke("hosts", "add", "not-an-ip", "shop.local")

    assert result.exit_code == 2
    assert "Invalid IP address" in result.output


def test_version(invoke):
    result = invoke("--version")
    assert result.exit_code == 0
    assert "devharbor" in result.output
