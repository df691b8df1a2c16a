#!/usr/bin/env python3
"""
devharbor CLI

Manage local development services and project containers from the shell.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple

import click
import yaml
from pydantic import ValidationError as PydanticValidationError

from devharbor import __version__
from devharbor.app import HarborApp
from devharbor.config import load_config, setup_logging
from devharbor.core.errors import HarborError
from devharbor.core.models import (
    ConnectionStatus,
    ContainerEvent,
    CustomConfig,
    InstallOptions,
    OperationResult,
    PullProgress,
)


def _custom_config(
    ports: Tuple[str, ...],
    env: Tuple[str, ...],
    image: Optional[str] = None,
) -> Optional[CustomConfig]:
    if not ports and not env and not image:
        return None
    try:
        return CustomConfig(
            image=image,
            ports=list(ports) or None,
            environment=list(env) or None,
        )
    except PydanticValidationError as e:
        raise click.BadParameter(str(e))


def _run(ctx: click.Context, func: Callable[[HarborApp], Awaitable[Any]], watch: bool = False) -> Any:
    """Build the app, run one coroutine against it and shut down"""

    async def runner():
        app = HarborApp(ctx.obj["config"], runtime=ctx.obj.get("runtime"))
        try:
            await app.start(watch=watch)
            return await func(app)
        finally:
            await app.close()

    return asyncio.run(runner())


def _report(result: OperationResult, success: Optional[str] = None) -> None:
    if result.success:
        message = success
        if message is None and isinstance(result.data, dict):
            message = result.data.get("message")
        click.echo(f"✓ {message or 'Done'}")
        for warning in result.warnings:
            click.echo(f"⚠️  {warning}")
        return

    code = f" [{result.error_code}]" if result.error_code else ""
    click.echo(f"❌ {result.error}{code}", err=True)
    sys.exit(1)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to config.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__, prog_name="devharbor")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], verbose: bool):
    """
    devharbor - local development infrastructure manager

    Install and run shared services (databases, caches, search, a reverse
    proxy) and per-project containers on the local container runtime.
    """
    ctx.ensure_object(dict)
    if "config" not in ctx.obj:
        try:
            ctx.obj["config"] = load_config(config_path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise click.ClickException(f"Invalid configuration: {e}")
    setup_logging(ctx.obj["config"], verbose=verbose)


@cli.command("list")
@click.pass_context
def list_resources(ctx: click.Context):
    """List services and project containers"""

    async def run(app: HarborApp):
        return await app.control.list_resources()

    result = _run(ctx, run)
    if not result.success:
        _report(result)
    for info in result.data:
        marker = "●" if info["installed"] else "○"
        click.echo(f"{marker} {info['id']:<14} {info['category']:<9} {info['display_name']}")


@cli.command()
@click.argument("resource_id")
@click.pass_context
def show(ctx: click.Context, resource_id: str):
    """Show a resource definition and its stored state"""

    async def run(app: HarborApp):
        return await app.control.get_resource(resource_id)

    result = _run(ctx, run)
    if not result.success:
        _report(result)
    click.echo(yaml.safe_dump(result.data, default_flow_style=False, sort_keys=False))


@cli.command()
@click.argument("resource_id")
@click.pass_context
def status(ctx: click.Context, resource_id: str):
    """Show the live container state of a resource"""

    async def run(app: HarborApp):
        return await app.control.get_runtime_state(resource_id)

    result = _run(ctx, run)
    if not result.success:
        _report(result)
    state = result.data
    if not state["exists"]:
        click.echo(f"{resource_id}: no container")
        return
    running = "running" if state["running"] else "stopped"
    click.echo(f"{resource_id}: {running} (health: {state['health']})")
    click.echo(f"   Container: {state['container_name']} ({(state['container_id'] or '')[:12]})")
    if state["ports"]:
        click.echo(f"   Ports: {', '.join(state['ports'])}")


@cli.command()
@click.argument("resource_id")
@click.option("--no-start", is_flag=True, help="Create the container without starting it")
@click.option("--no-wait", is_flag=True, help="Do not wait for the health check")
@click.option("--port", "ports", multiple=True, help="Port mapping HOST:CONTAINER")
@click.option("--env", "env", multiple=True, help="Environment variable KEY=VALUE")
@click.option("--image", help="Override the image")
@click.pass_context
def install(
    ctx: click.Context,
    resource_id: str,
    no_start: bool,
    no_wait: bool,
    ports: Tuple[str, ...],
    env: Tuple[str, ...],
    image: Optional[str],
):
    """Install a resource"""
    options = InstallOptions(
        start_immediately=not no_start,
        wait_for_healthy=not no_wait,
        custom_config=_custom_config(ports, env, image),
    )
    shown = {"percent": -10.0}

    def on_progress(progress: PullProgress):
        percent = progress.percent
        if progress.done or percent - shown["percent"] >= 10:
            shown["percent"] = percent
            click.echo(f"   Pulling image: {percent:.0f}% {progress.status}")

    async def run(app: HarborApp):
        click.echo(f"📦 Installing {resource_id}...")
        return await app.control.install(resource_id, options, on_progress=on_progress)

    result = _run(ctx, run)
    _report(result, success=f"{resource_id} installed")
    if result.data and result.data.get("message"):
        click.echo(f"   {result.data['message']}")


@cli.command()
@click.argument("resource_id")
@click.option("--remove-volumes", is_flag=True, help="Also delete the resource's data volumes")
@click.pass_context
def uninstall(ctx: click.Context, resource_id: str, remove_volumes: bool):
    """Uninstall a resource"""

    async def run(app: HarborApp):
        return await app.control.uninstall(resource_id, remove_volumes=remove_volumes)

    _report(_run(ctx, run))


@cli.command()
@click.argument("resource_id")
@click.pass_context
def start(ctx: click.Context, resource_id: str):
    """Start an installed resource"""

    async def run(app: HarborApp):
        return await app.control.start(resource_id)

    _report(_run(ctx, run))


@cli.command()
@click.argument("resource_id")
@click.pass_context
def stop(ctx: click.Context, resource_id: str):
    """Stop a running resource"""

    async def run(app: HarborApp):
        return await app.control.stop(resource_id)

    _report(_run(ctx, run))


@cli.command()
@click.argument("resource_id")
@click.pass_context
def restart(ctx: click.Context, resource_id: str):
    """Restart an installed resource"""

    async def run(app: HarborApp):
        return await app.control.restart(resource_id)

    _report(_run(ctx, run))


@cli.command()
@click.argument("resource_id")
@click.option("--port", "ports", multiple=True, help="Port mapping HOST:CONTAINER")
@click.option("--env", "env", multiple=True, help="Environment variable KEY=VALUE")
@click.option("--image", help="Override the image")
@click.pass_context
def configure(
    ctx: click.Context,
    resource_id: str,
    ports: Tuple[str, ...],
    env: Tuple[str, ...],
    image: Optional[str],
):
    """Save a configuration override; applied on the next install"""
    custom = _custom_config(ports, env, image)
    if custom is None:
        raise click.UsageError("Nothing to configure: pass --port, --env or --image")

    async def run(app: HarborApp):
        return await app.control.update_config(resource_id, custom)

    _report(_run(ctx, run))


@cli.command()
@click.option("--limit", type=int, default=0, help="Exit after this many events")
@click.pass_context
def events(ctx: click.Context, limit: int):
    """Stream container events until interrupted"""

    async def run(app: HarborApp):
        finished = asyncio.Event()
        seen = {"count": 0}

        def on_event(event: ContainerEvent):
            resource = event.resource_id or event.container_id[:12]
            health = f" ({event.health.value})" if event.health else ""
            click.echo(f"{event.action.value:<14} {resource}{health}")
            seen["count"] += 1
            if limit and seen["count"] >= limit:
                finished.set()

        def on_status(status: ConnectionStatus):
            if status.connected:
                click.echo("✓ Connected to container runtime")
            else:
                click.echo(
                    f"⚠️  Disconnected: {status.last_error} "
                    f"(attempt {status.reconnect_attempts})"
                )

        subscription = await app.control.subscribe_events(on_event=on_event, on_status=on_status)
        try:
            await finished.wait()
        finally:
            subscription.cancel()

    try:
        _run(ctx, run)
    except KeyboardInterrupt:
        click.echo("\nStopped")


@cli.command()
@click.pass_context
def stats(ctx: click.Context):
    """Show CPU and memory used by managed containers"""

    async def run(app: HarborApp):
        return await app.control.get_system_stats()

    result = _run(ctx, run)
    if not result.success:
        _report(result)
    data = result.data
    mem_used = data["mem_used"] / (1024 * 1024)
    mem_total = data["mem_total"] / (1024 * 1024)
    click.echo(f"CPU: {data['cpu_percent']}% of {data['cpus']} cores")
    click.echo(f"Memory: {mem_used:.0f} MiB / {mem_total:.0f} MiB")


@cli.group()
def project():
    """Manage per-project containers"""


@project.command("add")
@click.argument("project_id")
@click.option("--name", required=True)
@click.option("--path", "project_path", required=True, type=click.Path(file_okay=False))
@click.option("--domain", required=True)
@click.option("--image", required=True)
@click.option("--port", "ports", multiple=True, help="Port mapping HOST:CONTAINER")
@click.option("--env", "env", multiple=True, help="Environment variable KEY=VALUE")
@click.pass_context
def project_add(
    ctx: click.Context,
    project_id: str,
    name: str,
    project_path: str,
    domain: str,
    image: str,
    ports: Tuple[str, ...],
    env: Tuple[str, ...],
):
    """Register a project container"""
    data = {
        "id": project_id,
        "name": name,
        "path": str(Path(project_path).expanduser()),
        "domain": domain,
        "image": image,
        "ports": list(ports),
        "environment": list(env),
    }

    async def run(app: HarborApp):
        return await app.control.add_project(data)

    _report(_run(ctx, run), success=f"Project {project_id} added")


@project.command("list")
@click.pass_context
def project_list(ctx: click.Context):
    """List registered projects"""

    async def run(app: HarborApp):
        return await app.control.list_projects()

    result = _run(ctx, run)
    if not result.success:
        _report(result)
    if not result.data:
        click.echo("No projects")
    for item in result.data:
        click.echo(f"{item['id']:<20} {item['domain']:<28} {item['path']}")


@project.command("remove")
@click.argument("project_id")
@click.pass_context
def project_remove(ctx: click.Context, project_id: str):
    """Forget a project; its container must be uninstalled first"""

    async def run(app: HarborApp):
        return await app.control.remove_project(project_id)

    _report(_run(ctx, run), success=f"Project {project_id} removed")


@cli.group()
def store():
    """Back up and restore stored state"""


@store.command("export")
@click.argument("output", type=click.Path(dir_okay=False, writable=True))
@click.pass_context
def store_export(ctx: click.Context, output: str):
    """Write stored state to a JSON file"""

    async def run(app: HarborApp):
        return await app.control.export_state()

    result = _run(ctx, run)
    if not result.success:
        _report(result)
    Path(output).write_text(json.dumps(result.data, indent=2), encoding="utf-8")
    click.echo(f"✓ State exported to {output}")


@store.command("import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def store_import(ctx: click.Context, source: str):
    """Replace stored state with a JSON backup"""
    try:
        data = json.loads(Path(source).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise click.ClickException(f"{source} is not valid JSON: {e}")

    async def run(app: HarborApp):
        return await app.control.import_state(data)

    _report(_run(ctx, run), success=f"State imported from {source}")


@cli.group()
def hosts():
    """Add or remove hosts file entries (requires elevation)"""


def _hosts_operation(ctx: click.Context, operation: str, ip: str, domain: str) -> None:
    async def run(app: HarborApp):
        if operation == "add":
            return await app.hosts.add_entry(ip, domain)
        return await app.hosts.remove_entry(ip, domain)

    try:
        result = _run(ctx, run)
    except HarborError as e:
        raise click.BadParameter(e.message)
    if result.success:
        click.echo(f"✓ {operation} {domain} -> {ip}")
        return
    if result.cancelled:
        click.echo("⚠️  Administrator privileges required", err=True)
    else:
        click.echo(f"❌ {result.error}", err=True)
    sys.exit(1)


@hosts.command("add")
@click.argument("ip")
@click.argument("domain")
@click.pass_context
def hosts_add(ctx: click.Context, ip: str, domain: str):
    """Map DOMAIN to IP"""
    _hosts_operation(ctx, "add", ip, domain)


@hosts.command("remove")
@click.argument("ip")
@click.argument("domain")
@click.pass_context
def hosts_remove(ctx: click.Context, ip: str, domain: str):
    """Remove the DOMAIN mapping"""
    _hosts_operation(ctx, "remove", ip, domain)


def main():
    """Main CLI entry point"""
    try:
        cli()
    except KeyboardInterrupt:
        click.echo("\n⚠️  Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
