"""Click CLI for inspecting and draining a Beacon storage directory."""
from __future__ import annotations

import logging
import sys

import click
from rich.console import Console
from rich.table import Table

from beacon import __version__
from beacon.client import Beacon
from beacon.config import DEFAULT_CONFIG_PATH, Config, load_config, save_config
from beacon.storage import EVENT_KEY, ID_KEY, QUEUE_KEY, JsonStore

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="beacon")
@click.option("--config", "config_path", default=DEFAULT_CONFIG_PATH, show_default=True,
              type=click.Path(dir_okay=False), help="JSON config file")
@click.option("--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str, verbose: bool) -> None:
    """Beacon - inspect and deliver queued analytics requests."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _config(ctx: click.Context, **overrides) -> Config:
    try:
        return Config.from_sources(ctx.obj["config_path"], **overrides)
    except (TypeError, ValueError) as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--storage", "storage_path", default=None, help="Storage directory")
@click.pass_context
def status(ctx: click.Context, storage_path: str | None) -> None:
    """Show what is waiting in the persisted queue and event batch."""
    config = _config(ctx, storage_path=storage_path)
    store = JsonStore(config.storage_path)
    queue = store.get(QUEUE_KEY, []) or []
    events = store.get(EVENT_KEY, []) or []

    table = Table(title=f"Beacon storage: {store.storage_path}")
    table.add_column("Item")
    table.add_column("Value", justify="right")
    table.add_row("Device id", str(store.get(ID_KEY, None) or "-"))
    table.add_row("Queued requests", str(len(queue)))
    table.add_row("Batched events", str(len(events)))
    if queue:
        kinds: dict[str, int] = {}
        for request in queue:
            kinds[_kind_of(request)] = kinds.get(_kind_of(request), 0) + 1
        for kind, count in sorted(kinds.items()):
            table.add_row(f"  {kind}", str(count))
    console.print(table)


def _kind_of(request: dict) -> str:
    for kind in ("begin_session", "end_session", "session_duration", "events",
                 "user_details", "crash", "consent", "campaign_id", "old_device_id"):
        if kind in request:
            return kind
    return "other"


@cli.command()
@click.option("--storage", "storage_path", default=None, help="Storage directory")
@click.option("--url", default=None, help="Server URL (overrides config)")
@click.option("--app-key", default=None, help="App key used for batched events")
@click.option("--max", "max_requests", type=int, default=None,
              help="Stop after delivering this many requests")
@click.pass_context
def flush(ctx: click.Context, storage_path: str | None, url: str | None,
          app_key: str | None, max_requests: int | None) -> None:
    """Deliver persisted requests now, stopping at the first failure."""
    config = _config(ctx, storage_path=storage_path, url=url, app_key=app_key)
    if not config.url:
        click.echo("No server URL configured. Pass --url or set BEACON_URL.", err=True)
        sys.exit(1)
    if not config.enabled:
        click.echo("Delivery is disabled (telemetry off).", err=True)
        sys.exit(1)
    beacon = Beacon(config)
    before = len(beacon.queue) + len(beacon.batcher)
    delivered = beacon.flush(max_requests)
    remaining = len(beacon.queue) + len(beacon.batcher)
    beacon.close()
    click.echo(f"Delivered {delivered} request(s), {remaining} still queued.")
    if before and not delivered and remaining:
        sys.exit(2)


@cli.command()
@click.option("--storage", "storage_path", default=None, help="Storage directory")
@click.confirmation_option(prompt="Drop every queued request and batched event?")
@click.pass_context
def clear(ctx: click.Context, storage_path: str | None) -> None:
    """Empty the persisted queue and event batch."""
    config = _config(ctx, storage_path=storage_path)
    store = JsonStore(config.storage_path)
    store.set(QUEUE_KEY, [])
    store.set(EVENT_KEY, [])
    click.echo("Queue and event batch cleared.")


@cli.group()
def config() -> None:
    """Manage Beacon configuration."""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set a configuration value. Supports: telemetry (on/off), url, app_key, storage_path."""
    config_path = ctx.obj["config_path"]
    cfg = load_config(config_path)
    if key == "telemetry":
        if value not in ("on", "off"):
            click.echo("Value must be 'on' or 'off'", err=True)
            sys.exit(1)
        cfg["telemetry"] = (value == "on")
    elif key in ("url", "app_key", "storage_path", "device_id"):
        cfg[key] = value
    else:
        click.echo(f"Unknown config key: {key}", err=True)
        sys.exit(1)
    save_config(config_path, cfg)
    click.echo(f"{key}: {value}")


@config.command("get")
@click.argument("key")
@click.pass_context
def config_get(ctx: click.Context, key: str) -> None:
    """Get a configuration value."""
    cfg = load_config(ctx.obj["config_path"])
    if key == "telemetry":
        status = "on" if cfg.get("telemetry", True) else "off"
        click.echo(f"telemetry: {status}")
    elif key in ("url", "app_key", "storage_path", "device_id"):
        click.echo(f"{key}: {cfg.get(key, '')}")
    else:
        click.echo(f"Unknown config key: {key}", err=True)
        sys.exit(1)


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
