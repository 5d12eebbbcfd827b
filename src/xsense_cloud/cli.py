"""Thin CLI wrapper over :class:`xsense_cloud.Client`."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from collections.abc import Coroutine
from datetime import datetime
from typing import Any, TypeVar

import aiohttp
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.syntax import Syntax

from xsense_cloud.capabilities import detect_capabilities
from xsense_cloud.client import Client
from xsense_cloud.config import Settings, load_settings, save_settings
from xsense_cloud.directory import DeviceRecord
from xsense_cloud.errors import XSenseError
from xsense_cloud.protocol import PROTOCOLS
from xsense_cloud.realtime import station_topics

app = typer.Typer(help="Talk to the X-Sense smoke and CO alarm cloud.", invoke_without_command=True)

_T = TypeVar("_T")


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Talk to the X-Sense smoke and CO alarm cloud."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


def _print_json(obj: object) -> None:
    """Print JSON, syntax-highlighted when stdout is a TTY and compact otherwise."""
    if sys.stdout.isatty():
        Console().print(Syntax(json.dumps(obj, indent=2), "json"))
    else:
        typer.echo(json.dumps(obj))


def _ensure_client() -> Client:
    """Load saved settings or exit with an error."""
    try:
        return Client(load_settings())
    except ValueError:
        typer.echo("No saved credentials. Run `xsense login` first.", err=True)
        raise typer.Exit(1) from None


def _run(coro: Coroutine[Any, Any, _T]) -> _T:
    """Run *coro*, turning API and network failures into a clean exit."""
    try:
        return asyncio.run(coro)
    except (XSenseError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


async def _fetch_devices(client: Client) -> list[DeviceRecord]:
    await client.login()
    return await client.get_device_list()


def _device_to_dict(device: DeviceRecord) -> dict[str, object]:
    caps = [] if device.is_station else detect_capabilities(device.device_model)
    return {
        "stationSn": device.station_sn,
        "stationName": device.station_name,
        "deviceId": device.device_id,
        "deviceName": device.device_name,
        "deviceModel": device.device_model,
        "isStation": device.is_station,
        "capabilities": [c.value for c in caps],
        "status": device.status,
    }


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def login(
    email: str = typer.Option(..., prompt=True, help="X-Sense account email"),
    password: str = typer.Option(
        ..., prompt=True, hide_input=True, help="X-Sense account password"
    ),
    protocol: str = typer.Option("cognito", help=f"Backend protocol ({', '.join(PROTOCOLS)})"),
) -> None:
    """Check the credentials against X-Sense and save them locally."""
    if protocol not in PROTOCOLS:
        typer.echo(f"Unknown protocol '{protocol}'.", err=True)
        raise typer.Exit(1)
    settings = Settings(username=email, password=password, protocol=protocol)
    typer.echo(f"Logging in as {email}...")
    client = Client(settings)
    devices = _run(_fetch_devices(client))
    path = save_settings(settings)
    typer.echo(f"Logged in. {len(devices)} device(s) found. Settings saved to {path}.")


@app.command()
def devices(
    as_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List every base station and sensor on the account."""
    client = _ensure_client()
    all_devices = _run(_fetch_devices(client))
    if not all_devices:
        typer.echo("No devices found.", err=True)
        raise typer.Exit(1)

    if as_json:
        _print_json([_device_to_dict(d) for d in all_devices])
        return

    for dev in all_devices:
        if dev.is_station:
            typer.echo(f"  * {dev.device_name} ({dev.device_model or 'station'})")
            typer.echo(f"      SN: {dev.station_sn}")
            continue
        caps = " + ".join(c.value for c in detect_capabilities(dev.device_model))
        typer.echo(f"    {dev.device_name} ({dev.device_model}) [{caps}]")
        typer.echo(f"      Station: {dev.station_name} ({dev.station_sn})")

    typer.echo("\n  * = base station.")


@app.command()
def topics() -> None:
    """Show the MQTT topics that `watch` subscribes to."""
    client = _ensure_client()
    all_devices = _run(_fetch_devices(client))
    serials = list(dict.fromkeys(d.station_sn for d in all_devices if d.station_sn))
    if not serials:
        typer.echo("No stations found.", err=True)
        raise typer.Exit(1)
    for sn in serials:
        for topic in station_topics(sn):
            typer.echo(topic)


@app.command()
def watch(
    as_json: bool = typer.Option(False, "--json", "-j", help="Print raw JSON payloads"),
) -> None:
    """Watch realtime alarm and state events. Press Ctrl+C to stop."""
    client = _ensure_client()
    with contextlib.suppress(KeyboardInterrupt):
        _run(_watch_async(client, as_json))


async def _watch_async(client: Client, as_json: bool) -> None:
    """Async implementation of the watch command."""
    is_tty = sys.stdout.isatty()
    await _fetch_devices(client)

    def on_message(topic: str, payload: Any) -> None:
        if as_json:
            _print_json({"topic": topic, "payload": payload})
            return
        ts = datetime.now().strftime("%H:%M:%S")
        body = json.dumps(payload)
        if is_tty:
            typer.echo(f"[{ts}] {typer.style(topic, fg='cyan')}: {body}")
        else:
            typer.echo(f"[{ts}] {topic}: {body}")

    client.on_message(on_message)
    async with client:
        await client.connect_mqtt()
        if not client.transport.topics:
            typer.echo("No stations to watch.", err=True)
            return
        await client.transport.wait_connected()
        typer.echo(
            f"Watching {len(client.transport.topics)} topic(s)... (Ctrl+C to stop)"
        )
        await asyncio.Event().wait()
