"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import typer

from vibehub.api import Hub, send_remote
from vibehub.core.config import load_profiles, load_settings
from vibehub.core.errors import VibehubError

app = typer.Typer(help="Drive haptic devices over BLE GATT, BLE advertising, OSC and remote tunnels")

_PAIRING_POLL_S = 0.5


def _build_hub(config: Path | None) -> Hub:
    hub = Hub(load_settings(config))
    for warning in hub.load_warnings:
        typer.echo(f"Warning: {warning}", err=True)
    return hub


async def _announce_pairing(hub: Hub) -> None:
    while hub.pairing_code is None:
        await asyncio.sleep(_PAIRING_POLL_S)
    typer.echo(f"Remote control code: {hub.pairing_code}")


async def _serve(hub: Hub) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, stop.set)

    await hub.start()
    for name, reason in sorted(hub.disabled.items()):
        typer.echo(f"Adapter {name} disabled: {reason}", err=True)
    announcer = asyncio.ensure_future(_announce_pairing(hub))
    try:
        await stop.wait()
    finally:
        announcer.cancel()
        await hub.stop()


@app.command("run")
def run_hub(
    config: Path | None = typer.Option(None, "--config", help="Settings YAML file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Run the hub until interrupted."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        hub = _build_hub(config)
        asyncio.run(_serve(hub))
    except KeyboardInterrupt:
        return
    except VibehubError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("probe")
def probe(
    config: Path | None = typer.Option(None, "--config", help="Settings YAML file"),
) -> None:
    """Report which adapters can run on this machine."""
    try:
        hub = _build_hub(config)
        disabled = hub.probe()
        for adapter in hub.adapters:
            reason = disabled.get(adapter.name)
            status = f"disabled ({reason})" if reason else "available"
            typer.echo(f"{adapter.name}: {status}")
    except VibehubError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("profiles")
def list_profiles() -> None:
    """List GATT device profiles and their channels."""
    try:
        loaded = load_profiles()
        for warning in loaded.warnings:
            typer.echo(f"Warning: {warning}", err=True)
        if not loaded.profiles:
            typer.echo("No profiles loaded")
            raise typer.Exit(code=1)

        for profile in sorted(loaded.profiles.values(), key=lambda p: p.id):
            typer.echo(f"{profile.id}: {profile.name}")
            for channel in profile.channels:
                typer.echo(
                    f"  channel {channel.index} {channel.kind.value} "
                    f"[{channel.range.minimum:g}..{channel.range.maximum:g}] {channel.template}"
                )
    except VibehubError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("send")
def send(
    code: str,
    device: str,
    channel: int,
    intensity: float,
    duration_ms: int | None = typer.Option(None, "--duration-ms", help="Return to zero after this many ms"),
) -> None:
    """Send one command to a remote hub using its pairing code."""
    try:
        asyncio.run(send_remote(code, device, channel, intensity, duration_ms=duration_ms))
        typer.echo(f"Sent {device} channel {channel} intensity {intensity:g}")
    except VibehubError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
