"""Typer CLI entrypoint."""

from __future__ import annotations

import logging
import time

import typer

from virtlocks.api import Client
from virtlocks.core.config import list_profiles, load_settings, set_active_profile
from virtlocks.core.errors import VirtLocksError
from virtlocks.core.model import BatchResult, LocksSnapshot, SimulationMode
from virtlocks.core.naming import is_master

app = typer.Typer(help="Simulate bike and scooter rack locks against a cloud device shadow service")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    level = "DEBUG" if verbose else None
    if level is None:
        try:
            level = load_settings().log_level
        except VirtLocksError:
            level = "INFO"
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_client() -> Client:
    client = Client()
    if client.settings.active_profile and client.profile is None:
        typer.echo(f"Warning: active profile '{client.settings.active_profile}' not found", err=True)
    return client


def _print_batch(result: BatchResult, verb: str) -> None:
    for device_id in result.succeeded_ids:
        typer.echo(f"{verb} {device_id}")
    for error in result.errors:
        typer.echo(f"Warning: {error}", err=True)
    typer.echo(f"{len(result.succeeded_ids)} {verb.lower()}, {len(result.errors)} errors")


def _print_locks(snapshot: LocksSnapshot) -> None:
    for lock in snapshot.filtered_locks:
        link = "connected" if lock.connected else "offline"
        timer = f" timer={lock.timer_ms}ms" if lock.timer_ms is not None else ""
        typer.echo(
            f"  {lock.device_id} [{link}] locked={lock.locked} empty={lock.empty} clamps={lock.clamps}{timer}"
        )


@app.command("devices")
def list_devices(
    remote: bool = typer.Option(False, "--remote", help="List devices registered in the cloud instead"),
) -> None:
    """List provisioned devices and whether their certificates are present."""
    try:
        with _build_client() as client:
            if remote:
                devices = client.list_remote_devices()
                if not devices:
                    typer.echo("No remote devices found")
                    return
                for device in devices:
                    local = "local" if client.registry.has_certificates(device.name) else "remote-only"
                    typer.echo(f"{device.name} {device.type_name or '-'} ({local})")
                return

            device_ids = client.list_local_devices()
            if not device_ids:
                typer.echo("No local devices found")
                return
            for device_id in device_ids:
                role = "master" if is_master(device_id) else "lock"
                certs = "ok" if client.registry.has_certificates(device_id) else "missing certificates"
                typer.echo(f"{device_id} {role} ({certs})")
    except VirtLocksError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("racks")
def list_racks() -> None:
    """List racks formed by the local devices."""
    try:
        with _build_client() as client:
            racks = client.list_racks()
            if not racks:
                typer.echo("No racks found")
                return
            for rack in racks:
                master = rack.master_id or "<no master>"
                typer.echo(f"{rack.full_name}: master={master} locks={len(rack.lock_ids)}")
                for lock_id in rack.lock_ids:
                    typer.echo(f"  {lock_id}")
    except VirtLocksError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("profiles")
def show_profiles() -> None:
    """List configured cloud profiles; the active one is marked with '*'."""
    try:
        names = list_profiles()
        if not names:
            typer.echo("No profiles configured")
            return
        active = load_settings().active_profile
        for name in names:
            marker = "*" if name == active else " "
            typer.echo(f"{marker} {name}")
    except VirtLocksError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("use-profile")
def use_profile(name: str) -> None:
    """Make NAME the active cloud profile."""
    try:
        set_active_profile(name)
        typer.echo(f"Active profile: {name}")
    except VirtLocksError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("discover-endpoint")
def discover_endpoint() -> None:
    """Look up the MQTT data endpoint and save it to the active profile."""
    try:
        with _build_client() as client:
            endpoint = client.discover_endpoint()
            typer.echo(f"Endpoint: {endpoint}")
    except VirtLocksError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("install-ca")
def install_ca() -> None:
    """Download the Amazon root CA used to verify the broker."""
    try:
        with _build_client() as client:
            client.install_root_ca()
            typer.echo(f"Saved CA certificate to {client.registry.ca_path}")
    except VirtLocksError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("simulate")
def simulate(
    mode: SimulationMode | None = typer.Option(None, "--mode", help="Connection topology"),
    duration: float | None = typer.Option(
        None,
        "--duration",
        min=0,
        help="Seconds to run; runs until interrupted when omitted",
    ),
) -> None:
    """Connect every local lock and keep their shadows in sync."""
    try:
        with _build_client() as client:
            if mode is not None:
                client.set_mode(mode)
            snapshot = client.load_locks()
            typer.echo(f"Loaded {len(snapshot.locks)} locks in {len(snapshot.rack_groups)} racks")
            if not client.connect():
                error = client.snapshot().error or "No connections could be established"
                typer.echo(f"Error: {error}", err=True)
                raise typer.Exit(code=1)

            snapshot = client.snapshot()
            typer.echo(
                f"Connected ({client.service.mode.value}): "
                f"{snapshot.connected_count} online, {snapshot.disconnected_count} offline"
            )
            client.start()
            deadline = None if duration is None else time.monotonic() + duration
            try:
                while deadline is None or time.monotonic() < deadline:
                    time.sleep(0.2 if deadline is None else max(0.0, min(0.2, deadline - time.monotonic())))
            except KeyboardInterrupt:
                typer.echo("Interrupted")

            client.disconnect()
            typer.echo("Final state:")
            _print_locks(client.snapshot())
    except VirtLocksError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("create-rack")
def create_rack(
    env: str,
    rack: str,
    bikes: int = typer.Option(..., "--bikes", min=0, help="Number of bike locks"),
    scooters: int = typer.Option(0, "--scooters", min=0, help="Number of scooter locks"),
    lobby: str | None = typer.Option(None, "--lobby", help="Lobby attribute for every device"),
) -> None:
    """Provision a rack master plus its locks with one shared certificate."""
    try:
        with _build_client() as client:
            result = client.create_rack(env, rack, bikes, scooters, lobby)
        _print_batch(result, "Created")
        if not result.succeeded_ids:
            raise typer.Exit(code=1)
    except VirtLocksError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("delete-rack")
def delete_rack(env: str, rack: str) -> None:
    """Delete every device of a rack together with its certificates."""
    try:
        with _build_client() as client:
            result = client.delete_rack(env, rack)
        _print_batch(result, "Deleted")
        if not result.ok:
            raise typer.Exit(code=1)
    except VirtLocksError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
