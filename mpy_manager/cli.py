"""Typer CLI entrypoint.

Every command connects to one board, does its work and disconnects again.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, NoReturn, Optional, Tuple

import typer

from mpy_manager.config import EngineConfig
from mpy_manager.device.registry import DeviceRegistry
from mpy_manager.errors import MpyManagerError
from mpy_manager.models import DeviceInfo

app = typer.Typer(help="Talk to MicroPython boards over serial")

_options = {"baudrate": None}


@app.callback()
def main(
    baud: Optional[int] = typer.Option(None, "--baud", "-b", help="Use this baud rate instead of probing"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log protocol traffic"),
) -> None:
    """MicroPython device manager."""
    _options["baudrate"] = baud
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )


@contextmanager
def _session(port: str) -> Iterator[Tuple[DeviceRegistry, DeviceInfo]]:
    registry = DeviceRegistry(EngineConfig.from_env())
    info = registry.connect(port, baudrate=_options["baudrate"])
    for issue in info.issues:
        typer.echo(f"Warning: {issue}", err=True)
    try:
        yield registry, info
    finally:
        registry.disconnect_all()


def _fail(exc: MpyManagerError) -> NoReturn:
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1) from None


@app.command("ports")
def list_ports(
    all_ports: bool = typer.Option(False, "--all", "-a", help="Include ports that do not look like boards"),
) -> None:
    """List serial ports that look like MicroPython boards."""
    ports = DeviceRegistry().list_ports(only_likely=not all_ports)
    if not ports:
        typer.echo("No serial ports found")
        return
    for info in ports:
        vendor = f" [{info.vendor}]" if info.vendor else ""
        typer.echo(f"{info.port} {info.description}{vendor}")


@app.command("exec")
def exec_command(port: str, command: str) -> None:
    """Run one REPL command and print its output."""
    try:
        with _session(port) as (registry, info):
            output = registry.run_command(info.id, command)
        if output:
            typer.echo(output)
    except MpyManagerError as exc:
        _fail(exc)


@app.command("ls")
def list_files(port: str, path: str = typer.Argument("/")) -> None:
    """List a remote directory."""
    try:
        with _session(port) as (registry, info):
            entries = registry.list_files(info.id, path)
        for entry in sorted(entries, key=lambda e: (not e.is_directory, e.name)):
            if entry.is_directory:
                typer.echo(f"{'<dir>':>10}  {entry.name}/")
            else:
                typer.echo(f"{entry.size:>10}  {entry.name}")
    except MpyManagerError as exc:
        _fail(exc)


@app.command("get")
def get_file(port: str, remote_path: str, local_path: Optional[str] = typer.Argument(None)) -> None:
    """Download a remote file."""
    target = local_path or remote_path.rsplit("/", 1)[-1]
    try:
        with _session(port) as (registry, info):
            content = registry.download_file(info.id, remote_path, target)
        typer.echo(f"Downloaded {remote_path} -> {target} ({len(content.encode('utf-8'))} bytes)")
    except OSError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except MpyManagerError as exc:
        _fail(exc)


@app.command("put")
def put_file(port: str, local_path: str, remote_name: Optional[str] = typer.Argument(None)) -> None:
    """Upload a local text file."""
    try:
        with _session(port) as (registry, info):
            remote_path = registry.upload_file(info.id, local_path, remote_name)
        typer.echo(f"Uploaded {local_path} -> {remote_path}")
    except OSError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except MpyManagerError as exc:
        _fail(exc)


@app.command("rm")
def remove_file(
    port: str,
    path: str,
    directory: bool = typer.Option(False, "--dir", "-d", help="Remove an empty directory"),
) -> None:
    """Delete a remote file or empty directory."""
    try:
        with _session(port) as (registry, info):
            registry.delete_file(info.id, path, is_directory=directory)
        typer.echo(f"Deleted {path}")
    except MpyManagerError as exc:
        _fail(exc)


@app.command("reset")
def reset(port: str) -> None:
    """Interrupt the running program and soft reset the board."""
    try:
        with _session(port) as (registry, info):
            registry.reset_device(info.id)
        typer.echo(f"Reset {port}")
    except MpyManagerError as exc:
        _fail(exc)


@app.command("mem")
def memory(port: str) -> None:
    """Show heap, flash and CPU information."""
    try:
        with _session(port) as (registry, info):
            typer.echo(registry.get_memory_info(info.id))
    except MpyManagerError as exc:
        _fail(exc)


def run() -> None:
    app()


if __name__ == "__main__":
    run()
