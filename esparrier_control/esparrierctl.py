# esparrier_control/esparrierctl.py
"""Esparrier KVM control CLI entrypoint.

Every device command opens exactly one device for its own duration and
closes it on every exit path. Errors from the library are printed in red
and turn into exit code 1.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional

import typer
from click.shell_completion import get_completion_class
from rich import print
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table
from typing_extensions import Annotated

from . import __version__
from .const import DEFAULT_WAIT_TIMEOUT, ENV_WIFI_PASSWORD, ENV_WIFI_SSID, USB_PID, USB_VID
from .device import DeviceHandle, discover, filter_devices, open_device, wait_for_device
from .exception import EsparrierError, EsparrierIOError, MissingSecret, NoUpdateAvailable
from .models import DeviceConfig, format_version
from .ota import OtaSession, run_ota

app = typer.Typer(
    help="Esparrier KVM configuration and firmware update tool",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()


@dataclass
class CliOptions:
    wait: bool = False
    wait_timeout: Optional[float] = DEFAULT_WAIT_TIMEOUT
    quiet: bool = False
    bus: Optional[int] = None
    address: Optional[int] = None
    vid: int = USB_VID
    pid: int = USB_PID


class Shell(str, Enum):
    bash = "bash"
    zsh = "zsh"
    fish = "fish"


# ────────────────────────────────────────────────────────────────
# Global options
# ────────────────────────────────────────────────────────────────
def _maybe_hex(value: Optional[str], name: str) -> Optional[int]:
    """Accept ``12``, ``0x0c`` or ``0o14``."""
    if value is None:
        return None
    try:
        return int(value, 0)
    except ValueError:
        raise typer.BadParameter(f"Invalid number: {value!r}", param_hint=name) from None


def _setup_logging(debug: bool) -> None:
    if debug:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(rich_tracebacks=True, show_time=False, show_level=True)],
        )
        logging.getLogger("esparrier").setLevel(logging.DEBUG)
        logging.getLogger("usb").setLevel(logging.DEBUG)
    else:
        logging.getLogger("esparrier").setLevel(logging.WARNING)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"esparrierctl {__version__}")
        raise typer.Exit()


@app.callback()
def _global_options(
    ctx: typer.Context,
    wait: Annotated[
        bool, typer.Option("--wait", "-w", help="Wait for the device to be connected")
    ] = False,
    wait_timeout: Annotated[
        float,
        typer.Option(
            "--wait-timeout",
            min=0,
            help="Seconds to wait with --wait, 0 waits forever",
        ),
    ] = DEFAULT_WAIT_TIMEOUT,
    quiet: Annotated[
        bool, typer.Option("--quiet", "-q", help="Do not print any non-error messages")
    ] = False,
    debug: Annotated[
        bool, typer.Option("--debug/--no-debug", help="Enable verbose debug logging")
    ] = False,
    bus: Annotated[
        Optional[str], typer.Option("--bus", help="Only use the device on this USB bus")
    ] = None,
    address: Annotated[
        Optional[str],
        typer.Option("--address", help="Only use the device with this USB address"),
    ] = None,
    vid: Annotated[
        Optional[str], typer.Option("--vid", hidden=True, help="USB vendor id")
    ] = None,
    pid: Annotated[
        Optional[str], typer.Option("--pid", hidden=True, help="USB product id")
    ] = None,
    version: Annotated[
        bool,
        typer.Option("--version", callback=_version_callback, is_eager=True, help="Show version"),
    ] = False,
) -> None:
    _setup_logging(debug)
    ctx.obj = CliOptions(
        wait=wait,
        wait_timeout=wait_timeout or None,
        quiet=quiet,
        bus=_maybe_hex(bus, "--bus"),
        address=_maybe_hex(address, "--address"),
        vid=_maybe_hex(vid, "--vid") or USB_VID,
        pid=_maybe_hex(pid, "--pid") or USB_PID,
    )


# ────────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────────
def _options(ctx: typer.Context) -> CliOptions:
    return ctx.ensure_object(CliOptions)


def _say(ctx: typer.Context, message: str) -> None:
    if not _options(ctx).quiet:
        print(message)


@contextmanager
def _cli_errors() -> Iterator[None]:
    """Command boundary: report library errors and exit with code 1."""
    try:
        yield
    except EsparrierError as e:
        typer.secho(f"Error: {e}", err=True, fg=typer.colors.RED)
        raise typer.Exit(1) from e


@contextmanager
def _device(ctx: typer.Context) -> Iterator[DeviceHandle]:
    opts = _options(ctx)
    with open_device(
        wait=opts.wait,
        wait_timeout=opts.wait_timeout,
        bus=opts.bus,
        address=opts.address,
        vid=opts.vid,
        pid=opts.pid,
    ) as handle:
        yield handle


def _read_input(filename: Optional[str]) -> str:
    from_stdin = filename is None or filename == "-"
    try:
        if from_stdin:
            return typer.get_text_stream("stdin").read()
        return Path(filename).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise EsparrierIOError(f"Cannot read {'stdin' if from_stdin else filename}: {e}") from e


def _env_value(name: str) -> str:
    value = os.environ.get(name)
    if value is None:
        raise MissingSecret(f"Environment variable {name} is not set")
    return value


def load_config(
    filename: Optional[str], *, ssid_from_env: bool = False, password_from_env: bool = False
) -> DeviceConfig:
    """Build and validate the configuration to upload. Touches no device."""
    config = DeviceConfig.from_json(_read_input(filename))
    if ssid_from_env:
        config.ssid = _env_value(ENV_WIFI_SSID)
    if password_from_env:
        config.password = _env_value(ENV_WIFI_PASSWORD)
    config.validate()
    return config


# ────────────────────────────────────────────────────────────────
# Device commands
# ────────────────────────────────────────────────────────────────
@app.command(name="list")
def list_devices(ctx: typer.Context) -> None:
    """List available devices."""
    opts = _options(ctx)
    with _cli_errors():
        if opts.wait:
            found = wait_for_device(
                opts.wait_timeout,
                vid=opts.vid,
                pid=opts.pid,
                bus=opts.bus,
                address=opts.address,
                discover_fn=discover,
            )
        else:
            found = filter_devices(discover(opts.vid, opts.pid), opts.bus, opts.address)
    if not found:
        _say(ctx, "No Esparrier KVM devices found.")
        return
    table = Table("#", "Bus", "Address", "Serial", "Model")
    for idx, d in enumerate(found, start=1):
        table.add_row(str(idx), str(d.bus), str(d.address), d.serial or "", d.model or "???")
    _say(ctx, f"Found {len(found)} Esparrier KVM device(s):")
    print(table)


@app.command(name="get-state")
def get_state(ctx: typer.Context) -> None:
    """Get device state, IP address, server connection status, etc."""
    with _cli_errors(), _device(ctx) as handle:
        state = handle.get_state()
    console.print_json(data=state.to_dict())


@app.command(name="get-config")
def get_config(ctx: typer.Context) -> None:
    """Get device configuration, secrets will be redacted."""
    with _cli_errors(), _device(ctx) as handle:
        config = handle.get_config()
    console.print_json(data=config.to_dict())


@app.command(name="set-config")
def set_config(
    ctx: typer.Context,
    filename: Annotated[
        Optional[str],
        typer.Argument(help="Configuration file, reads stdin when omitted or '-'"),
    ] = None,
    ssid_from_env: Annotated[
        bool,
        typer.Option("--ssid-from-env", "-s", help=f"Take the Wi-Fi name from ${ENV_WIFI_SSID}"),
    ] = False,
    password_from_env: Annotated[
        bool,
        typer.Option(
            "--password-from-env", "-p", help=f"Take the Wi-Fi password from ${ENV_WIFI_PASSWORD}"
        ),
    ] = False,
    no_commit: Annotated[
        bool,
        typer.Option("--no-commit", hidden=True, help="Upload without committing"),
    ] = False,
) -> None:
    """Set device configuration."""
    with _cli_errors():
        config = load_config(
            filename, ssid_from_env=ssid_from_env, password_from_env=password_from_env
        )
        with _device(ctx) as handle:
            handle.set_config(config)
            if not no_commit:
                handle.commit_config()
    if no_commit:
        _say(ctx, "Configuration set, use `commit-config` to apply the configuration.")
    else:
        _say(ctx, "Configuration committed, restarting device.")


@app.command(name="commit-config", hidden=True)
def commit_config(ctx: typer.Context) -> None:
    """Commit the last configuration and restart the device."""
    with _cli_errors(), _device(ctx) as handle:
        handle.commit_config()
    _say(ctx, "Configuration committed, restarting device.")


@app.command(name="keep-awake")
def keep_awake(ctx: typer.Context) -> None:
    """Enable keep awake."""
    with _cli_errors(), _device(ctx) as handle:
        handle.keep_awake(True)
    _say(ctx, "Computer will stay awake.")


@app.command(name="no-keep-awake")
def no_keep_awake(ctx: typer.Context) -> None:
    """Disable keep awake."""
    with _cli_errors(), _device(ctx) as handle:
        handle.keep_awake(False)
    _say(ctx, "Computer will not stay awake.")


@app.command()
def reboot(ctx: typer.Context) -> None:
    """Reboot the device."""
    with _cli_errors(), _device(ctx) as handle:
        handle.reboot()
    _say(ctx, "Device rebooted.")


# ────────────────────────────────────────────────────────────────
# OTA
# ────────────────────────────────────────────────────────────────
def _progress_tracker(progress: Progress, label: str) -> Callable[[int, int], None]:
    tasks: Dict[str, TaskID] = {}

    def _update(done: int, total: int) -> None:
        if label not in tasks:
            tasks[label] = progress.add_task(label, total=total or None)
        progress.update(tasks[label], completed=done, total=total or None)

    return _update


@app.command()
def ota(
    ctx: typer.Context,
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Flash even if the device is up to date")
    ] = False,
    file: Annotated[
        Optional[Path],
        typer.Option("--file", exists=True, dir_okay=False, help="Flash a local firmware image"),
    ] = None,
    pre: Annotated[
        bool, typer.Option("--pre", help="Consider pre-release firmware")
    ] = False,
) -> None:
    """Update the device firmware."""
    opts = _options(ctx)

    def _announce(session: OtaSession) -> None:
        if opts.quiet:
            return
        if session.target_version is None:
            console.print(f"Flashing {file} (device runs {format_version(session.current_version)})")
        else:
            console.print(
                f"Updating {session.model} firmware "
                f"{format_version(session.current_version)} → {format_version(session.target_version)}"
            )

    with _cli_errors():
        try:
            with _device(ctx) as handle, Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                DownloadColumn(),
                TransferSpeedColumn(),
                TimeRemainingColumn(),
                console=console,
                disable=opts.quiet,
            ) as progress:
                run_ota(
                    handle,
                    force=force,
                    file=file,
                    include_prerelease=pre,
                    on_session=_announce,
                    on_download=_progress_tracker(progress, "Downloading"),
                    on_transfer=_progress_tracker(progress, "Flashing"),
                )
        except NoUpdateAvailable as e:
            _say(ctx, f"[green]Firmware is up to date.[/green] {e.detail}")
            return
    _say(ctx, "Firmware updated, device is restarting.")


# ────────────────────────────────────────────────────────────────
# Misc
# ────────────────────────────────────────────────────────────────
@app.command()
def completions(
    ctx: typer.Context,
    shell: Annotated[Shell, typer.Argument(help="Shell to generate completions for")],
) -> None:
    """Generate shell completions."""
    root = ctx.find_root()
    prog_name = root.info_name or "esparrierctl"
    complete_var = f"_{prog_name.replace('-', '_').upper()}_COMPLETE"
    comp_cls = get_completion_class(shell.value)
    if comp_cls is None:
        raise typer.BadParameter(f"Unsupported shell: {shell.value}")
    typer.echo(comp_cls(root.command, {}, prog_name, complete_var).source())


if __name__ == "__main__":
    app()
