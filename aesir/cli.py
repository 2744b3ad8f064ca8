"""Thin CLI wrapper for aesir.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import time
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from aesir import __version__
from aesir.config import get_settings, print_settings_json
from aesir.errors import AesirError
from aesir.flash.orchestrator import FlashListener, FlashOutcome, FlashRequest
from aesir.flash.progress import ProgressUpdate
from aesir.types import DeviceCandidate, FirmwareSlot, SessionState

app = typer.Typer(
    name="aesir",
    help="Aesir - flash firmware to devices in download mode",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"aesir version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data))


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Aesir - flash firmware to devices in download mode."""
    configure_logging(get_settings().log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print_json(print_settings_json(settings))
        return

    tmp_dir_display = str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Data directory:      {settings.data_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print(f"  Temp directory:      {tmp_dir_display}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Auto reboot:         {settings.auto_reboot}")
    console.print(f"  Preferred backend:   {settings.preferred_backend}")
    console.print(f"  Credential prompt:   {settings.credential_prompt}")
    console.print()
    console.print("[bold]Discovery:[/bold]")
    console.print(f"  USB vendor id:       {settings.usb_vendor_id}")
    console.print(f"  Probe interval:      {settings.device_probe_interval}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Detect timeout:      {settings.detect_timeout}")
    console.print(f"  Flash timeout:       {settings.flash_timeout}")
    console.print(f"  Prompt timeout:      {settings.prompt_timeout}")


def _device_dict(device: DeviceCandidate) -> dict[str, Any]:
    return {
        "device_id": device.device_id,
        "vendor_id": device.vendor_id,
        "product_id": device.product_id,
        "description": device.description,
        "usb_path": device.usb_path,
    }


def _print_devices(devices: list[DeviceCandidate]) -> None:
    if not devices:
        console.print("[yellow]No download-mode devices found[/yellow]")
        return
    table = Table(title="Download-mode devices")
    table.add_column("Device", style="cyan")
    table.add_column("USB ID")
    table.add_column("Description")
    for device in devices:
        table.add_row(
            device.device_id,
            f"{device.vendor_id}:{device.product_id}",
            device.description,
        )
    console.print(table)


@app.command()
def devices(
    watch: Annotated[
        bool,
        typer.Option("--watch", "-w", help="Keep watching for device changes"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List attached download-mode devices."""
    from aesir.flash.device import DeviceDiscovery, DeviceMonitor

    settings = get_settings()
    discovery = DeviceDiscovery(
        settings.lsusb_path, settings.usb_vendor_id, settings.detect_timeout
    )

    if watch:
        monitor = DeviceMonitor(
            discovery,
            interval=settings.device_probe_interval,
            on_change=_print_devices,
        )
        monitor.start()
        try:
            while monitor.running:
                time.sleep(0.5)
        except KeyboardInterrupt:
            console.print("[yellow]Stopped[/yellow]")
        finally:
            monitor.stop()
        return

    try:
        found = discovery.find_devices()
    except AesirError as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json([_device_dict(device) for device in found])
    else:
        _print_devices(found)


@app.command()
def backends(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show probed flashing tools and the backend order."""
    from aesir.backends.chain import BackendChain
    from aesir.capabilities import probe_capabilities

    settings = get_settings()
    capabilities = probe_capabilities(settings)
    order = BackendChain(capabilities, settings).order()

    if json_output:
        _print_json({**capabilities.to_dict(), "backend_order": order})
        return

    console.print("[bold]Host capabilities:[/bold]")
    heimdall = capabilities.heimdall_path or "(not found)"
    console.print(f"  heimdall:            {heimdall}")
    odin4 = capabilities.odin4_path or "(not found)"
    console.print(f"  odin4:               {odin4}")
    console.print(
        f"  native protocol:     {'loaded' if capabilities.native_available else '-'}"
    )
    console.print(f"  sudo:                {capabilities.sudo_path or '(not found)'}")
    console.print(f"  graphical prompt:    {capabilities.graphical_prompt or '-'}")
    console.print(f"  running as root:     {capabilities.is_root}")
    console.print()
    if order:
        console.print(f"[bold]Backend order:[/bold] {' -> '.join(order)}")
    else:
        console.print("[yellow]No flashing backend available[/yellow]")


pit_app = typer.Typer(help="Inspect partition information tables")
app.add_typer(pit_app, name="pit")


@pit_app.command("show")
def pit_show(
    pit_file: Annotated[Path, typer.Argument(help="PIT file to decode")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Decode a PIT file and list its partitions."""
    from aesir.flash.service import read_pit_file

    try:
        pit = read_pit_file(pit_file)
    except AesirError as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json(
            [
                {
                    "identifier": entry.identifier,
                    "name": entry.name,
                    "file_name": entry.file_name,
                    "binary_type": entry.binary_type,
                    "device_type": entry.device_type,
                    "block_count": entry.block_count,
                }
                for entry in pit
            ]
        )
        return

    table = Table(title=f"{pit_file.name} ({len(pit)} partitions)")
    table.add_column("ID", justify="right")
    table.add_column("Partition", style="cyan")
    table.add_column("File name")
    table.add_column("Binary", justify="right")
    table.add_column("Device", justify="right")
    table.add_column("Blocks", justify="right")
    for entry in pit:
        table.add_row(
            str(entry.identifier),
            entry.name,
            entry.file_name,
            str(entry.binary_type),
            str(entry.device_type),
            str(entry.block_count),
        )
    console.print(table)


flash_app = typer.Typer(help="Flash firmware to a download-mode device")
app.add_typer(flash_app, name="flash")

SlotOption = Annotated[Path | None, typer.Option(help="Firmware file for this slot")]
PartitionOption = Annotated[
    list[str] | None,
    typer.Option(
        "--partition",
        "-p",
        help="Explicit partition for a standalone image, as SLOT=NAME (repeatable)",
    ),
]


def _build_request(
    slot_files: dict[FirmwareSlot, Path | None],
    partitions: list[str] | None,
    auto_reboot: bool = True,
) -> FlashRequest:
    """Turn CLI options into a FlashRequest."""
    explicit: dict[FirmwareSlot, str] = {}
    for value in partitions or []:
        slot_name, sep, partition = value.partition("=")
        try:
            slot = FirmwareSlot(slot_name.strip().upper())
        except ValueError:
            raise typer.BadParameter(
                f"Unknown slot in {value!r}; expected one of "
                f"{', '.join(s.value for s in FirmwareSlot)}",
                param_hint="--partition",
            ) from None
        if not sep or not partition.strip():
            raise typer.BadParameter(
                f"Expected SLOT=NAME, got {value!r}", param_hint="--partition"
            )
        explicit[slot] = partition.strip()
    return FlashRequest(
        files={slot: path for slot, path in slot_files.items() if path is not None},
        partitions=explicit,
        auto_reboot=auto_reboot,
    )


@flash_app.command("plan")
def flash_plan(
    pit_file: Annotated[
        Path, typer.Option("--pit", help="PIT file to resolve against")
    ],
    bl: SlotOption = None,
    ap: SlotOption = None,
    cp: SlotOption = None,
    csc: SlotOption = None,
    userdata: SlotOption = None,
    partitions: PartitionOption = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show what a flash would write, without a device.

    Resolves the selected files against a PIT file with the same rules and
    slot order a real session uses.
    """
    from aesir.flash.service import plan_firmware, read_pit_file

    request = _build_request(
        {
            FirmwareSlot.BL: bl,
            FirmwareSlot.AP: ap,
            FirmwareSlot.CP: cp,
            FirmwareSlot.CSC: csc,
            FirmwareSlot.USERDATA: userdata,
        },
        partitions,
    )
    try:
        pit = read_pit_file(pit_file)
        result = plan_firmware(request, pit)
    except AesirError as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json(result.to_dict())
    else:
        table = Table(title="Flash plan")
        table.add_column("Slot", style="cyan")
        table.add_column("File")
        table.add_column("Partition", style="green")
        table.add_column("Bytes", justify="right")
        for slot in result.slots:
            if slot.error_message:
                table.add_row(
                    slot.slot.value,
                    slot.path.name,
                    f"[red]{slot.error_code}[/red]",
                    "-",
                )
                continue
            for source in slot.sources:
                name = source.name
                if source.compressed:
                    name = f"{name} (compressed)"
                table.add_row(
                    slot.slot.value, name, source.partition, str(source.length)
                )
        console.print(table)
        console.print(
            f"Total: {len(result.partitions)} partition(s), {result.total_bytes} bytes"
        )

    if not result.partitions:
        raise typer.Exit(code=1)


class ConsoleListener(FlashListener):
    """Renders session notifications with rich."""

    def __init__(self, progress: Progress | None) -> None:
        self.progress = progress
        self.task = progress.add_task("Waiting", total=100) if progress else None

    def on_state(self, state: SessionState) -> None:
        if self.progress is not None:
            self.progress.console.print(f"[blue]{state.value}[/blue]")

    def on_progress(self, update: ProgressUpdate) -> None:
        if self.progress is not None and self.task is not None:
            self.progress.update(
                self.task,
                completed=update.session_percent,
                description=f"{update.partition} ({update.phase.value})",
            )

    def on_log(self, line: str) -> None:
        if self.progress is not None:
            self.progress.console.print(f"[dim]{line}[/dim]")

    def on_finished(self, outcome: FlashOutcome) -> None:
        if self.progress is not None and self.task is not None and outcome.success:
            self.progress.update(self.task, completed=100, description="done")


@flash_app.command("run")
def flash_run(
    bl: SlotOption = None,
    ap: SlotOption = None,
    cp: SlotOption = None,
    csc: SlotOption = None,
    userdata: SlotOption = None,
    partitions: PartitionOption = None,
    pit: Annotated[
        Path | None,
        typer.Option(
            "--pit",
            exists=True,
            dir_okay=False,
            help="PIT file for backends that cannot read it from the device",
        ),
    ] = None,
    no_reboot: Annotated[
        bool,
        typer.Option("--no-reboot", help="Leave the device in download mode"),
    ] = False,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Skip confirmation prompts"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Flash firmware to the attached download-mode device.

    Files are flashed in BL, AP, CP, CSC, USERDATA order. Archives (.tar,
    .tar.md5) contribute every entry that matches a partition on the device.
    """
    from aesir.db import open_history
    from aesir.flash.service import flash_firmware

    settings = get_settings()
    if pit is not None:
        settings = settings.model_copy(update={"pit_file": pit})
    request = _build_request(
        {
            FirmwareSlot.BL: bl,
            FirmwareSlot.AP: ap,
            FirmwareSlot.CP: cp,
            FirmwareSlot.CSC: csc,
            FirmwareSlot.USERDATA: userdata,
        },
        partitions,
        auto_reboot=settings.auto_reboot and not no_reboot,
    )

    if not force:
        console.print(
            "[bold red]WARNING:[/bold red] This will OVERWRITE device partitions"
        )
        for slot in request.selected_slots():
            console.print(f"  {slot.value}: {request.files[slot]}")
        confirm = typer.confirm("Are you sure you want to continue?", default=False)
        if not confirm:
            console.print("[yellow]Aborted[/yellow]")
            raise typer.Exit(code=0)

    factory = open_history(settings.db_url)

    with factory() as session:
        try:
            if json_output:
                result = flash_firmware(
                    request,
                    session=session,
                    settings=settings,
                    monitor_interval=settings.device_probe_interval,
                )
            else:
                progress = Progress(
                    TextColumn("{task.description}"),
                    BarColumn(),
                    TaskProgressColumn(),
                    console=console,
                )
                with progress:
                    result = flash_firmware(
                        request,
                        session=session,
                        settings=settings,
                        listener=ConsoleListener(progress),
                        monitor_interval=settings.device_probe_interval,
                    )
            session.commit()
        except Exception as e:
            session.commit()
            console.print(f"[red]Flash failed: {escape(str(e))}[/red]")
            raise typer.Exit(code=1) from None

    outcome = result.outcome
    if json_output:
        _print_json(result.to_dict())
    elif outcome.success:
        console.print("[green]✓ Flash succeeded[/green]")
        console.print(f"  Backend: {outcome.backend}")
        console.print(f"  Partitions: {', '.join(outcome.partitions_flashed)}")
        console.print(f"  Bytes: {outcome.total_bytes}")
        if result.flash_record_id:
            console.print(f"  Record ID: {result.flash_record_id}")
    else:
        console.print("[red]✗ Flash failed[/red]")
        console.print(
            f"  Error ({outcome.error_component}): "
            f"{escape(outcome.error_message or '')}"
        )
        if outcome.partitions_flashed:
            console.print(
                "  [yellow]Already written (not rolled back): "
                f"{', '.join(outcome.partitions_flashed)}[/yellow]"
            )

    if not outcome.success:
        raise typer.Exit(code=1)


@flash_app.command("history")
def flash_history(
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List past flash sessions."""
    from aesir.db import open_history
    from aesir.flash.service import get_flash_records
    from aesir.types import FlashStatus

    status_filter: FlashStatus | None = None
    if status:
        try:
            status_filter = FlashStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    factory = open_history(get_settings().db_url)

    with factory() as session:
        records = get_flash_records(session, status=status_filter, limit=limit)

        if json_output:
            _print_json([record.to_dict() for record in records])
            return
        if not records:
            console.print("[yellow]No flash records found[/yellow]")
            return

        table = Table(title="Flash history")
        table.add_column("ID", justify="right")
        table.add_column("Requested")
        table.add_column("Status")
        table.add_column("Backend")
        table.add_column("Device")
        table.add_column("Partitions")
        table.add_column("Error")
        for record in records:
            status_style = "green" if record.is_succeeded() else "red"
            table.add_row(
                str(record.id),
                record.requested_at.strftime("%Y-%m-%d %H:%M:%S"),
                f"[{status_style}]{record.status}[/{status_style}]",
                record.backend or "-",
                record.device_id or "-",
                record.partitions_flashed or "-",
                record.error_code or "",
            )
        console.print(table)


if __name__ == "__main__":
    app()
