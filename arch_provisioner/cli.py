# arch_provisioner/cli.py
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.prompt import Confirm, FloatPrompt, Prompt
from rich.table import Table

from arch_provisioner import core, planner
from arch_provisioner.config.models import (
    GIB,
    AppConfig,
    BootContext,
    BootMode,
    Bootloader,
    DiskSpec,
    Filesystem,
    Milestone,
    PartitionScheme,
    ProvisionRequest,
    Settings,
    TableType,
)
from arch_provisioner.pipeline import PhasePipeline, ProvisioningSession, ProvisionState
from arch_provisioner.probe import SystemProber
from arch_provisioner.safety import CONFIRMATION_PHRASE
from arch_provisioner.state import ConfigStore
from arch_provisioner.utils.exceptions import InputValidationError, ProvisionError
from arch_provisioner.utils.executor import Executor
from arch_provisioner.utils.logger import RichAppLogger, initialize_app_logger

app = typer.Typer(help="Partition, format and mount a disk for an Arch Linux installation.", no_args_is_help=True)


# --- Operators ---

class RichOperator:
    """Asks the person at the console."""

    def __init__(self, console: Console, assume_yes: bool = False):
        self.console = console
        self.assume_yes = assume_yes

    def confirm(self, message: str) -> bool:
        if self.assume_yes:
            return True
        return Confirm.ask(f"[yellow]{message}[/]", console=self.console, default=False)

    def ask_phrase(self, prompt: str) -> str:
        return Prompt.ask(f"[bold red]{prompt}[/] ([bold]{CONFIRMATION_PHRASE}[/])", console=self.console)


class ScriptedOperator:
    """Answers from command line flags. Without --yes, adjusted layouts are refused."""

    def __init__(self, phrase: Optional[str], assume_yes: bool = False):
        self.phrase = phrase
        self.assume_yes = assume_yes

    def confirm(self, message: str) -> bool:
        return self.assume_yes

    def ask_phrase(self, prompt: str) -> str:
        return self.phrase or ""


# --- Helpers ---

def _load_config(config: Optional[Path]) -> AppConfig:
    if config is None:
        return AppConfig()
    try:
        return AppConfig.load_config_from_file(config)
    except (ValueError, ValidationError) as e:
        typer.echo(typer.style(f"Configuration error: {e}", fg=typer.colors.RED), err=True)
        raise typer.Exit(code=InputValidationError.exit_code)


def _logger(settings: Settings) -> RichAppLogger:
    if core.app_logger is None:
        core.app_logger = initialize_app_logger(
            app_name="arch_provisioner",
            log_directory=settings.log_directory,
            log_file_name=settings.log_file_name,
        )
    return core.app_logger


def _fail(logger: RichAppLogger, error: ProvisionError):
    logger.error(str(error))
    if getattr(error, "disk_state", None):
        logger.error(f"Device state at failure:\n{error.disk_state}")
    raise typer.Exit(code=error.exit_code)


def _select_device(console: Console, prober: SystemProber) -> str:
    disks = prober.disks()
    if not disks:
        raise InputValidationError("No disks found.")

    table = Table(title="Available Disks")
    table.add_column("Index", justify="right", style="cyan", no_wrap=True)
    table.add_column("Device Name", style="green")
    table.add_column("Size", style="green")
    table.add_column("Type", style="green")
    table.add_column("Model", style="green")
    for i, disk in enumerate(disks):
        table.add_row(str(i + 1), disk.path, f"{disk.size_gib} GiB", "HDD" if disk.rotational else "SSD", disk.model or "[italic]Unknown Model[/]")
    console.print(table)

    while True:
        selection = Prompt.ask("[yellow]Enter the index of the drive to select[/]", default="1", console=console)
        try:
            index = int(selection) - 1
        except ValueError:
            console.print("[red]Invalid input. Please enter a number.[/]")
            continue
        if 0 <= index < len(disks):
            return disks[index].path
        console.print("[red]Invalid selection. Please enter a valid index.[/]")


def _complete_request(console: Console, session: ProvisioningSession, request: ProvisionRequest) -> ProvisionRequest:
    """Asks for every choice the flags and config file left open. The disk is vetted before anything else is asked."""
    prober = session.prober
    updates = {}

    device = request.device or _select_device(console, prober)
    session.guard.validate(device).unwrap()
    if device != request.device:
        updates["device"] = device

    mode = prober.boot_mode()
    if request.table is None:
        if mode is BootMode.BIOS:
            updates["table"] = TableType(Prompt.ask("[yellow]Partition table[/]", choices=["GPT", "MBR"], default="GPT", console=console))
        else:
            updates["table"] = TableType.GPT
    if request.swap_gib is None:
        suggestion = planner.suggest_swap_gib(prober.ram_gib())
        updates["swap_gib"] = FloatPrompt.ask(f"[yellow]Swap size in GiB[/] (suggested: {suggestion})", default=float(suggestion), console=console)

    filesystem = request.filesystem
    if filesystem is None:
        filesystem = Filesystem(Prompt.ask("[yellow]Root filesystem[/]", choices=[f.value for f in Filesystem], default=Filesystem.EXT4.value, console=console))
        updates["filesystem"] = filesystem
    if request.scheme is None:
        choices = [PartitionScheme.SINGLE.value, PartitionScheme.SEPARATE_HOME.value]
        if filesystem is Filesystem.BTRFS:
            choices.append(PartitionScheme.BTRFS_SUBVOLUMES.value)
        updates["scheme"] = PartitionScheme(Prompt.ask("[yellow]Partition scheme[/]", choices=choices, default=choices[-1], console=console))
    if request.bootloader is None:
        choices = [b.value for b in Bootloader if b.supports(mode)]
        updates["bootloader"] = Bootloader(Prompt.ask("[yellow]Bootloader[/]", choices=choices, default=Bootloader.GRUB.value, console=console))

    return request.model_copy(update=updates)


# --- Commands ---

@app.command()
def provision(
    device: Optional[str] = typer.Option(None, "--device", "-d", help="Target disk, e.g. /dev/sda or nvme0n1."),
    filesystem: Optional[Filesystem] = typer.Option(None, "--filesystem", "-f", help="Root filesystem."),
    scheme: Optional[PartitionScheme] = typer.Option(None, "--scheme", "-s", help="Partition scheme."),
    table: Optional[TableType] = typer.Option(None, "--table", help="Partition table (MBR only in BIOS mode)."),
    swap_gib: Optional[float] = typer.Option(None, "--swap-gib", help="Swap size in GiB."),
    root_gib: Optional[int] = typer.Option(None, "--root-gib", help="Root size in GiB for the separate home scheme."),
    bootloader: Optional[Bootloader] = typer.Option(None, "--bootloader", help="Bootloader recorded for later phases."),
    compat_esp: Optional[bool] = typer.Option(None, "--compat-esp/--no-compat-esp", help="Add a compatibility ESP on BIOS+GPT."),
    config: Optional[Path] = typer.Option(None, "--config", "-c", exists=True, dir_okay=False, help="TOML file with [request] and [settings]."),
    confirm: Optional[str] = typer.Option(None, "--confirm", help=f"Confirmation phrase ({CONFIRMATION_PHRASE}) for non-interactive runs."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Accept adjusted layouts (small disk, large swap) without asking."),
    non_interactive: bool = typer.Option(False, "--non-interactive", help="Never prompt; missing choices use defaults."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log every command instead of running it."),
):
    """Partition, format and mount the target disk, then record the result."""
    app_config = _load_config(config)
    settings = app_config.settings
    logger = _logger(settings)

    flags = {
        "device": device, "filesystem": filesystem, "scheme": scheme, "table": table,
        "swap_gib": swap_gib, "root_gib": root_gib, "bootloader": bootloader,
        "compat_esp": compat_esp, "confirm": confirm,
    }
    try:
        request = ProvisionRequest.model_validate({**app_config.request.model_dump(), **{k: v for k, v in flags.items() if v is not None}})
    except ValidationError as e:
        _fail(logger, InputValidationError(f"Invalid request: {e}"))

    executor = Executor(logger_instance=logger, default_timeout=settings.command_timeout, dryrun=dry_run)
    if non_interactive:
        operator = ScriptedOperator(request.confirm, assume_yes=yes)
    else:
        operator = RichOperator(logger.console, assume_yes=yes)
    session = ProvisioningSession.create(executor, settings, operator)

    try:
        if not non_interactive:
            request = _complete_request(logger.console, session, request)
        state = ProvisionState(request=request, settings=settings)
        ran = PhasePipeline(session.store, logger, dryrun=dry_run).run([session.phase()], state)
    except ProvisionError as e:
        _fail(logger, e)
    except KeyboardInterrupt:
        logger.error("Interrupted by operator.")
        raise typer.Exit(code=130)

    if not ran:
        logger.warning("Partitions are already provisioned. Use 'reset' to start over.")
        return
    logger.info(f"Target mounted at {settings.target_root}: {', '.join(state.mounted)}")


@app.command()
def plan(
    size_gib: int = typer.Option(..., "--size-gib", help="Disk size in GiB."),
    ram_gib: int = typer.Option(..., "--ram-gib", help="Installed RAM in GiB."),
    boot_mode: BootMode = typer.Option(BootMode.UEFI, "--boot-mode"),
    table: TableType = typer.Option(TableType.GPT, "--table"),
    filesystem: Filesystem = typer.Option(Filesystem.EXT4, "--filesystem", "-f"),
    scheme: PartitionScheme = typer.Option(PartitionScheme.SINGLE, "--scheme", "-s"),
    swap_gib: Optional[float] = typer.Option(None, "--swap-gib"),
    root_gib: Optional[int] = typer.Option(None, "--root-gib"),
    compat_esp: bool = typer.Option(False, "--compat-esp"),
):
    """Show the layout that would be used for a disk of the given size. Touches nothing."""
    try:
        boot = BootContext(mode=boot_mode, table=table)
    except ValidationError as e:
        typer.echo(typer.style(f"Invalid boot configuration: {e.errors()[0]['msg']}", fg=typer.colors.RED), err=True)
        raise typer.Exit(code=InputValidationError.exit_code)

    disk = DiskSpec(path="/dev/planned", size_bytes=size_gib * GIB, model="hypothetical")
    try:
        layout = planner.plan(disk, boot, ram_gib, scheme, filesystem, swap_gib=swap_gib, root_gib=root_gib, compat_esp=compat_esp)
    except InputValidationError as e:
        typer.echo(typer.style(str(e), fg=typer.colors.RED), err=True)
        raise typer.Exit(code=e.exit_code)
    typer.echo(layout.display_summary())


@app.command()
def status(config: Optional[Path] = typer.Option(None, "--config", "-c", exists=True, dir_okay=False)):
    """Show the persisted configuration and progress."""
    settings = _load_config(config).settings
    logger = _logger(settings)
    store = ConfigStore(settings, logger)

    typer.echo(store.load().display_summary())
    current = store.progress.current()
    typer.echo(f"  Progress: {typer.style(current.value if current else 'none', fg=typer.colors.CYAN)}")

    history = Table(title="Progress History")
    history.add_column("Entry", style="green")
    for line in store.progress.history():
        history.add_row(line)
    logger.console.print(history)


@app.command()
def advance(
    milestone: Milestone = typer.Argument(..., help="Milestone the calling phase has completed."),
    config: Optional[Path] = typer.Option(None, "--config", "-c", exists=True, dir_okay=False),
):
    """Move the progress marker forward. Going backward is refused."""
    settings = _load_config(config).settings
    logger = _logger(settings)
    try:
        ConfigStore(settings, logger).progress.advance(milestone)
    except ProvisionError as e:
        _fail(logger, e)


@app.command("set")
def set_value(
    assignment: str = typer.Argument(..., help="KEY=value to record."),
    phase: Milestone = typer.Option(..., "--phase", help="Milestone of the phase writing the key."),
    config: Optional[Path] = typer.Option(None, "--config", "-c", exists=True, dir_okay=False),
):
    """Record a key for later phases. Partition keys cannot be changed here."""
    settings = _load_config(config).settings
    logger = _logger(settings)
    if "=" not in assignment:
        _fail(logger, InputValidationError(f"Expected KEY=value, got '{assignment}'."))
    key, value = assignment.split("=", 1)
    try:
        ConfigStore(settings, logger).set_value(key.strip(), value.strip(), phase)
    except ProvisionError as e:
        _fail(logger, e)


@app.command()
def reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    config: Optional[Path] = typer.Option(None, "--config", "-c", exists=True, dir_okay=False),
):
    """Forget the persisted configuration and progress for a fresh start."""
    settings = _load_config(config).settings
    logger = _logger(settings)
    if not yes and not Confirm.ask("[yellow]Remove all persisted install state?[/]", console=logger.console, default=False):
        raise typer.Exit(code=1)
    ConfigStore(settings, logger).reset()
