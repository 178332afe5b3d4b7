import logging
import os
from contextlib import contextmanager

from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

from arch_provisioner.utils.exceptions import ShellCommandError, ProvisionError

SECTION_LEVEL_NUM = 25
EXECUTE_LEVEL_NUM = 26
logging.addLevelName(SECTION_LEVEL_NUM, 'SECTION')
logging.addLevelName(EXECUTE_LEVEL_NUM, 'EXECUTE')

FILE_LOG_FORMAT = '%(asctime)s - %(levelname_fixed)s - %(name_fixed)s - %(filename_fixed)s:%(lineno_fixed)s - %(message)s'


class AppLogger(logging.Logger):
    """logging.Logger with SECTION (phase headers) and EXECUTE (command steps) levels."""

    def section(self, msg, *args, **kwargs):
        if self.isEnabledFor(SECTION_LEVEL_NUM):
            self._log(SECTION_LEVEL_NUM, msg, args, **kwargs)

    def execute(self, msg, *args, **kwargs):
        if self.isEnabledFor(EXECUTE_LEVEL_NUM):
            self._log(EXECUTE_LEVEL_NUM, msg, args, **kwargs)


# Must be set before the first getLogger() of the application logger
logging.setLoggerClass(AppLogger)


class FileFormatter(logging.Formatter):
    """Fixed-width columns so provisioning logs line up when read after a failure."""

    def __init__(self):
        super().__init__(FILE_LOG_FORMAT)

    def format(self, record):
        record.levelname_fixed = f"{record.levelname:<9}"
        record.name_fixed = f"{record.name:<15}"
        record.filename_fixed = f"{record.filename:<20}"
        record.lineno_fixed = f"{record.lineno:<5}"
        return super().format(record)


class RichAppLogger:
    """
    Console presentation for the operator on top of the AppLogger.

    Every message also ends up in the log file, so a failed run can be diagnosed
    from the file alone.
    """

    def __init__(self, console: Console, logger: AppLogger):
        self.console = console
        self.logger: AppLogger = logger

    def section(self, message: str, *args, **kwargs):
        """Prints a phase header and records it at the SECTION level."""
        self.console.print(Text(f"SECTION: {message}", style="bold yellow"))
        self.logger.section(f"SECTION: {message}", *args, **kwargs)

    def notice(self, message: str):
        """Prints an operator-facing notice that must not be missed and records it as a warning."""
        self.console.print(f"[bold yellow]! NOTICE[/bold yellow] {message}")
        self.logger.warning(f"NOTICE: {message}")

    @contextmanager
    def execution_step(self, message: str):
        """
        Shows a spinner with [RUNNING] while the block runs and replaces it with
        [COMPLETED], or [CRITICAL]/[FAILED] when the block raises.
        """
        with self.console.status(f"[bold green]...[/] [RUNNING] {message}", spinner="dots") as status:
            # File only, ExecuteFilter keeps it off the console
            self.logger.execute(f"[RUNNING] {message}")

            try:
                yield status

                self.console.print(f"[green]✔ [COMPLETED][/green] {message}")
                self.logger.execute(f"[COMPLETED] {message}")

            except Exception as e:
                # Command and provisioning failures carry their own diagnostics
                is_critical = isinstance(e, (ShellCommandError, ProvisionError))
                status_tag = "[CRITICAL]" if is_critical else "[FAILED]"

                self.console.print(f"[bold red]✘ {status_tag}[/bold red] {message}")
                self.logger.execute(f"{status_tag} {message}")
                self.logger.exception(f"Exception during execution step: {message}")

                if not is_critical:
                    self.console.print("\n[bold red]Traceback (most recent call last):[/bold red]")
                    self.console.print_exception(show_locals=True)

                raise

    def info(self, message, *args, **kwargs):
        self.logger.info(message, *args, **kwargs)

    def warning(self, message, *args, **kwargs):
        self.logger.warning(message, *args, **kwargs)

    def error(self, message, *args, **kwargs):
        self.logger.error(message, *args, **kwargs)

    def debug(self, message, *args, **kwargs):
        self.logger.debug(message, *args, **kwargs)

    def critical(self, message, *args, **kwargs):
        self.logger.critical(message, *args, **kwargs)

    def exception(self, message, *args, **kwargs):
        """Logs an ERROR to file with traceback and prints a rich traceback to the console."""
        self.logger.exception(message, *args, **kwargs)
        self.console.print(f"[bold red]FATAL ERROR: {message}[/bold red]")
        self.console.print_exception(show_locals=True)


class ExecuteFilter(logging.Filter):
    """Keeps EXECUTE records off the console; execution_step prints its own status lines."""

    def filter(self, record):
        return record.levelno != EXECUTE_LEVEL_NUM


def initialize_app_logger(
    app_name: str,
    log_directory: str = "logs",
    log_file_name: str = "provision.log",
    file_log_level: int = logging.DEBUG,
    console_log_level: int = logging.INFO,
) -> RichAppLogger:
    """
    Sets up the application logger with a detailed file log and a rich console.
    Calling it again replaces the handlers instead of adding a second set.
    """
    logger: AppLogger = logging.getLogger(app_name)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        if isinstance(handler, (logging.FileHandler, RichHandler)):
            handler.close()

    os.makedirs(log_directory, exist_ok=True)
    file_handler = logging.FileHandler(os.path.join(log_directory, log_file_name), encoding='utf-8')
    file_handler.setLevel(file_log_level)
    file_handler.setFormatter(FileFormatter())
    logger.addHandler(file_handler)

    # stderr=True looks up sys.stderr on every write, so a replaced stream is followed
    console = Console(stderr=True, force_terminal=True, soft_wrap=True)

    stream_handler = RichHandler(
        console=console,
        show_time=False,
        show_level=True,
        show_path=False,
        keywords=[],
        level=console_log_level
    )
    stream_handler.addFilter(ExecuteFilter())
    logger.addHandler(stream_handler)

    return RichAppLogger(console, logger)
