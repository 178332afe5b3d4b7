# arch_provisioner/utils/exceptions.py

from typing import Optional

# --- 1. Shell Command Errors ---


class ShellCommandError(Exception):
    """Base class for errors related to shell command execution."""

    def __init__(self, command: str, exit_code: int = -1, stdout: str = "", stderr: str = "", message: str = "Command execution failed."):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"{message} (Command: '{command}', Exit Code: {exit_code})")


class CommandNotFoundError(ShellCommandError):
    """Raised when the executable specified in the command cannot be found."""

    def __init__(self, command: str, stdout: str = "", stderr: str = ""):
        super().__init__(command, exit_code=127, stdout=stdout, stderr=stderr, message="Command not found.")


class CommandTimeoutError(ShellCommandError):
    """Raised when the command exceeds the execution timeout."""

    def __init__(self, command: str, timeout: float, stdout: str = "", stderr: str = ""):
        self.timeout = timeout
        super().__init__(command, exit_code=124, stdout=stdout, stderr=stderr, message=f"Command timed out after {timeout} seconds.")


class InvalidCommandError(ShellCommandError):
    """Raised when the command string/list is invalid, empty, or improperly formatted."""

    def __init__(self, command: str, message: str):
        super().__init__(command, exit_code=-2, message=message)


class PermissionDeniedError(ShellCommandError):
    """Raised when command execution fails due to permissions."""

    def __init__(self, command: str, stdout: str = "", stderr: str = ""):
        super().__init__(command, exit_code=126, stdout=stdout, stderr=stderr, message="Permission denied.")


# --- 2. Provisioning Errors ---


class ProvisionError(Exception):
    """
    Base class for every failure raised by the provisioning core.
    The exit_code is what the CLI hands back to the shell.
    """
    exit_code = 1


class InputValidationError(ProvisionError):
    """Bad device name, disk too small, scheme/filesystem mismatch, malformed value."""
    exit_code = 2


class DestructiveGuardError(ProvisionError):
    """Wrong disk or confirmation mismatch. Never retried automatically."""
    exit_code = 3


class ExecutionError(ProvisionError):
    """
    A command that changes the disk failed. Fatal for the whole plan.

    Carries the step that failed, the exact command line and a snapshot of
    the device state so the failure can be diagnosed from the log alone.
    """
    exit_code = 4

    def __init__(self, step: str, command: Optional[str] = None, disk_state: Optional[str] = None, cause: Optional[BaseException] = None):
        self.step = step
        self.command = command
        self.disk_state = disk_state
        self.cause = cause
        message = f"Step '{step}' failed"
        if command:
            message += f" (Command: '{command}')"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class PartitioningError(ExecutionError):
    """Raised when a table or partition creation step fails."""


class FormattingError(ExecutionError):
    """Raised when a filesystem or subvolume cannot be created."""


class MountError(ExecutionError):
    """Raised when the target hierarchy cannot be mounted."""


class StateError(ProvisionError):
    """Persisted configuration or progress marker cannot be used as asked."""
    exit_code = 6


class ProgressRegressionError(StateError):
    """Raised when a phase tries to move the progress marker backward."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Progress is already at '{current}', refusing to go back to '{requested}'.")


class ImmutableKeyError(StateError):
    """Raised when a downstream phase tries to rewrite a resolved partition key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Key '{key}' is owned by the partitioning phase and cannot be changed.")
