import pytest
import subprocess
from unittest.mock import MagicMock, patch

# ======= Execute with: pytest tests/test_executor.py ========

# Import the Executor class and custom exceptions
from arch_provisioner.utils.executor import Executor
from arch_provisioner.utils.exceptions import (
    ShellCommandError, CommandTimeoutError, CommandNotFoundError,
    PermissionDeniedError, InvalidCommandError
)
from arch_provisioner.utils.logger import RichAppLogger

# --- Test Helper Classes/Mocks ---

class MockCompletedProcess:
    """A mock object to simulate the return value of subprocess.run."""
    def __init__(self, returncode=0, stdout="", stderr=""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        # subprocess.run returns an args attribute
        self.args = []

# --- Fixtures ---

@pytest.fixture
def executor(mock_rich_logger):
    """Provides an Executor instance with the mocked logger injected."""
    return Executor(logger_instance=mock_rich_logger, default_timeout=5.0)

# ----------------------------------------------------------------------
# --- Tests for Initialization and Setup ---
# ----------------------------------------------------------------------

def test_executor_initialization(mock_rich_logger):
    """Tests if the Executor initializes correctly and stores the logger."""
    exec_instance = Executor(logger_instance=mock_rich_logger, default_timeout=10.0, dryrun=True)
    assert exec_instance._default_timeout == 10.0
    assert exec_instance.dryrun is True
    assert exec_instance.logger == mock_rich_logger
    mock_rich_logger.debug.assert_called()

def test_executor_initialization_invalid_timeout(mock_rich_logger):
    """Tests if initialization raises ValueError for invalid timeout."""
    with pytest.raises(ValueError, match="positive number"):
        Executor(logger_instance=mock_rich_logger, default_timeout=-1)

# ----------------------------------------------------------------------
# --- Tests for _prepare_command ---
# ----------------------------------------------------------------------

def test_prepare_command_string(executor):
    """Strings are split shell-style, quoted arguments stay together."""
    prepared = executor._prepare_command("parted -s /dev/sda mkpart 'EFI System' fat32 1MiB 1025MiB")
    assert prepared == ["parted", "-s", "/dev/sda", "mkpart", "EFI System", "fat32", "1MiB", "1025MiB"]

def test_prepare_command_list_passthrough(executor):
    cmd = ["wipefs", "-af", "/dev/sda"]
    assert executor._prepare_command(cmd) == cmd

def test_prepare_command_invalid_input(executor):
    """Tests that InvalidCommandError is raised for invalid input."""
    with pytest.raises(InvalidCommandError):
        executor._prepare_command("")
    with pytest.raises(InvalidCommandError):
        executor._prepare_command(None)
    with pytest.raises(InvalidCommandError):
        executor._prepare_command(["ls", 123])
    with pytest.raises(InvalidCommandError):
        executor._prepare_command("echo 'unterminated")

# ----------------------------------------------------------------------
# --- Tests for execute_command (Low-level) ---
# ----------------------------------------------------------------------

@patch('subprocess.run')
def test_execute_command_success(mock_run, executor):
    """Tests successful command execution (exit code 0)."""
    mock_run.return_value = MockCompletedProcess(
        returncode=0,
        stdout="disk found",
        stderr=""
    )

    cmd = ["lsblk", "-J"]
    exit_code, stdout, stderr = executor.execute_command(cmd, check=True)

    mock_run.assert_called_once()
    assert mock_run.call_args[1]["timeout"] == 5.0
    assert exit_code == 0
    assert stdout == "disk found"
    assert stderr == ""

@patch('subprocess.run')
def test_execute_command_error_no_check(mock_run, executor):
    """Tests command failure when 'check' is False (no exception raised)."""
    mock_run.return_value = MockCompletedProcess(
        returncode=1,
        stdout="",
        stderr="Minor error"
    )

    exit_code, stdout, stderr = executor.execute_command(["mountpoint", "-q", "/mnt"], check=False)

    assert exit_code == 1
    assert stderr == "Minor error"
    executor.logger.error.assert_not_called()

@patch('subprocess.run')
def test_execute_command_error_shellcommanderror(mock_run, executor):
    """A non-zero exit with check=True raises ShellCommandError carrying the exit code."""
    mock_run.return_value = MockCompletedProcess(
        returncode=5,
        stdout="Some output",
        stderr="Unknown failure"
    )

    with pytest.raises(ShellCommandError) as excinfo:
        executor.execute_command(["sgdisk", "-Z", "/dev/sda"], check=True)

    assert excinfo.value.exit_code == 5
    assert excinfo.value.command == "sgdisk -Z /dev/sda"
    executor.logger.error.assert_called_once()

@patch('subprocess.run')
def test_execute_command_command_not_found_error(mock_run, executor):
    """Exit code 127 is reported as CommandNotFoundError."""
    mock_run.return_value = MockCompletedProcess(
        returncode=127,
        stdout="",
        stderr="bash: my_command: command not found"
    )

    with pytest.raises(CommandNotFoundError) as excinfo:
        executor.execute_command("my_command --arg", check=True)

    assert excinfo.value.exit_code == 127
    executor.logger.error.assert_called_once()

@patch('subprocess.run')
def test_execute_command_permission_denied(mock_run, executor):
    mock_run.return_value = MockCompletedProcess(returncode=126, stderr="Permission denied")

    with pytest.raises(PermissionDeniedError) as excinfo:
        executor.execute_command(["wipefs", "-af", "/dev/sda"])

    assert excinfo.value.exit_code == 126

@patch('subprocess.run', side_effect=FileNotFoundError())
def test_execute_command_missing_binary(mock_run, executor):
    with pytest.raises(CommandNotFoundError):
        executor.execute_command(["sgdisk", "-Z", "/dev/sda"])

@patch('subprocess.run', side_effect=subprocess.TimeoutExpired(cmd=["test"], timeout=5.0, output=b'partial', stderr=b''))
def test_execute_command_timeout_error(mock_run, executor):
    """Tests CommandTimeoutError when subprocess.TimeoutExpired is raised."""
    with pytest.raises(CommandTimeoutError) as excinfo:
        executor.execute_command(["mkfs.btrfs", "-f", "/dev/sda3"], timeout=5.0)

    assert "timed out" in str(excinfo.value)
    assert excinfo.value.exit_code == 124
    assert excinfo.value.stdout == "partial"
    executor.logger.warning.assert_called_once()

# ----------------------------------------------------------------------
# --- Tests for run() (High-level) ---
# ----------------------------------------------------------------------

@patch.object(Executor, 'execute_command')
def test_run_success(mock_execute_command, executor, mock_rich_logger):
    """Tests the high-level run() method on successful command execution."""
    mock_execute_command.return_value = (0, "Success!", "")

    description = "Test success"

    exit_code, stdout, stderr = executor.run(description, "partprobe /dev/sda")

    assert exit_code == 0
    assert stdout == "Success!"

    mock_rich_logger.execution_step.assert_called_once_with(description)
    mock_execute_command.assert_called_once()
    assert mock_execute_command.call_args[1]['command'] == ["partprobe", "/dev/sda"]
    executor.logger.debug.assert_called()

@patch.object(Executor, 'execute_command')
def test_run_logs_full_command_line_before_and_after(mock_execute_command, executor, mock_rich_logger):
    mock_execute_command.return_value = (0, "", "")

    executor.run("Creating label", ["parted", "-s", "/dev/sda", "mklabel", "gpt"])

    logged = [c.args[0] for c in mock_rich_logger.info.call_args_list]
    assert "Executing: parted -s /dev/sda mklabel gpt" in logged
    assert any(line.startswith("Finished: parted -s /dev/sda mklabel gpt") for line in logged)

@patch.object(Executor, 'execute_command')
def test_run_failure(mock_execute_command, executor, mock_rich_logger):
    """Tests the high-level run() method on command execution failure."""
    mock_execute_command.side_effect = ShellCommandError(
        command="test_cmd", exit_code=1, stderr="Permission denied."
    )

    description = "Test failure"

    with pytest.raises(ShellCommandError):
        executor.run(description, "test_cmd")

    mock_rich_logger.execution_step.assert_called_once_with(description)
    executor.logger.error.assert_called_once()
    assert "Failed: test_cmd" in executor.logger.error.call_args[0][0]

@patch.object(Executor, 'execute_command')
def test_run_dryrun(mock_execute_command, executor, mock_rich_logger):
    """Tests the per-call dry-run override."""
    exit_code, stdout, stderr = executor.run("Test dryrun", "wipefs -af /dev/sda", dryrun=True)

    assert exit_code == 0
    assert stdout == "DRY_RUN_STDOUT"

    mock_execute_command.assert_not_called()
    mock_rich_logger.info.assert_called()
    mock_rich_logger.execution_step.assert_not_called()

@patch.object(Executor, 'execute_command')
def test_run_executor_wide_dryrun(mock_execute_command, mock_rich_logger):
    executor = Executor(logger_instance=mock_rich_logger, dryrun=True)

    executor.run("Wipe", ["wipefs", "-af", "/dev/sda"])
    mock_execute_command.assert_not_called()

    # An explicit False still executes
    mock_execute_command.return_value = (0, "", "")
    executor.run("Probe", ["lsblk"], dryrun=False)
    mock_execute_command.assert_called_once()
