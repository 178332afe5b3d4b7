import shlex
from unittest.mock import MagicMock

import pytest

from arch_provisioner.config.models import GIB, DiskSpec, Settings
from arch_provisioner.executors.disk import DiskManager
from arch_provisioner.utils.exceptions import ShellCommandError
from arch_provisioner.utils.logger import RichAppLogger

# ======= Execute with: pytest tests/ ========


class FakeExecutor:
    """
    Stands in for Executor. Records every command and keeps a tiny model of the
    mount table and active swap so mount/umount/swapon/swapoff behave consistently.
    """

    def __init__(self, logger, dryrun=False):
        self.logger = logger
        self.dryrun = dryrun
        self.commands = []      # everything sent through run()
        self.queries = []       # everything sent through execute_command()
        self.mounted = []
        self.swaps = set()
        self.fail_when = []     # predicates over the command list
        self.responses = {}     # command prefix -> (exit_code, stdout)

    def respond(self, prefix, stdout, exit_code=0):
        self.responses[tuple(prefix)] = (exit_code, stdout)

    def _response(self, command):
        best = None
        for prefix, response in self.responses.items():
            if tuple(command[:len(prefix)]) == prefix and (best is None or len(prefix) > len(best[0])):
                best = (prefix, response)
        return best[1] if best else None

    def _fails(self, command):
        return any(predicate(command) for predicate in self.fail_when)

    def execute_command(self, command, capture_output=True, timeout=None, check=True):
        command = shlex.split(command) if isinstance(command, str) else list(command)
        self.queries.append(command)

        if command[0] == "mountpoint":
            return (0 if command[-1] in self.mounted else 32), "", ""
        if command[:2] == ["swapon", "--show=NAME"]:
            return 0, "\n".join(sorted(self.swaps)), ""

        response = self._response(command)
        if response is not None:
            return response[0], response[1], ""
        return 0, "", ""

    def run(self, description, command, dryrun=None, capture_output=True, timeout=None, check=True):
        command = shlex.split(command) if isinstance(command, str) else list(command)
        if self.dryrun if dryrun is None else dryrun:
            return 0, "DRY_RUN_STDOUT", "DRY_RUN_STDERR"
        self.commands.append(command)

        if self._fails(command):
            if check:
                raise ShellCommandError(command=shlex.join(command), exit_code=1, stderr="simulated failure")
            return 1, "", "simulated failure"

        name = command[0]
        if name == "mount":
            self.mounted.append(command[-1])
        elif name == "umount" and command[-1] in self.mounted:
            self.mounted.remove(command[-1])
        elif name == "swapon":
            self.swaps.add(command[-1])
        elif name == "swapoff":
            self.swaps.discard(command[-1])
        return 0, "", ""


@pytest.fixture
def mock_rich_logger():
    """Provides a fully-mocked RichAppLogger instance for dependency injection."""
    mock_logger = MagicMock(spec=RichAppLogger)

    # Configure the mock to return a context manager for execution_step
    mock_context_manager = MagicMock()
    mock_context_manager.__enter__.return_value = None
    mock_context_manager.__exit__.return_value = None
    mock_logger.execution_step.return_value = mock_context_manager

    return mock_logger


@pytest.fixture
def fake_executor(mock_rich_logger):
    return FakeExecutor(mock_rich_logger)


@pytest.fixture
def disk_manager(fake_executor):
    return DiskManager(fake_executor)


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every location into a temporary directory."""
    return Settings(
        target_root=str(tmp_path / "mnt"),
        state_directory=str(tmp_path / "state"),
        scratch_mount=str(tmp_path / "btrfs-mount"),
        log_directory=str(tmp_path / "logs"),
        reread_delay=0.01,
    )


@pytest.fixture
def disk_500gb():
    return DiskSpec(path="/dev/sda", size_bytes=500 * 10**9, model="Samsung SSD 870")


@pytest.fixture
def disk_30gb():
    return DiskSpec(path="/dev/sda", size_bytes=30 * 10**9, model="USB Stick")


@pytest.fixture
def nvme_disk():
    return DiskSpec(path="/dev/nvme0n1", size_bytes=256 * GIB, model="WD Black SN770")
