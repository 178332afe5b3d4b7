# arch_provisioner/utils/executor.py

import subprocess
import shlex
from typing import Tuple, Optional, Union, List

from arch_provisioner.utils.logger import RichAppLogger
from arch_provisioner.utils.exceptions import (
    ShellCommandError,
    CommandNotFoundError,
    CommandTimeoutError,
    InvalidCommandError,
    PermissionDeniedError,
)


class Executor:
    """
    Runs the shell commands of a provisioning run, using Dependency Injection for logging
    and centralized exception handling via the RichAppLogger.

    Every command that goes through run() is logged verbatim before and after execution,
    so a failed destructive step can be reconstructed from the log file alone.
    """

    def __init__(self,
                 logger_instance: RichAppLogger,
                 default_timeout: Optional[float] = 30.0,
                 dryrun: bool = False):
        """
        Initializes the Executor.

        Args:
            logger_instance (RichAppLogger): Logger used for TUI and file output.
            default_timeout (Optional[float]): Seconds before a command is killed. None disables the limit.
            dryrun (bool): When True, run() logs commands instead of executing them.
        """
        self.logger = logger_instance

        if default_timeout is not None and default_timeout <= 0:
            self.logger.error("Default timeout must be a positive number or None.")
            raise ValueError("Default timeout must be a positive number or None.")

        self._default_timeout = default_timeout
        self.dryrun = dryrun
        self.logger.debug(f"Executor initialized with default_timeout: {self._default_timeout}, dryrun: {self.dryrun}")

    def _prepare_command(self, command: Union[str, list]) -> List[str]:
        """
        Prepares the command for execution by shlex.split if it's a string.
        """
        if not command:
            self.logger.error("Attempted to prepare an empty command.")
            raise InvalidCommandError(str(command), "Command cannot be empty.")

        if isinstance(command, str):
            try:
                return shlex.split(command)
            except ValueError as e:
                self.logger.error(f"Failed to parse command string '{command}': {e}")
                raise InvalidCommandError(command, f"Failed to parse command string: {e}")
        elif isinstance(command, list):
            if not all(isinstance(arg, str) for arg in command):
                raise InvalidCommandError(str(command), "All elements in command list must be strings.")
            return command

        self.logger.error(f"Invalid command type: {type(command)}. Expected str or list.")
        raise InvalidCommandError(str(command), "Command must be a string or a list of strings.")

    def execute_command(self,
                        command: Union[str, list],
                        capture_output: bool = True,
                        timeout: Optional[float] = None,
                        check: bool = True
                        ) -> Tuple[int, str, str]:
        """
        Executes a command using subprocess.run. This is the low-level execution method.
        Read-only probes call this directly; anything that changes the disk goes through run().
        """
        actual_timeout = timeout if timeout is not None else self._default_timeout
        cmd_string_for_log = shlex.join(command) if isinstance(command, list) else command

        self.logger.debug(f"Attempting low-level execution: '{cmd_string_for_log}' "
                          f"timeout={actual_timeout}s, capture_output={capture_output}, check={check}")

        command_to_execute = self._prepare_command(command)

        try:
            process = subprocess.run(
                command_to_execute,
                capture_output=capture_output,
                text=True,
                timeout=actual_timeout,
                check=False
            )
        except FileNotFoundError:
            self.logger.error(f"Command '{cmd_string_for_log}' not found. Ensure it's in the system's PATH.")
            raise CommandNotFoundError(command=cmd_string_for_log, stdout="", stderr="Command not found. Check PATH.")
        except PermissionError:
            self.logger.error(f"Permission denied while starting '{cmd_string_for_log}'.")
            raise PermissionDeniedError(command=cmd_string_for_log)
        except subprocess.TimeoutExpired as e:
            self.logger.warning(f"Command '{cmd_string_for_log}' timed out after {actual_timeout} seconds.")
            stdout = e.stdout.decode() if isinstance(e.stdout, bytes) else (e.stdout or "")
            stderr = e.stderr.decode() if isinstance(e.stderr, bytes) else (e.stderr or "")
            raise CommandTimeoutError(command=cmd_string_for_log, timeout=actual_timeout, stdout=stdout, stderr=stderr)
        except (TypeError, ValueError) as e:
            self.logger.error(f"Argument error during low-level command execution '{cmd_string_for_log}': {e}")
            raise InvalidCommandError(cmd_string_for_log, f"Argument error in command execution: {e}")

        stdout = process.stdout if capture_output and process.stdout else ""
        stderr = process.stderr if capture_output and process.stderr else ""
        exit_code = process.returncode

        if check and exit_code != 0:
            self.logger.error(f"Command: '{cmd_string_for_log}', Exit Code: {exit_code}, Stderr: {stderr.strip()}")

            lowered = stderr.lower()
            if "command not found" in lowered or exit_code == 127:
                raise CommandNotFoundError(command=cmd_string_for_log, stdout=stdout, stderr=stderr)
            elif "permission denied" in lowered or exit_code == 126:
                raise PermissionDeniedError(command=cmd_string_for_log, stdout=stdout, stderr=stderr)
            raise ShellCommandError(
                command=cmd_string_for_log,
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                message=f"Command failed with exit code {exit_code}"
            )

        self.logger.debug(f"Low-level execution of '{cmd_string_for_log}' completed with exit code {exit_code}")
        return exit_code, stdout, stderr

    def run(self,
            description: str,
            command: Union[str, list],
            dryrun: Optional[bool] = None,
            capture_output: bool = True,
            timeout: Optional[float] = None,
            check: bool = True
            ) -> Tuple[int, str, str]:
        """
        Executes a command using the RichAppLogger's execution_step context manager
        for enhanced TUI feedback, logging, and centralized exception handling.

        Args:
            description (str): Human readable description shown in the TUI.
            command (Union[str, list]): The command to run.
            dryrun (Optional[bool]): Overrides the executor-wide dry-run flag for this call.

        Returns:
            Tuple[int, str, str]: (exit_code, stdout, stderr).
        """
        prepared_command_list = self._prepare_command(command)
        command_line = shlex.join(prepared_command_list)
        skip = self.dryrun if dryrun is None else dryrun

        if skip:
            self.logger.info(f"DRY RUN: Execution skipped for: '{description}'")
            self.logger.info(f"DRY RUN COMMAND: {command_line}")
            return 0, "DRY_RUN_STDOUT", "DRY_RUN_STDERR"

        self.logger.info(f"Executing: {command_line}")

        with self.logger.execution_step(description):
            try:
                exit_code, stdout, stderr = self.execute_command(
                    command=prepared_command_list,
                    capture_output=capture_output,
                    timeout=timeout,
                    check=check
                )
            except ShellCommandError as e:
                self.logger.error(f"Failed: {command_line} (exit code {e.exit_code})")
                raise

            self.logger.info(f"Finished: {command_line} (exit code {exit_code})")
            if stdout:
                self.logger.debug(f"  Stdout:\n{stdout.strip()}")
            if stderr:
                self.logger.debug(f"  Stderr:\n{stderr.strip()}")

            return exit_code, stdout, stderr
