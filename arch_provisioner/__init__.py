# arch_provisioner/__init__.py

# Utility imports
from .utils.exceptions import ShellCommandError
from .utils.exceptions import CommandNotFoundError
from .utils.exceptions import CommandTimeoutError
from .utils.exceptions import ProvisionError
from .utils.exceptions import InputValidationError
from .utils.exceptions import DestructiveGuardError
from .utils.exceptions import ExecutionError
from .utils.exceptions import StateError

# Import *
__all__ = [
    "ShellCommandError",
    "CommandNotFoundError",
    "CommandTimeoutError",
    "ProvisionError",
    "InputValidationError",
    "DestructiveGuardError",
    "ExecutionError",
    "StateError",
]

# Versioning
__version__ = "0.1.0"
