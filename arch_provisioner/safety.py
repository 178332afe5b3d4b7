# arch_provisioner/safety.py
"""
Gatekeeper between the operator's device choice and anything destructive.

A device is cleared only if it is a readable block device of sufficient size that
does not carry the live medium, the running root or a separately mounted /boot,
and is not in use. Clearance still has to be confirmed with the exact phrase
before the partitioner accepts it.
"""
import dataclasses
import os
import re
import stat
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Set

from arch_provisioner.config.models import DiskSpec
from arch_provisioner.executors.disk import DiskManager
from arch_provisioner.probe import SystemProber
from arch_provisioner.utils.exceptions import DestructiveGuardError, InputValidationError, ShellCommandError

CONFIRMATION_PHRASE = "DESTROY-ALL-DATA"
DISK_NAME_PATTERN = re.compile(r"^(sd[a-z]+|xvd[a-z]+|vd[a-z]+|hd[a-z]|nvme[0-9]+n[0-9]+|mmcblk[0-9]+)$")


class RejectionReason(Enum):
    INVALID_NAME = "Not a recognised whole-disk device name"
    NOT_BLOCK_DEVICE = "Not a block device"
    UNREADABLE = "The first sector of the device cannot be read"
    LIVE_MEDIUM = "Device carries the live boot medium"
    ROOT_DISK = "Device holds the running root filesystem"
    BOOT_DISK = "Device holds the mounted /boot"
    TOO_SMALL = "Device is smaller than the minimum size"
    IN_USE = "Device is mounted or backs an active swap area"


# Rejections caused by bad input rather than by pointing at the wrong disk
_VALIDATION_REASONS = {RejectionReason.INVALID_NAME, RejectionReason.NOT_BLOCK_DEVICE, RejectionReason.TOO_SMALL}


@dataclass(frozen=True)
class ClearedDevice:
    """A disk that passed every check. Only a confirmed clearance unlocks the partitioner."""
    disk: DiskSpec
    confirmed: bool = False

    @property
    def path(self) -> str:
        return self.disk.path


@dataclass
class SafetyResult:
    is_safe: bool
    clearance: Optional[ClearedDevice] = None
    reason: Optional[RejectionReason] = None
    details: str = ""

    @classmethod
    def ok(cls, clearance: ClearedDevice) -> "SafetyResult":
        return cls(is_safe=True, clearance=clearance)

    @classmethod
    def block(cls, reason: RejectionReason, details: str = "") -> "SafetyResult":
        return cls(is_safe=False, reason=reason, details=details)

    def __bool__(self) -> bool:
        return self.is_safe

    def format_error(self) -> str:
        if self.is_safe:
            return ""
        msg = f"SAFETY BLOCK: {self.reason.value}"
        if self.details:
            msg += f" ({self.details})"
        return msg

    def unwrap(self) -> ClearedDevice:
        """Returns the clearance or raises the error matching the rejection."""
        if self.is_safe:
            return self.clearance
        if self.reason in _VALIDATION_REASONS:
            raise InputValidationError(self.format_error())
        raise DestructiveGuardError(self.format_error())


def normalize_device(device: str) -> str:
    """'sda', ' /dev/sda ' -> 'sda'."""
    name = "".join(device.split())
    if name.startswith("/dev/"):
        name = name[len("/dev/"):]
    return name


def _is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def _read_first_sector(path: str) -> bool:
    try:
        with open(path, "rb") as f:
            return len(f.read(512)) == 512
    except OSError:
        return False


class SafetyGuard:
    def __init__(self,
                 prober: SystemProber,
                 disk_manager: DiskManager,
                 min_disk_gib: int = 20,
                 is_block_device: Callable[[str], bool] = _is_block_device,
                 read_first_sector: Callable[[str], bool] = _read_first_sector):
        self.prober = prober
        self.disk_manager = disk_manager
        self.logger = disk_manager.logger
        self.min_disk_gib = min_disk_gib
        self._is_block_device = is_block_device
        self._read_first_sector = read_first_sector

    def validate(self, device: str) -> SafetyResult:
        """Runs every check in order and returns the first rejection, or a clearance."""
        name = normalize_device(device)
        if not DISK_NAME_PATTERN.match(name):
            return self._reject(RejectionReason.INVALID_NAME, device)
        path = f"/dev/{name}"

        if not self._is_block_device(path):
            return self._reject(RejectionReason.NOT_BLOCK_DEVICE, path)
        if not self._read_first_sector(path):
            return self._reject(RejectionReason.UNREADABLE, path)

        if path in self.prober.live_media_disks():
            return self._reject(RejectionReason.LIVE_MEDIUM, path)
        if path == self.prober.root_disk():
            return self._reject(RejectionReason.ROOT_DISK, path)
        if path == self.prober.boot_disk():
            return self._reject(RejectionReason.BOOT_DISK, path)

        disk = self.prober.disk(path)
        if disk is None:
            return self._reject(RejectionReason.NOT_BLOCK_DEVICE, f"{path} is not reported as a disk by lsblk")
        if disk.size_gib < self.min_disk_gib:
            return self._reject(RejectionReason.TOO_SMALL, f"{path} is {disk.size_gib} GiB, minimum is {self.min_disk_gib} GiB")

        owned = {path, *self.prober.children(path)}
        if self._busy(owned):
            self.logger.warning(f"{path} is in use, releasing its mounts and swap areas.")
            self._release(owned)
            busy = self._busy(owned)
            if busy:
                return self._reject(RejectionReason.IN_USE, ", ".join(sorted(busy)))

        self.logger.info(f"{path} passed all safety checks ({disk.size_gib} GiB, {disk.model or 'unknown model'}).")
        return SafetyResult.ok(ClearedDevice(disk=disk))

    def confirm_destruction(self, clearance: ClearedDevice, phrase: str) -> ClearedDevice:
        """Only the exact phrase is accepted. Anything else stops the run."""
        if phrase != CONFIRMATION_PHRASE:
            self.logger.error(f"Confirmation phrase mismatch for {clearance.path}, aborting.")
            raise DestructiveGuardError(f"Confirmation phrase did not match '{CONFIRMATION_PHRASE}'; nothing was changed.")
        self.logger.warning(f"Destruction of all data on {clearance.path} confirmed by operator.")
        return dataclasses.replace(clearance, confirmed=True)

    def _reject(self, reason: RejectionReason, details: str) -> SafetyResult:
        result = SafetyResult.block(reason, details)
        self.logger.error(result.format_error())
        return result

    def _busy(self, owned: Set[str]) -> Set[str]:
        return (self.prober.mounted_devices() | self.prober.active_swaps()) & owned

    def _release(self, owned: Set[str]):
        """Unmounts and swapoffs only nodes known to belong to the device, deepest mount point first."""
        mounts = [(target, source) for target, source in self.prober.mount_sources().items() if source in owned]
        for target, source in sorted(mounts, key=lambda m: m[0].count("/"), reverse=True):
            try:
                self.disk_manager.unmount_partition(target)
            except ShellCommandError as e:
                self.logger.warning(f"Could not unmount {target} ({source}): {e}")
        for swap in sorted(self.prober.active_swaps() & owned):
            try:
                self.disk_manager.swap_off(swap)
            except ShellCommandError as e:
                self.logger.warning(f"Could not deactivate swap on {swap}: {e}")
