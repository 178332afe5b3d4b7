# arch_provisioner/partitioner.py
import os
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Tuple

from arch_provisioner.config.models import (
    BootMode,
    PartitionPlan,
    PartitionPlanEntry,
    PartitionRole,
    ResolvedPartitions,
    TableType,
)
from arch_provisioner.executors.disk import DiskManager
from arch_provisioner.safety import ClearedDevice
from arch_provisioner.utils.exceptions import DestructiveGuardError, InputValidationError, PartitioningError, ShellCommandError

# parted filesystem hints for mkpart
PARTED_FS_TYPES = {
    "fat32": "fat32",
    "swap": "linux-swap",
    "ext4": "ext4",
    "btrfs": "btrfs",
    "xfs": "xfs",
}


@dataclass(frozen=True)
class TableProfile:
    """How one (boot mode, table type) combination is laid down."""
    label: str
    uses_type_guid: bool
    allowed_roles: FrozenSet[PartitionRole]


TABLE_PROFILES: Dict[Tuple[BootMode, TableType], TableProfile] = {
    (BootMode.UEFI, TableType.GPT): TableProfile(
        label="gpt",
        uses_type_guid=True,
        allowed_roles=frozenset({PartitionRole.EFI, PartitionRole.SWAP, PartitionRole.ROOT, PartitionRole.HOME}),
    ),
    (BootMode.BIOS, TableType.GPT): TableProfile(
        label="gpt",
        uses_type_guid=True,
        allowed_roles=frozenset({PartitionRole.BIOS_BOOT, PartitionRole.EFI, PartitionRole.SWAP, PartitionRole.ROOT, PartitionRole.HOME}),
    ),
    (BootMode.BIOS, TableType.MBR): TableProfile(
        label="msdos",
        uses_type_guid=False,
        allowed_roles=frozenset({PartitionRole.BOOT, PartitionRole.SWAP, PartitionRole.ROOT, PartitionRole.HOME}),
    ),
}


def partition_node(disk: str, number: int) -> str:
    """
    Device node of partition `number` on `disk`.
    Names ending in a digit (nvme0n1, mmcblk0, loop0) take a 'p' separator.
    """
    if os.path.basename(disk)[-1:].isdigit():
        return f"{disk}p{number}"
    return f"{disk}{number}"


def resolve_partitions(plan: PartitionPlan) -> ResolvedPartitions:
    return ResolvedPartitions(
        disk=plan.disk.path,
        partitions={entry.role: partition_node(plan.disk.path, entry.number) for entry in plan.entries},
    )


class Partitioner:
    """
    Writes a PartitionPlan to disk.

    The sequence is wipe -> label -> (mkpart, flags, type) per entry -> kernel re-read -> wait for nodes.
    Any failing step aborts the whole plan; the disk is left as it is.
    """

    def __init__(self,
                 disk_manager: DiskManager,
                 reread_retries: int = 10,
                 reread_delay: float = 1.0,
                 node_exists: Callable[[str], bool] = os.path.exists,
                 sleep: Callable[[float], None] = time.sleep):
        self.disk_manager = disk_manager
        self.logger = disk_manager.logger
        self.reread_retries = reread_retries
        self.reread_delay = reread_delay
        self._node_exists = node_exists
        self._sleep = sleep

    def partition(self, plan: PartitionPlan, clearance: ClearedDevice) -> ResolvedPartitions:
        device = plan.disk.path
        if not clearance.confirmed:
            raise DestructiveGuardError(f"{device} has not been confirmed for destruction.")
        if clearance.path != device:
            raise DestructiveGuardError(f"Clearance is for {clearance.path}, but the plan targets {device}.")

        profile = TABLE_PROFILES.get((plan.boot.mode, plan.boot.table))
        if profile is None:
            raise InputValidationError(f"Unsupported combination: {plan.boot.mode.value} with {plan.boot.table.value}.")
        unexpected = set(plan.roles) - profile.allowed_roles
        if unexpected:
            raise InputValidationError(f"Partition roles {sorted(r.value for r in unexpected)} are not valid for a {profile.label} table in {plan.boot.mode.value} mode.")

        self.logger.section(f"Partitioning {device} ({profile.label}, {len(plan.entries)} partitions)")

        self._step("wipe signatures", device, lambda: self.disk_manager.wipe_signatures(device))
        self._step("clear partition table", device, lambda: self.disk_manager.clear_partition_table(device))
        self._step(f"create {profile.label} label", device, lambda: self.disk_manager.make_label(device, profile.label))

        for entry in plan.entries:
            self._create(device, profile, entry)

        resolved = resolve_partitions(plan)
        self._reread(device)
        self._wait_for_node(resolved[plan.entries[0].role])

        for role, path in resolved.partitions.items():
            self.logger.info(f"{role.value:<10} -> {path}")
        return resolved

    def _create(self, device: str, profile: TableProfile, entry: PartitionPlanEntry):
        number = entry.number
        name = entry.label if profile.uses_type_guid else None
        fs_hint = PARTED_FS_TYPES.get(entry.filesystem) if entry.filesystem else None

        self._step(f"create partition {number} ({entry.role.value})", device,
                   lambda: self.disk_manager.make_partition(device, entry.start_marker, entry.end_marker, fs_type=fs_hint, name=name))
        for flag in entry.flags:
            self._step(f"set flag {flag} on partition {number}", device,
                       lambda flag=flag: self.disk_manager.set_flag(device, number, flag))
        if profile.uses_type_guid and entry.type_guid:
            self._step(f"set type GUID on partition {number}", device,
                       lambda: self.disk_manager.set_type_guid(device, number, entry.type_guid))
        elif not profile.uses_type_guid and entry.mbr_type:
            self._step(f"set MBR type on partition {number}", device,
                       lambda: self.disk_manager.set_mbr_type(device, number, entry.mbr_type))

    def _step(self, step: str, device: str, action: Callable):
        try:
            return action()
        except ShellCommandError as e:
            state = self.disk_manager.describe_disk(device)
            self.logger.error(f"Partitioning step '{step}' failed on {device}: {e.command}")
            self.logger.error(f"Current state of {device}:\n{state}")
            raise PartitioningError(step, command=e.command, disk_state=state, cause=e) from e

    def _reread(self, device: str):
        """partprobe, falling back to partx and udev. Failure here is only a warning."""
        try:
            self.disk_manager.reread_partition_table(device)
            return
        except ShellCommandError as e:
            self.logger.warning(f"partprobe failed on {device} ({e}), trying partx.")
        try:
            self.disk_manager.partx_update(device)
        except ShellCommandError as e:
            self.logger.warning(f"partx failed on {device} ({e}), relying on udev.")
        self.disk_manager.udev_settle()

    def _wait_for_node(self, node: str) -> bool:
        if self.disk_manager.executor.dryrun:
            self.logger.info(f"DRY RUN: not waiting for {node} to appear.")
            return True
        for attempt in range(1, self.reread_retries + 1):
            if self._node_exists(node):
                self.logger.debug(f"{node} present after {attempt} check(s).")
                return True
            self.logger.info(f"Waiting for {node} to appear ({attempt}/{self.reread_retries})")
            self._sleep(self.reread_delay)
        if self._node_exists(node):
            return True
        self.logger.warning(f"{node} did not appear after {self.reread_retries} checks, continuing anyway.")
        return False
