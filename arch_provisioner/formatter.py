# arch_provisioner/formatter.py
from dataclasses import dataclass
from typing import Dict, List, Tuple

from arch_provisioner.config.models import (
    Filesystem,
    PartitionPlan,
    PartitionRole,
    PartitionScheme,
    ResolvedPartitions,
)
from arch_provisioner.executors.disk import DiskManager
from arch_provisioner.utils.exceptions import FormattingError, ShellCommandError

FAT_MOUNT_OPTIONS = "defaults,noatime,fmask=0077,dmask=0077,codepage=437,iocharset=iso8859-1"

MOUNT_OPTIONS: Dict[Filesystem, str] = {
    Filesystem.EXT4: "defaults,noatime,errors=remount-ro,commit=60",
    Filesystem.BTRFS: "defaults,noatime,compress=zstd:3,space_cache=v2,discard=async",
    Filesystem.XFS: "defaults,noatime,inode64,logbsize=256k",
}

MKFS_COMMANDS: Dict[Filesystem, List[str]] = {
    Filesystem.EXT4: ["mkfs.ext4", "-F", "-m", "1", "-E", "lazy_itable_init=0,lazy_journal_init=0"],
    Filesystem.BTRFS: ["mkfs.btrfs", "-f", "-m", "dup", "-d", "single"],
    Filesystem.XFS: ["mkfs.xfs", "-f", "-b", "size=4096", "-m", "crc=1,finobt=1"],
}

FAT_COMMAND = ["mkfs.fat", "-F32"]


@dataclass(frozen=True)
class MountProfile:
    """Mount options decided once at format time and reused for every mount of the run."""
    filesystem: Filesystem
    data_options: str
    boot_options: str = FAT_MOUNT_OPTIONS


def mount_options_for(filesystem: Filesystem) -> MountProfile:
    return MountProfile(filesystem=filesystem, data_options=MOUNT_OPTIONS[filesystem])


def mkfs_command(filesystem: Filesystem, label: str) -> List[str]:
    command = list(MKFS_COMMANDS[filesystem])
    command.extend(["-L", label])
    return command


class Formatter:
    """Creates filesystems on freshly resolved partitions."""

    def __init__(self, disk_manager: DiskManager, scratch_mount: str = "/tmp/btrfs-mount"):
        self.disk_manager = disk_manager
        self.logger = disk_manager.logger
        self.scratch_mount = scratch_mount

    def format(self, plan: PartitionPlan, resolved: ResolvedPartitions) -> MountProfile:
        """
        Formats every partition of the plan and returns the mount profile for the run.
        BIOS boot partitions stay unformatted.
        """
        self.logger.section(f"Formatting partitions on {plan.disk.path}")

        for entry in plan.entries:
            node = resolved[entry.role]
            if entry.filesystem is None:
                self.logger.info(f"{node} ({entry.role.value}) stays unformatted.")
            elif entry.filesystem == "fat32":
                self._run(f"format {entry.role.value}", node,
                          lambda node=node, label=entry.label: self.disk_manager.format_partition(node, FAT_COMMAND + ["-n", label], label))
            elif entry.filesystem == "swap":
                self._run("create swap", node, lambda node=node: self.disk_manager.make_swap(node, entry.label or "swap"))
            else:
                filesystem = Filesystem(entry.filesystem)
                self._run(f"format {entry.role.value}", node,
                          lambda node=node, label=entry.label, fs=filesystem: self.disk_manager.format_partition(node, mkfs_command(fs, label), label))

        if plan.scheme is PartitionScheme.BTRFS_SUBVOLUMES:
            self.create_subvolumes(resolved[PartitionRole.ROOT], plan.subvolumes)

        return mount_options_for(plan.filesystem)

    def create_subvolumes(self, device: str, subvolumes: Tuple[str, ...]):
        """
        Mounts the fresh Btrfs top level at the scratch location, creates the subvolumes
        and unmounts again. The unmount runs even when a subvolume cannot be created.
        """
        self.logger.info(f"Creating Btrfs subvolumes {', '.join(subvolumes)} on {device}")
        self._run("mount btrfs top level", device, lambda: self.disk_manager.mount_partition(device, self.scratch_mount))
        try:
            for subvolume in subvolumes:
                self._run(f"create subvolume {subvolume}", device,
                          lambda subvolume=subvolume: self.disk_manager.create_btrfs_subvolume(self.scratch_mount, subvolume))
        finally:
            try:
                self.disk_manager.unmount_partition(self.scratch_mount)
            except ShellCommandError as e:
                self.logger.warning(f"Plain unmount of {self.scratch_mount} failed ({e}), detaching lazily.")
                self.disk_manager.unmount_partition(self.scratch_mount, lazy=True, check=False)
            self.disk_manager.remove_directory(self.scratch_mount)

    def _run(self, step: str, node: str, action):
        try:
            return action()
        except ShellCommandError as e:
            self.logger.error(f"Formatting step '{step}' failed on {node}: {e.command}")
            raise FormattingError(step, command=e.command, disk_state=self.disk_manager.describe_disk(node), cause=e) from e
