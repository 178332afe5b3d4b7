# arch_provisioner/mount.py
import os
from typing import List, Optional, Tuple

from arch_provisioner.config.models import PartitionRole, PartitionScheme, ResolvedPartitions
from arch_provisioner.executors.disk import DiskManager
from arch_provisioner.formatter import MountProfile
from arch_provisioner.utils.exceptions import MountError, ShellCommandError

# Subvolume -> path below the target root, in mount order
SUBVOLUME_MOUNTS: Tuple[Tuple[str, str], ...] = (
    ("@home", "home"),
    ("@var", "var"),
    ("@tmp", "tmp"),
    ("@.snapshots", ".snapshots"),
)


class MountOrchestrator:
    """
    Mounts the provisioned partitions below the target root.

    mount() always tears down whatever an earlier run left mounted first, so calling it
    twice produces the same mount table as calling it once. cleanup() undoes what this
    instance mounted and never raises.
    """

    def __init__(self, disk_manager: DiskManager, target_root: str = "/mnt"):
        self.disk_manager = disk_manager
        self.logger = disk_manager.logger
        self.target_root = target_root
        self._mounted: List[str] = []
        self._swaps: List[str] = []

    def _target(self, relative: str = "") -> str:
        return os.path.join(self.target_root, relative) if relative else self.target_root

    @staticmethod
    def _boot_device(resolved: ResolvedPartitions) -> Optional[str]:
        return resolved.get(PartitionRole.EFI) or resolved.get(PartitionRole.BOOT)

    def teardown_order(self, resolved: ResolvedPartitions, scheme: PartitionScheme) -> List[str]:
        """home -> boot -> remaining subvolumes (reverse) -> root."""
        order = []
        if scheme is PartitionScheme.BTRFS_SUBVOLUMES or resolved.get(PartitionRole.HOME):
            order.append(self._target("home"))
        if self._boot_device(resolved):
            order.append(self._target("boot"))
        if scheme is PartitionScheme.BTRFS_SUBVOLUMES:
            order.extend(self._target(path) for _, path in reversed(SUBVOLUME_MOUNTS) if path != "home")
        order.append(self._target())
        return order

    def teardown(self, resolved: ResolvedPartitions, scheme: PartitionScheme):
        """Unmounts and deactivates anything a previous run left behind."""
        for path in self.teardown_order(resolved, scheme):
            if self.disk_manager.is_mounted(path):
                self.logger.info(f"{path} is already mounted, unmounting before remount.")
                self._unmount(path, strict=True)
        # Any node of the target disk, including one a previous layout used as swap
        for node in resolved.partitions.values():
            if self.disk_manager.is_swap_active(node):
                self.logger.info(f"Swap on {node} is active, deactivating before remount.")
                self._guard(f"swapoff {node}", lambda node=node: self.disk_manager.swap_off(node))

    def mount(self, resolved: ResolvedPartitions, scheme: PartitionScheme, profile: MountProfile) -> List[str]:
        """
        Mounts root, then subvolumes or /home, then /boot, then enables swap.

        Returns:
            List[str]: The mount points in the order they were mounted.
        """
        self.logger.section(f"Mounting target system at {self.target_root}")
        self.teardown(resolved, scheme)

        root = resolved[PartitionRole.ROOT]
        options = profile.data_options

        if scheme is PartitionScheme.BTRFS_SUBVOLUMES:
            self._mount(self._target(), lambda: self.disk_manager.mount_btrfs_subvolume(root, self._target(), "@", options))
            for subvolume, path in SUBVOLUME_MOUNTS:
                target = self._target(path)
                self._mount(target, lambda subvolume=subvolume, target=target: self.disk_manager.mount_btrfs_subvolume(root, target, subvolume, options))
        else:
            self._mount(self._target(), lambda: self.disk_manager.mount_partition(root, self._target(), options))
            home = resolved.get(PartitionRole.HOME)
            if home:
                self._mount(self._target("home"), lambda: self.disk_manager.mount_partition(home, self._target("home"), options))

        boot = self._boot_device(resolved)
        if boot:
            self._mount(self._target("boot"), lambda: self.disk_manager.mount_partition(boot, self._target("boot"), profile.boot_options))

        swap = resolved.get(PartitionRole.SWAP)
        if swap:
            self._guard(f"swapon {swap}", lambda: self.disk_manager.swap_on(swap))
            self._swaps.append(swap)

        return list(self._mounted)

    def cleanup(self):
        """Best effort: unmount in reverse order and disable swap. Failures are logged only."""
        if not self._mounted and not self._swaps:
            return
        self.logger.warning("Cleaning up mounts and swap of the interrupted run.")
        for path in reversed(self._mounted):
            try:
                self._unmount(path, strict=False)
            except ShellCommandError as e:
                self.logger.error(f"Could not unmount {path}: {e}")
        for swap in reversed(self._swaps):
            try:
                self.disk_manager.swap_off(swap, check=False)
            except ShellCommandError as e:
                self.logger.error(f"Could not deactivate swap on {swap}: {e}")
        self._mounted.clear()
        self._swaps.clear()

    def _mount(self, target: str, action):
        self._guard(f"mount {target}", action)
        if target not in self._mounted:
            self._mounted.append(target)

    def _unmount(self, path: str, strict: bool):
        try:
            self.disk_manager.unmount_partition(path)
        except ShellCommandError as e:
            self.logger.warning(f"umount {path} failed ({e}), detaching lazily.")
            if strict:
                self._guard(f"umount -l {path}", lambda: self.disk_manager.unmount_partition(path, lazy=True))
            else:
                self.disk_manager.unmount_partition(path, lazy=True, check=False)
        if path in self._mounted:
            self._mounted.remove(path)

    def _guard(self, step: str, action):
        try:
            return action()
        except ShellCommandError as e:
            raise MountError(step, command=e.command, cause=e) from e
