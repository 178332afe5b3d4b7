# arch_provisioner/executors/disk.py
import os
from typing import List, Optional, Tuple

from arch_provisioner.utils.executor import Executor


class DiskManager:
    """
    Expert class for performing disk and partition management operations
    on a system being prepared for an Arch Linux installation.
    All operations are delegated to the provided Executor instance.
    """

    def __init__(self, executor: Executor):
        """
        Initializes the Disk management class.

        Args:
            executor (Executor): An instance of the Executor class for command execution.
        """
        self.executor = executor
        self.logger = executor.logger
        self.logger.debug("Disk manager initialized.")

    # --- DISK LEVEL OPERATIONS ---

    def wipe_signatures(self, device: str) -> Tuple[int, str, str]:
        """
        Removes every filesystem, RAID and partition-table signature from a device with 'wipefs -af'.

        Args:
            device (str): The disk device path (e.g., '/dev/sda').

        Returns:
            Tuple[int, str, str]: (exit_code, stdout, stderr).
        """
        return self.executor.run(
            description=f"Wiping filesystem signatures on {device}",
            command=["wipefs", "-af", device],
            check=True
        )

    def clear_partition_table(self, device: str) -> Tuple[int, str, str]:
        """
        Destroys the GPT and MBR data structures on a disk using 'sgdisk -Z'.

        Args:
            device (str): The disk device path (e.g., '/dev/sda').

        Returns:
            Tuple[int, str, str]: (exit_code, stdout, stderr).
        """
        return self.executor.run(
            description=f"Clearing partition table on {device}",
            command=["sgdisk", "-Z", device],
            check=True
        )

    def make_label(self, device: str, label: str) -> Tuple[int, str, str]:
        """
        Writes a new, empty partition table.

        Args:
            device (str): The disk device path.
            label (str): parted label type, 'gpt' or 'msdos'.
        """
        return self.executor.run(
            description=f"Creating {label} partition table on {device}",
            command=["parted", "-s", device, "mklabel", label],
            check=True
        )

    def describe_disk(self, device: str) -> str:
        """Returns the current lsblk view of a device, for error reports. Never raises."""
        try:
            _, stdout, stderr = self.executor.execute_command(
                ["lsblk", "-o", "NAME,SIZE,TYPE,FSTYPE,PARTTYPE,MOUNTPOINTS", device], check=False
            )
        except Exception as e:
            return f"<unable to read disk state: {e}>"
        return stdout.strip() or stderr.strip()

    # --- PARTITION LEVEL OPERATIONS ---

    def make_partition(self, device: str, start: str, end: str, fs_type: Optional[str] = None, name: Optional[str] = None) -> Tuple[int, str, str]:
        """
        Creates a partition with 'parted mkpart'.

        Args:
            device (str): The disk device path.
            start (str): Start offset, e.g. '1MiB'.
            end (str): End offset, e.g. '1025MiB' or '100%'.
            fs_type (Optional[str]): parted filesystem hint (e.g. 'fat32', 'linux-swap', 'ext4').
            name (Optional[str]): GPT partition name. Ignored by parted for msdos tables.
        """
        command = ["parted", "-s", "-a", "optimal", device, "mkpart"]
        # On gpt the first mkpart argument is the partition name, on msdos it is the type
        command.append(name or "primary")
        if fs_type:
            command.append(fs_type)
        command.extend([start, end])

        return self.executor.run(
            description=f"Creating partition {start} -> {end} on {device}",
            command=command,
            check=True
        )

    def set_flag(self, device: str, number: int, flag: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Setting flag '{flag}' on partition {number} of {device}",
            command=["parted", "-s", device, "set", str(number), flag, "on"],
            check=True
        )

    def set_type_guid(self, device: str, number: int, guid: str) -> Tuple[int, str, str]:
        """Sets the GPT partition type GUID with 'sgdisk --typecode'."""
        return self.executor.run(
            description=f"Setting type GUID {guid} on partition {number} of {device}",
            command=["sgdisk", f"--typecode={number}:{guid}", device],
            check=True
        )

    def set_mbr_type(self, device: str, number: int, type_id: str) -> Tuple[int, str, str]:
        """Sets the MBR partition type byte with 'sfdisk --part-type'."""
        return self.executor.run(
            description=f"Setting MBR type 0x{type_id} on partition {number} of {device}",
            command=["sfdisk", "--part-type", device, str(number), type_id],
            check=True
        )

    # --- KERNEL SYNCHRONISATION ---

    def reread_partition_table(self, device: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Asking the kernel to re-read the partition table of {device}",
            command=["partprobe", device],
            check=True
        )

    def partx_update(self, device: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Updating kernel partition list of {device} with partx",
            command=["partx", "-u", device],
            check=True
        )

    def udev_settle(self) -> Tuple[int, str, str]:
        return self.executor.run(
            description="Waiting for udev to settle",
            command=["udevadm", "settle"],
            check=False
        )

    # --- FILESYSTEM OPERATIONS ---

    def format_partition(self, partition_path: str, command: List[str], label: str) -> Tuple[int, str, str]:
        """
        Runs a prepared mkfs command line against a partition.

        Args:
            partition_path (str): The partition path (e.g., '/dev/sda1').
            command (List[str]): The mkfs command without the target device.
            label (str): Filesystem label, used for the TUI description only.
        """
        return self.executor.run(
            description=f"Formatting {partition_path} ({command[0]}, label {label})",
            command=command + [partition_path],
            check=True
        )

    def make_swap(self, partition_path: str, label: str = "swap") -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Creating swap area on {partition_path}",
            command=["mkswap", "-L", label, partition_path],
            check=True
        )

    def swap_on(self, partition_path: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Activating swap on {partition_path}",
            command=["swapon", partition_path],
            check=True
        )

    def swap_off(self, partition_path: str, check: bool = True) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Deactivating swap on {partition_path}",
            command=["swapoff", partition_path],
            check=check
        )

    def is_swap_active(self, partition_path: str) -> bool:
        _, stdout, _ = self.executor.execute_command(
            ["swapon", "--show=NAME", "--noheadings", "--raw"], check=False
        )
        active = {line.strip() for line in stdout.splitlines() if line.strip()}
        return partition_path in active or os.path.realpath(partition_path) in active

    # --- MOUNT/UNMOUNT OPERATIONS ---

    def make_directory(self, path: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Ensuring directory {path} exists",
            command=["mkdir", "-p", path],
            check=True
        )

    def remove_directory(self, path: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Removing directory {path}",
            command=["rmdir", path],
            check=False
        )

    def mount_partition(self, source: str, target: str, options: Optional[str] = None) -> Tuple[int, str, str]:
        """
        Mounts a filesystem/partition to a target directory.
        Ensures the target directory exists before attempting to mount.

        Args:
            source (str): The device or volume to mount (e.g., '/dev/sda1').
            target (str): The mount point (e.g., '/mnt', '/mnt/boot').
            options (Optional[str]): Optional mount options (e.g., 'defaults,noatime').

        Returns:
            Tuple[int, str, str]: (exit_code, stdout, stderr) of the mount command.
        """
        self.make_directory(target)

        command = ["mount"]
        if options:
            command.extend(["-o", options])
        command.extend([source, target])

        return self.executor.run(
            description=f"Mounting {source} to {target} (Options: {options or 'default'})",
            command=command,
            check=True
        )

    def mount_btrfs_subvolume(self, source: str, target: str, subvolume_name: str, options: Optional[str] = None) -> Tuple[int, str, str]:
        """
        Mounts a Btrfs subvolume.

        Args:
            source (str): The device holding the Btrfs filesystem (e.g., '/dev/sda3').
            target (str): The mount point (e.g., '/mnt/home').
            subvolume_name (str): The name of the subvolume (e.g., '@', '@home').
            options (Optional[str]): Mount options appended after subvol=.
        """
        full_options = f"subvol={subvolume_name},{options}" if options else f"subvol={subvolume_name}"
        return self.mount_partition(source=source, target=target, options=full_options)

    def unmount_partition(self, target_or_source: str, lazy: bool = False, check: bool = True) -> Tuple[int, str, str]:
        """
        Unmounts a filesystem from a mount point or source device.

        Args:
            target_or_source (str): The mount point (e.g., '/mnt/boot') or the device (e.g., '/dev/sda1').
            lazy (bool): Detach now and clean up references later ('umount -l').
        """
        command = ["umount"]
        if lazy:
            command.append("-l")
        command.append(target_or_source)
        return self.executor.run(
            description=f"Unmounting {target_or_source}",
            command=command,
            check=check
        )

    def is_mounted(self, path: str) -> bool:
        exit_code, _, _ = self.executor.execute_command(["mountpoint", "-q", path], check=False)
        return exit_code == 0

    # --- BTRFS SPECIFIC OPERATIONS ---

    def create_btrfs_subvolume(self, mount_point: str, subvolume_path: str) -> Tuple[int, str, str]:
        """
        Creates a Btrfs subvolume. Requires the filesystem to be mounted first.

        Args:
            mount_point (str): The temporary mount point of the Btrfs top level.
            subvolume_path (str): The name of the new subvolume (e.g., '@', '@home').
        """
        full_path = os.path.join(mount_point, subvolume_path)
        return self.executor.run(
            description=f"Creating Btrfs subvolume: {subvolume_path} at {mount_point}",
            command=["btrfs", "subvolume", "create", full_path],
            check=True
        )
