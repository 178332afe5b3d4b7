# arch_provisioner/planner.py
"""
Pure layout computation. No I/O: every input is a value, the output is a validated PartitionPlan.

All offsets are whole MiB. Each partition starts where the previous one ended, and the
last partition always runs to 100% so rounding never strands space at the end of the disk.
"""
from typing import List, Optional, Tuple

from pydantic import ValidationError

from arch_provisioner.config.models import (
    BTRFS_SUBVOLUMES,
    BootContext,
    BootMode,
    DiskSpec,
    Filesystem,
    HomeBudget,
    PartitionPlan,
    PartitionPlanEntry,
    PartitionRole,
    PartitionScheme,
    TableType,
)
from arch_provisioner.utils.exceptions import InputValidationError

# GPT partition type GUIDs
GUID_ESP = "C12A7328-F81F-11D2-BA4B-00A0C93EC93B"
GUID_BIOS_BOOT = "21686148-6449-6E6F-744E-656564454649"
GUID_SWAP = "0657FD6D-A4AB-43C4-84E5-0933C84B4F4F"
GUID_ROOT_X86_64 = "4F68BCE3-E8CD-4DB1-96E7-FBCAF984B709"
GUID_HOME = "933AC7E1-2EB4-4F13-B844-0E14E2AEF915"

# MBR partition type bytes
MBR_FAT32_LBA = "0c"
MBR_SWAP = "82"
MBR_LINUX = "83"

FIRST_PARTITION_MIB = 1
ESP_MIB = 1024
BIOS_BOOT_MIB = 1
COMPAT_ESP_MIB = 512
MBR_BOOT_MIB = 1024

SMALL_DISK_GIB = 64
SMALL_DISK_SWAP_MIB = 2048
SMALL_DISK_MIN_ROOT_GIB = 8
MIN_ROOT_GIB = 64
MIN_HOME_GIB = 10
HOME_BUFFER_MIB = 5 * 1024

SWAP_MIN_MIB = 128
SWAP_ADVISORY_MAX_MIB = 5248  # 5.125 GiB
LARGE_RAM_GIB = 64
LARGE_RAM_SWAP_GIB = 5

ROOT_LABEL = "ArchRoot"
HOME_LABEL = "ArchHome"


def suggest_swap_gib(ram_gib: int) -> int:
    """RAM + 2 GiB, or a flat 5 GiB on machines with more than 64 GiB of RAM."""
    if ram_gib > LARGE_RAM_GIB:
        return LARGE_RAM_SWAP_GIB
    return ram_gib + 2


def resolve_swap(ram_gib: int, swap_gib: Optional[float], small_disk: bool) -> Tuple[int, List[str], bool]:
    """
    Returns (swap_mib, notices, requires_confirmation).

    An operator override below 128 MiB is rejected. One above 5.125 GiB is allowed
    but has to be confirmed. Small disks cap swap at 2 GiB whatever was asked for.
    """
    notices = []
    confirm = False

    if swap_gib is None:
        swap_mib = suggest_swap_gib(ram_gib) * 1024
    else:
        swap_mib = int(round(swap_gib * 1024))
        if swap_mib < SWAP_MIN_MIB:
            raise InputValidationError(f"Swap size of {swap_mib} MiB is below the minimum of {SWAP_MIN_MIB} MiB.")
        if swap_mib > SWAP_ADVISORY_MAX_MIB and not small_disk:
            notices.append(f"Swap size of {swap_mib} MiB exceeds the recommended maximum of {SWAP_ADVISORY_MAX_MIB} MiB.")
            confirm = True

    if small_disk and swap_mib > SMALL_DISK_SWAP_MIB:
        notices.append(f"Swap reduced from {swap_mib} MiB to {SMALL_DISK_SWAP_MIB} MiB because the disk is smaller than {SMALL_DISK_GIB} GiB.")
        swap_mib = SMALL_DISK_SWAP_MIB

    return swap_mib, notices, confirm


def suggest_root_gib(disk_gib: int, available_mib: int) -> int:
    """A quarter of the disk, never less than 64 GiB and never more than what is available."""
    suggested = disk_gib * 128 // 512
    return max(MIN_ROOT_GIB, min(suggested, available_mib // 1024))


def _boot_entries(boot: BootContext, compat_esp: bool) -> List[PartitionPlanEntry]:
    start = FIRST_PARTITION_MIB

    if boot.mode is BootMode.UEFI:
        if compat_esp:
            raise InputValidationError("A compatibility ESP only applies to BIOS systems with a GPT table.")
        return [PartitionPlanEntry(
            number=1, role=PartitionRole.EFI, start_mib=start, end_mib=start + ESP_MIB,
            filesystem="fat32", type_guid=GUID_ESP, flags=("esp",), label="EFI",
        )]

    if boot.table is TableType.GPT:
        entries = [PartitionPlanEntry(
            number=1, role=PartitionRole.BIOS_BOOT, start_mib=start, end_mib=start + BIOS_BOOT_MIB,
            filesystem=None, type_guid=GUID_BIOS_BOOT, flags=("bios_grub",), label="BIOSBOOT",
        )]
        if compat_esp:
            esp_start = start + BIOS_BOOT_MIB
            entries.append(PartitionPlanEntry(
                number=2, role=PartitionRole.EFI, start_mib=esp_start, end_mib=esp_start + COMPAT_ESP_MIB,
                filesystem="fat32", type_guid=GUID_ESP, flags=("esp",), label="EFI",
            ))
        return entries

    if compat_esp:
        raise InputValidationError("A compatibility ESP only applies to BIOS systems with a GPT table.")
    return [PartitionPlanEntry(
        number=1, role=PartitionRole.BOOT, start_mib=start, end_mib=start + MBR_BOOT_MIB,
        filesystem="fat32", mbr_type=MBR_FAT32_LBA, flags=("boot",), label="BOOT",
    )]


def _data_entry(number: int, role: PartitionRole, start: int, end: Optional[int], filesystem: Filesystem, table: TableType) -> PartitionPlanEntry:
    gpt = table is TableType.GPT
    return PartitionPlanEntry(
        number=number, role=role, start_mib=start, end_mib=end,
        filesystem=filesystem.value,
        type_guid=(GUID_HOME if role is PartitionRole.HOME else GUID_ROOT_X86_64) if gpt else None,
        mbr_type=None if gpt else MBR_LINUX,
        label=HOME_LABEL if role is PartitionRole.HOME else ROOT_LABEL,
    )


def plan(disk: DiskSpec,
         boot: BootContext,
         ram_gib: int,
         scheme: PartitionScheme,
         filesystem: Filesystem,
         swap_gib: Optional[float] = None,
         root_gib: Optional[int] = None,
         compat_esp: bool = False) -> PartitionPlan:
    """
    Computes the partition layout for one disk.

    Args:
        disk (DiskSpec): The probed target disk.
        boot (BootContext): Firmware mode and table type.
        ram_gib (int): Installed RAM, drives the swap suggestion.
        scheme (PartitionScheme): Requested scheme. Disks below 64 GiB always get SINGLE.
        filesystem (Filesystem): Filesystem for root (and home).
        swap_gib (Optional[float]): Operator swap override.
        root_gib (Optional[int]): Operator root size override, SEPARATE_HOME only.
        compat_esp (bool): Add a 512 MiB ESP on BIOS+GPT so the disk can later boot under UEFI.

    Returns:
        PartitionPlan: The validated layout.

    Raises:
        InputValidationError: Inconsistent choices or a disk that cannot hold the layout.
    """
    if scheme is PartitionScheme.BTRFS_SUBVOLUMES and filesystem is not Filesystem.BTRFS:
        raise InputValidationError("The btrfs-subvolumes scheme requires the btrfs filesystem.")

    notices: List[str] = []
    confirm = False
    small_disk = disk.size_gib < SMALL_DISK_GIB
    effective_scheme = scheme
    forced_single = False

    if small_disk:
        notices.append(f"Disk is {disk.size_gib} GiB, smaller than {SMALL_DISK_GIB} GiB: using a single root partition with at most {SMALL_DISK_SWAP_MIB} MiB of swap.")
        confirm = True
        if scheme is not PartitionScheme.SINGLE:
            notices.append(f"Requested scheme '{scheme.value}' replaced by '{PartitionScheme.SINGLE.value}'.")
            effective_scheme = PartitionScheme.SINGLE
            forced_single = True
        if root_gib is not None:
            notices.append("Root size override ignored on a small disk.")
            root_gib = None
    elif root_gib is not None and scheme is not PartitionScheme.SEPARATE_HOME:
        raise InputValidationError("A root size can only be given for the separate home scheme.")

    swap_mib, swap_notices, swap_confirm = resolve_swap(ram_gib, swap_gib, small_disk)
    notices.extend(swap_notices)
    confirm = confirm or swap_confirm

    entries = _boot_entries(boot, compat_esp)
    boot_end = entries[-1].end_mib
    swap_end = boot_end + swap_mib
    entries.append(PartitionPlanEntry(
        number=len(entries) + 1, role=PartitionRole.SWAP, start_mib=boot_end, end_mib=swap_end,
        filesystem="swap",
        type_guid=GUID_SWAP if boot.table is TableType.GPT else None,
        mbr_type=MBR_SWAP if boot.table is TableType.MBR else None,
        label="swap",
    ))

    disk_mib = disk.size_mib
    budget = None

    if effective_scheme is PartitionScheme.SEPARATE_HOME:
        reserved_mib = swap_end + HOME_BUFFER_MIB
        available_mib = disk_mib - reserved_mib
        if available_mib < MIN_ROOT_GIB * 1024:
            raise InputValidationError(f"Not enough space for a separate home: {available_mib} MiB available, root alone needs {MIN_ROOT_GIB} GiB.")

        if root_gib is None:
            root_mib = suggest_root_gib(disk.size_gib, available_mib) * 1024
        else:
            root_mib = root_gib * 1024
            if root_gib < MIN_ROOT_GIB or root_mib > available_mib:
                raise InputValidationError(f"Root size must be between {MIN_ROOT_GIB} GiB and {available_mib // 1024} GiB.")

        home_mib = available_mib - root_mib
        if home_mib < MIN_HOME_GIB * 1024:
            raise InputValidationError(f"Only {home_mib} MiB would be left for /home, at least {MIN_HOME_GIB} GiB is required.")

        budget = HomeBudget(root_mib=root_mib, home_mib=home_mib, reserved_mib=reserved_mib)
        root_end = swap_end + root_mib
        entries.append(_data_entry(len(entries) + 1, PartitionRole.ROOT, swap_end, root_end, filesystem, boot.table))
        entries.append(_data_entry(len(entries) + 1, PartitionRole.HOME, root_end, None, filesystem, boot.table))
    else:
        min_root_gib = SMALL_DISK_MIN_ROOT_GIB if small_disk else MIN_ROOT_GIB
        if disk_mib - swap_end < min_root_gib * 1024:
            raise InputValidationError(f"Only {disk_mib - swap_end} MiB left for root, at least {min_root_gib} GiB is required.")
        entries.append(_data_entry(len(entries) + 1, PartitionRole.ROOT, swap_end, None, filesystem, boot.table))

    try:
        return PartitionPlan(
            disk=disk,
            boot=boot,
            filesystem=filesystem,
            scheme=effective_scheme,
            requested_scheme=scheme,
            entries=entries,
            swap_mib=swap_mib,
            subvolumes=BTRFS_SUBVOLUMES if effective_scheme is PartitionScheme.BTRFS_SUBVOLUMES else (),
            forced_single=forced_single,
            notices=tuple(notices),
            requires_confirmation=confirm,
            budget=budget,
        )
    except ValidationError as e:
        raise InputValidationError(f"Computed layout is invalid: {e}")
