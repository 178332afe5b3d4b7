# arch_provisioner/config/models.py

import tomlkit
import typer
from enum import Enum
from pathlib import Path
from typing import Dict, List, Literal, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, computed_field, conlist, model_validator

MIB = 1024 * 1024
GIB = 1024 * MIB

# --- 1. Closed Vocabularies ---


class BootMode(str, Enum):
    UEFI = "UEFI"
    BIOS = "BIOS"


class TableType(str, Enum):
    GPT = "GPT"
    MBR = "MBR"


class Filesystem(str, Enum):
    """Filesystems offered for the root and home partitions."""
    EXT4 = "ext4"
    BTRFS = "btrfs"
    XFS = "xfs"


class PartitionScheme(str, Enum):
    SINGLE = "single"
    SEPARATE_HOME = "home"
    BTRFS_SUBVOLUMES = "btrfs-subvolumes"


class PartitionRole(str, Enum):
    EFI = "EFI"
    BIOS_BOOT = "BIOS_BOOT"
    BOOT = "BOOT"
    SWAP = "SWAP"
    ROOT = "ROOT"
    HOME = "HOME"

    @property
    def config_key(self) -> str:
        """Name of the persisted key holding this role's device node."""
        return f"{self.value}_PARTITION"


class Bootloader(str, Enum):
    GRUB = "grub"
    SYSTEMD_BOOT = "systemd-boot"
    LIMINE = "limine"

    def supports(self, mode: BootMode) -> bool:
        return self is not Bootloader.SYSTEMD_BOOT or mode is BootMode.UEFI


class CpuVendor(str, Enum):
    INTEL = "intel"
    AMD = "amd"
    UNKNOWN = "unknown"

    @property
    def microcode_package(self) -> Optional[str]:
        return {CpuVendor.INTEL: "intel-ucode", CpuVendor.AMD: "amd-ucode"}.get(self)


class Milestone(str, Enum):
    """
    Ordered installation milestones. Declaration order is the progress order,
    so a marker can only ever move down this list.
    """
    PARTITIONS_READY = "partitions-ready"
    BASE_INSTALLED = "base-installed"
    SHELL_EDITOR_SELECTED = "shell-editor-selected"
    SYSTEM_CONFIGURED = "system-configured"
    USER_SETUP_COMPLETED = "user-setup-completed"
    DESKTOP_INSTALLED = "desktop-installed"
    AUR_HELPER_INSTALLED = "aur-helper-installed"
    PACKAGES_INSTALLED = "packages-installed"

    @property
    def rank(self) -> int:
        return list(Milestone).index(self)


# Anything a partition can be formatted with. BIOS boot partitions stay raw (None).
FormatType = Literal["fat32", "swap", "ext4", "btrfs", "xfs"]

BTRFS_SUBVOLUMES: Tuple[str, ...] = ("@", "@home", "@var", "@tmp", "@.snapshots")


# --- 2. Probed Facts ---

class DiskSpec(BaseModel):
    """A block device as reported by lsblk. Immutable once probed."""
    model_config = ConfigDict(frozen=True)

    path: str
    size_bytes: int = Field(ge=0)
    rotational: bool = False
    model: str = ""

    @computed_field
    @property
    def size_mib(self) -> int:
        return self.size_bytes // MIB

    @computed_field
    @property
    def size_gib(self) -> int:
        return self.size_bytes // GIB


class BootContext(BaseModel):
    """Firmware mode and chosen partition table for this run."""
    model_config = ConfigDict(frozen=True)

    mode: BootMode
    table: TableType = TableType.GPT
    uefi_bits: Optional[Literal[32, 64]] = None

    @model_validator(mode="after")
    def _mbr_requires_bios(self) -> "BootContext":
        if self.mode is BootMode.UEFI and self.table is TableType.MBR:
            raise ValueError("MBR partition tables are only supported in BIOS mode.")
        return self


# --- 3. Partition Plan ---

class PartitionPlanEntry(BaseModel):
    """One partition, in MiB. end_mib=None means 'to the end of the disk' (100%)."""
    model_config = ConfigDict(frozen=True)

    number: int = Field(ge=1)
    role: PartitionRole
    start_mib: int = Field(ge=1)
    end_mib: Optional[int] = None
    filesystem: Optional[FormatType] = None
    type_guid: Optional[str] = None
    mbr_type: Optional[str] = None
    flags: Tuple[str, ...] = ()
    label: Optional[str] = None

    @property
    def start_marker(self) -> str:
        return f"{self.start_mib}MiB"

    @property
    def end_marker(self) -> str:
        return "100%" if self.end_mib is None else f"{self.end_mib}MiB"

    @property
    def size_mib(self) -> Optional[int]:
        return None if self.end_mib is None else self.end_mib - self.start_mib


class HomeBudget(BaseModel):
    """How a SeparateHome disk was divided. root + home + reserved equals the disk size."""
    model_config = ConfigDict(frozen=True)

    root_mib: int
    home_mib: int
    reserved_mib: int

    @property
    def total_mib(self) -> int:
        return self.root_mib + self.home_mib + self.reserved_mib


class PartitionPlan(BaseModel):
    """
    Ordered on-disk layout produced by the planner.

    Entries are contiguous: each entry starts where the previous one ended, offsets are
    strictly increasing, and only the last entry runs to 100% of the disk.
    """
    model_config = ConfigDict(frozen=True)

    disk: DiskSpec
    boot: BootContext
    filesystem: Filesystem
    scheme: PartitionScheme
    requested_scheme: PartitionScheme
    entries: conlist(PartitionPlanEntry, min_length=1)
    swap_mib: int = Field(ge=0)
    subvolumes: Tuple[str, ...] = ()
    forced_single: bool = False
    notices: Tuple[str, ...] = ()
    requires_confirmation: bool = False
    budget: Optional[HomeBudget] = None

    @model_validator(mode="after")
    def _check_layout(self) -> "PartitionPlan":
        previous_end = 0
        for index, entry in enumerate(self.entries):
            if entry.number != index + 1:
                raise ValueError(f"Partition {entry.role.value} is numbered {entry.number}, expected {index + 1}.")
            if index == 0 and entry.start_mib < 1:
                raise ValueError("The first partition must start at or after 1 MiB.")
            if index > 0 and entry.start_mib != previous_end:
                raise ValueError(f"Partition {entry.number} starts at {entry.start_mib}MiB, expected {previous_end}MiB.")
            is_last = index == len(self.entries) - 1
            if entry.end_mib is None:
                if not is_last:
                    raise ValueError("Only the last partition may extend to the end of the disk.")
                if entry.start_mib >= self.disk.size_mib:
                    raise ValueError("The last partition starts beyond the end of the disk.")
            else:
                if entry.end_mib <= entry.start_mib:
                    raise ValueError(f"Partition {entry.number} has a non-positive size.")
                if entry.end_mib > self.disk.size_mib:
                    raise ValueError(f"Partition {entry.number} ends beyond the end of the disk.")
                if is_last:
                    raise ValueError("The last partition must extend to 100% of the disk.")
                previous_end = entry.end_mib
        return self

    def entry(self, role: PartitionRole) -> Optional[PartitionPlanEntry]:
        return next((e for e in self.entries if e.role is role), None)

    @property
    def roles(self) -> List[PartitionRole]:
        return [e.role for e in self.entries]

    def display_summary(self) -> str:
        """Generates the plan summary shown before the destructive confirmation."""
        s = typer.style("\nDISK & PARTITION PLAN", fg=typer.colors.BLUE, bold=True) + "\n"
        s += "----------------------------------------\n"
        s += f"  Device:             {typer.style(self.disk.path, fg=typer.colors.CYAN)} ({self.disk.size_gib} GiB, {self.disk.model or 'unknown model'})\n"
        s += f"  Boot:               {self.boot.mode.value} / {self.boot.table.value}\n"
        s += f"  Filesystem:         {self.filesystem.value}\n"
        s += f"  Scheme:             {self.scheme.value}"
        if self.forced_single:
            s += typer.style(f" (requested {self.requested_scheme.value})", fg=typer.colors.YELLOW)
        s += "\n"
        s += f"  Swap:               {self.swap_mib} MiB\n"
        for e in self.entries:
            size = "rest" if e.size_mib is None else f"{e.size_mib} MiB"
            s += f"  - P{e.number}: {e.role.value:<10} {e.start_marker:>10} -> {e.end_marker:<10} ({size:<10}) FS: {e.filesystem or 'none'}\n"
        if self.subvolumes:
            s += f"    ╰─ {typer.style('Btrfs Subvolumes', bold=True)}: {', '.join(self.subvolumes)}\n"
        for notice in self.notices:
            s += typer.style(f"  ! {notice}", fg=typer.colors.YELLOW) + "\n"
        return s


class ResolvedPartitions(BaseModel):
    """Concrete device node for each planned role, fixed once partitioning has succeeded."""
    model_config = ConfigDict(frozen=True)

    disk: str
    partitions: Dict[PartitionRole, str]

    def get(self, role: PartitionRole) -> Optional[str]:
        return self.partitions.get(role)

    def __getitem__(self, role: PartitionRole) -> str:
        return self.partitions[role]


# --- 4. Persisted Install Configuration ---

PARTITION_KEYS: Tuple[str, ...] = tuple(role.config_key for role in PartitionRole) + ("TARGET_DISK",)


def _flag(value: Optional[bool]) -> Optional[str]:
    if value is None:
        return None
    return "yes" if value else "no"


class InstallConfig(BaseModel):
    """
    Everything later phases need to know about the provisioned disk.
    Keys written by later phases that this model does not know are kept in `extras`.
    """
    boot_mode: Optional[BootMode] = None
    partition_table: Optional[TableType] = None
    uefi_bits: Optional[int] = None
    bootloader: Optional[Bootloader] = None
    target_disk: Optional[str] = None
    partitions: Dict[PartitionRole, str] = Field(default_factory=dict)
    root_fs: Optional[Filesystem] = None
    scheme: Optional[PartitionScheme] = None
    cpu_vendor: Optional[CpuVendor] = None
    microcode_pkg: Optional[str] = None
    microcode_installed: Optional[bool] = None
    auto_partitioned: Optional[bool] = None
    extras: Dict[str, str] = Field(default_factory=dict)

    def resolved_partitions(self) -> Optional[ResolvedPartitions]:
        if not self.target_disk or not self.partitions:
            return None
        return ResolvedPartitions(disk=self.target_disk, partitions=self.partitions)

    def to_pairs(self) -> Dict[str, str]:
        """Flattens the configuration into ordered KEY=value pairs, skipping unknown values."""
        pairs = {
            "BOOT_MODE": self.boot_mode.value if self.boot_mode else None,
            "PARTITION_TABLE": self.partition_table.value if self.partition_table else None,
            "UEFI_BITS": str(self.uefi_bits) if self.uefi_bits else None,
            "BOOTLOADER": self.bootloader.value if self.bootloader else None,
            "TARGET_DISK": self.target_disk,
        }
        for role in PartitionRole:
            pairs[role.config_key] = self.partitions.get(role)
        pairs.update({
            "ROOT_FS": self.root_fs.value if self.root_fs else None,
            "PARTITION_SCHEME": self.scheme.value if self.scheme else None,
            "SEPARATE_HOME": _flag(PartitionRole.HOME in self.partitions) if self.partitions else None,
            "CPU_VENDOR": self.cpu_vendor.value if self.cpu_vendor else None,
            "MICROCODE_PKG": self.microcode_pkg,
            "MICROCODE_INSTALLED": _flag(self.microcode_installed),
            "AUTO_PARTITIONED": _flag(self.auto_partitioned),
        })
        result = {key: value for key, value in pairs.items() if value is not None}
        for key, value in self.extras.items():
            result.setdefault(key, value)
        return result

    @classmethod
    def from_pairs(cls, pairs: Dict[str, str]) -> "InstallConfig":
        """
        Builds a config from raw pairs. Missing keys stay None, unknown keys and values
        that do not parse are carried in `extras` untouched.
        """
        remaining = dict(pairs)
        fields = {}

        def take(key, convert):
            if key not in remaining:
                return None
            try:
                value = convert(remaining[key])
            except ValueError:
                return None
            del remaining[key]
            return value

        def as_flag(raw: str) -> bool:
            lowered = raw.lower()
            if lowered in ("yes", "true", "1"):
                return True
            if lowered in ("no", "false", "0"):
                return False
            raise ValueError(raw)

        def as_bits(raw: str) -> int:
            bits = int(raw)
            if bits not in (32, 64):
                raise ValueError(raw)
            return bits

        fields["boot_mode"] = take("BOOT_MODE", BootMode)
        fields["partition_table"] = take("PARTITION_TABLE", TableType)
        fields["uefi_bits"] = take("UEFI_BITS", as_bits)
        fields["bootloader"] = take("BOOTLOADER", Bootloader)
        fields["target_disk"] = take("TARGET_DISK", str)
        partitions = {}
        for role in PartitionRole:
            path = take(role.config_key, str)
            if path:
                partitions[role] = path
        fields["partitions"] = partitions
        fields["root_fs"] = take("ROOT_FS", Filesystem)
        fields["scheme"] = take("PARTITION_SCHEME", PartitionScheme)
        fields["cpu_vendor"] = take("CPU_VENDOR", CpuVendor)
        fields["microcode_pkg"] = take("MICROCODE_PKG", str)
        fields["microcode_installed"] = take("MICROCODE_INSTALLED", as_flag)
        fields["auto_partitioned"] = take("AUTO_PARTITIONED", as_flag)
        # Derived from the partition map whenever one is present
        if partitions:
            remaining.pop("SEPARATE_HOME", None)

        return cls(extras=remaining, **{k: v for k, v in fields.items() if v is not None})

    def display_summary(self) -> str:
        """Generates the persisted state summary used by the `status` command."""
        s = typer.style("\nINSTALL CONFIGURATION", fg=typer.colors.BLUE, bold=True) + "\n"
        s += "----------------------------------------\n"
        for key, value in self.to_pairs().items():
            s += f"  {key:<22} {value}\n"
        return s


# --- 5. Run Request and Settings (config.toml) ---

class ProvisionRequest(BaseModel):
    """Operator choices. Any field left unset is asked for interactively."""
    device: Optional[str] = None
    filesystem: Optional[Filesystem] = None
    scheme: Optional[PartitionScheme] = None
    table: Optional[TableType] = None
    swap_gib: Optional[float] = Field(None, gt=0)
    root_gib: Optional[int] = Field(None, gt=0)
    bootloader: Optional[Bootloader] = None
    compat_esp: bool = False
    confirm: Optional[str] = None


class Settings(BaseModel):
    """Locations and limits of a provisioning run."""
    target_root: str = "/mnt"
    state_directory: str = "/tmp"
    config_name: str = ".arch-provision.conf"
    progress_name: str = ".arch-provision.progress"
    scratch_mount: str = "/tmp/btrfs-mount"
    log_directory: str = "logs"
    log_file_name: str = "provision.log"
    reread_retries: int = Field(10, ge=1)
    reread_delay: float = Field(1.0, gt=0)
    command_timeout: float = Field(1800.0, gt=0)
    min_disk_gib: int = Field(20, ge=1)

    @property
    def persistent_directory(self) -> str:
        """Directory inside the target root that survives into the installed system."""
        return str(Path(self.target_root) / "root")


class AppConfig(BaseModel):
    """The top-level model representing the config.toml file."""
    request: ProvisionRequest = Field(default_factory=ProvisionRequest)
    settings: Settings = Field(default_factory=Settings)

    @classmethod
    def load_config_from_file(cls, path: Path) -> "AppConfig":
        """Loads and validates a TOML file against the Pydantic schema."""
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ValueError(f"Error reading configuration file: {e}")

        try:
            data = tomlkit.parse(content)
        except Exception as e:
            raise ValueError(f"Invalid TOML format in file: {e}")

        return cls.model_validate(data.unwrap())
