# arch_provisioner/probe.py
import json
import os
import re
from typing import List, Optional, Set

from arch_provisioner.config.models import BootMode, CpuVendor, DiskSpec
from arch_provisioner.utils.exceptions import ShellCommandError
from arch_provisioner.utils.executor import Executor

LSBLK_DISK_COLUMNS = "NAME,PATH,SIZE,ROTA,MODEL,TYPE"


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip() in ("1", "true")


class SystemProber:
    """
    Reads facts about the live environment: firmware mode, RAM, CPU, disks,
    and which disks must never be touched because the running system lives on them.

    All files are read relative to `sys_root` so the prober can be pointed at a fake tree.
    Commands go through `Executor.execute_command`; nothing here changes the system.
    """

    def __init__(self, executor: Executor, sys_root: str = "/"):
        self.executor = executor
        self.logger = executor.logger
        self.sys_root = sys_root

    def _path(self, path: str) -> str:
        return os.path.join(self.sys_root, path.lstrip("/"))

    def _read(self, path: str) -> Optional[str]:
        try:
            with open(self._path(path), "r", encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError:
            return None

    def _query(self, command: List[str]) -> str:
        """Runs a read-only command and returns stdout, or '' when it fails."""
        try:
            exit_code, stdout, _ = self.executor.execute_command(command, check=False)
        except ShellCommandError as e:
            self.logger.debug(f"Probe command failed: {e}")
            return ""
        return stdout if exit_code == 0 else ""

    # --- FIRMWARE / HARDWARE ---

    def boot_mode(self) -> BootMode:
        if os.path.isdir(self._path("/sys/firmware/efi/efivars")) or os.path.isdir(self._path("/sys/firmware/efi")):
            return BootMode.UEFI
        return BootMode.BIOS

    def uefi_bits(self) -> Optional[int]:
        content = self._read("/sys/firmware/efi/fw_platform_size")
        if content is None:
            return None
        value = content.strip()
        return int(value) if value in ("32", "64") else None

    def ram_gib(self) -> int:
        """Total RAM in whole GiB, rounded down like `free -g`."""
        content = self._read("/proc/meminfo") or ""
        match = re.search(r"^MemTotal:\s+(\d+)\s+kB", content, re.MULTILINE)
        if not match:
            self.logger.warning("Could not read MemTotal from /proc/meminfo, assuming 0 GiB of RAM.")
            return 0
        return int(match.group(1)) // (1024 * 1024)

    def cpu_vendor(self) -> CpuVendor:
        content = self._read("/proc/cpuinfo") or ""
        if "GenuineIntel" in content:
            return CpuVendor.INTEL
        if "AuthenticAMD" in content:
            return CpuVendor.AMD
        return CpuVendor.UNKNOWN

    # --- DISKS ---

    def _parse_disks(self, stdout: str) -> List[DiskSpec]:
        if not stdout.strip():
            return []
        try:
            devices = json.loads(stdout).get("blockdevices", [])
        except ValueError as e:
            self.logger.warning(f"Unable to parse lsblk output: {e}")
            return []
        disks = []
        for device in devices:
            if device.get("type") != "disk":
                continue
            disks.append(DiskSpec(
                path=device.get("path") or f"/dev/{device['name']}",
                size_bytes=int(device.get("size") or 0),
                rotational=_as_bool(device.get("rota")),
                model=(device.get("model") or "").strip(),
            ))
        return disks

    def disks(self) -> List[DiskSpec]:
        """Every whole disk the kernel knows about."""
        return self._parse_disks(self._query(["lsblk", "-J", "-b", "-d", "-o", LSBLK_DISK_COLUMNS]))

    def disk(self, path: str) -> Optional[DiskSpec]:
        found = self._parse_disks(self._query(["lsblk", "-J", "-b", "-d", "-o", LSBLK_DISK_COLUMNS, path]))
        return found[0] if found else None

    def children(self, device: str) -> List[str]:
        """Partition nodes that lsblk reports below `device`."""
        paths = []
        for line in self._query(["lsblk", "-lnp", "-o", "PATH,TYPE", device]).splitlines():
            fields = line.split()
            if len(fields) == 2 and fields[0] != device and fields[1] == "part":
                paths.append(fields[0])
        return paths

    def parent_disk(self, source: str) -> Optional[str]:
        source = re.sub(r"\[.*\]$", "", source.strip())
        if not source.startswith("/dev/"):
            return None
        parent = self._query(["lsblk", "-no", "PKNAME", source]).strip().splitlines()
        if parent and parent[0].strip():
            return f"/dev/{parent[0].strip()}"
        return source

    # --- MOUNTS / SWAP ---

    def mount_sources(self) -> dict:
        """Mount point -> source device, from /proc/mounts."""
        table = {}
        for line in (self._read("/proc/mounts") or "").splitlines():
            fields = line.split()
            if len(fields) >= 2:
                table[fields[1]] = fields[0]
        return table

    def mounted_devices(self) -> Set[str]:
        return set(self.mount_sources().values())

    def active_swaps(self) -> Set[str]:
        swaps = set()
        for line in (self._read("/proc/swaps") or "").splitlines()[1:]:
            fields = line.split()
            if fields:
                swaps.add(fields[0])
        return swaps

    def _findmnt_source(self, target: str) -> Optional[str]:
        source = self._query(["findmnt", "-n", "-o", "SOURCE", target]).strip()
        return source or None

    def root_disk(self) -> Optional[str]:
        """Disk holding the running root filesystem, if it is a real block device."""
        source = self._findmnt_source("/")
        return self.parent_disk(source) if source else None

    def boot_disk(self) -> Optional[str]:
        """Disk holding a separately mounted /boot."""
        boot_source = self._findmnt_source("/boot")
        if not boot_source or boot_source == self._findmnt_source("/"):
            return None
        return self.parent_disk(boot_source)

    def is_live_environment(self) -> bool:
        if os.path.isdir(self._path("/run/archiso")):
            return True
        return "archiso" in (self._read("/proc/cmdline") or "")

    def live_media_disks(self) -> Set[str]:
        """Disks that carry the live boot medium. Empty outside a live environment."""
        if not self.is_live_environment():
            return set()
        live = set()
        bootmnt = self._findmnt_source("/run/archiso/bootmnt")
        if bootmnt:
            parent = self.parent_disk(bootmnt)
            if parent:
                live.add(parent)
        for disk in self.disks():
            if "archiso" in self._query(["blkid", disk.path]).lower():
                live.add(disk.path)
        return live
