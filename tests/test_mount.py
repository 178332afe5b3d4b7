import pytest

from arch_provisioner import planner
from arch_provisioner.config.models import BootContext, BootMode, Filesystem, PartitionScheme, TableType
from arch_provisioner.formatter import FAT_MOUNT_OPTIONS, MOUNT_OPTIONS, mount_options_for
from arch_provisioner.mount import MountOrchestrator
from arch_provisioner.partitioner import resolve_partitions
from arch_provisioner.utils.exceptions import MountError

# ======= Execute with: pytest tests/test_mount.py ========

UEFI = BootContext(mode=BootMode.UEFI)


@pytest.fixture
def mounter(disk_manager):
    return MountOrchestrator(disk_manager, target_root="/mnt")


def _resolved(disk, scheme, filesystem, boot=UEFI):
    plan = planner.plan(disk, boot, ram_gib=8, scheme=scheme, filesystem=filesystem)
    return resolve_partitions(plan), mount_options_for(filesystem)


def test_mounts_single_layout(mounter, fake_executor, disk_500gb):
    resolved, profile = _resolved(disk_500gb, PartitionScheme.SINGLE, Filesystem.EXT4)

    mounted = mounter.mount(resolved, PartitionScheme.SINGLE, profile)

    assert mounted == ["/mnt", "/mnt/boot"]
    assert ["mount", "-o", MOUNT_OPTIONS[Filesystem.EXT4], "/dev/sda3", "/mnt"] in fake_executor.commands
    assert ["mount", "-o", FAT_MOUNT_OPTIONS, "/dev/sda1", "/mnt/boot"] in fake_executor.commands
    assert fake_executor.commands[-1] == ["swapon", "/dev/sda2"]
    assert fake_executor.swaps == {"/dev/sda2"}


def test_mounts_btrfs_subvolumes(mounter, fake_executor, nvme_disk):
    resolved, profile = _resolved(nvme_disk, PartitionScheme.BTRFS_SUBVOLUMES, Filesystem.BTRFS)

    mounted = mounter.mount(resolved, PartitionScheme.BTRFS_SUBVOLUMES, profile)

    assert mounted == ["/mnt", "/mnt/home", "/mnt/var", "/mnt/tmp", "/mnt/.snapshots", "/mnt/boot"]
    mounts = [c for c in fake_executor.commands if c[0] == "mount"]
    options = MOUNT_OPTIONS[Filesystem.BTRFS]
    assert mounts[0] == ["mount", "-o", f"subvol=@,{options}", "/dev/nvme0n1p3", "/mnt"]
    assert mounts[1] == ["mount", "-o", f"subvol=@home,{options}", "/dev/nvme0n1p3", "/mnt/home"]
    assert mounts[-1] == ["mount", "-o", FAT_MOUNT_OPTIONS, "/dev/nvme0n1p1", "/mnt/boot"]


def test_mounts_separate_home(mounter, fake_executor, disk_500gb):
    resolved, profile = _resolved(disk_500gb, PartitionScheme.SEPARATE_HOME, Filesystem.XFS)

    mounted = mounter.mount(resolved, PartitionScheme.SEPARATE_HOME, profile)

    assert mounted == ["/mnt", "/mnt/home", "/mnt/boot"]
    assert ["mount", "-o", MOUNT_OPTIONS[Filesystem.XFS], "/dev/sda4", "/mnt/home"] in fake_executor.commands


def test_mbr_boot_partition_mounted_at_boot(mounter, fake_executor, disk_500gb):
    boot = BootContext(mode=BootMode.BIOS, table=TableType.MBR)
    resolved, profile = _resolved(disk_500gb, PartitionScheme.SINGLE, Filesystem.EXT4, boot=boot)

    assert mounter.mount(resolved, PartitionScheme.SINGLE, profile) == ["/mnt", "/mnt/boot"]
    assert ["mount", "-o", FAT_MOUNT_OPTIONS, "/dev/sda1", "/mnt/boot"] in fake_executor.commands


def test_bios_gpt_without_esp_has_no_boot_mount(mounter, disk_500gb):
    resolved, profile = _resolved(disk_500gb, PartitionScheme.SINGLE, Filesystem.EXT4, boot=BootContext(mode=BootMode.BIOS))
    assert mounter.mount(resolved, PartitionScheme.SINGLE, profile) == ["/mnt"]


def test_teardown_order(mounter, disk_500gb, nvme_disk):
    resolved, _ = _resolved(nvme_disk, PartitionScheme.BTRFS_SUBVOLUMES, Filesystem.BTRFS)
    assert mounter.teardown_order(resolved, PartitionScheme.BTRFS_SUBVOLUMES) == [
        "/mnt/home", "/mnt/boot", "/mnt/.snapshots", "/mnt/tmp", "/mnt/var", "/mnt",
    ]

    resolved, _ = _resolved(disk_500gb, PartitionScheme.SEPARATE_HOME, Filesystem.EXT4)
    assert mounter.teardown_order(resolved, PartitionScheme.SEPARATE_HOME) == ["/mnt/home", "/mnt/boot", "/mnt"]


def test_mount_is_idempotent(mounter, fake_executor, nvme_disk):
    resolved, profile = _resolved(nvme_disk, PartitionScheme.BTRFS_SUBVOLUMES, Filesystem.BTRFS)

    first = mounter.mount(resolved, PartitionScheme.BTRFS_SUBVOLUMES, profile)
    table_after_first = list(fake_executor.mounted)
    fake_executor.commands.clear()

    second = mounter.mount(resolved, PartitionScheme.BTRFS_SUBVOLUMES, profile)

    assert second == first
    assert fake_executor.mounted == table_after_first
    assert fake_executor.swaps == {"/dev/nvme0n1p2"}
    unmounts = [c[-1] for c in fake_executor.commands if c[0] == "umount"]
    assert unmounts == ["/mnt/home", "/mnt/boot", "/mnt/.snapshots", "/mnt/tmp", "/mnt/var", "/mnt"]
    assert ["swapoff", "/dev/nvme0n1p2"] in fake_executor.commands


def test_leftover_mounts_from_another_run_are_removed(mounter, fake_executor, disk_500gb):
    resolved, profile = _resolved(disk_500gb, PartitionScheme.SINGLE, Filesystem.EXT4)
    fake_executor.mounted.extend(["/mnt", "/mnt/boot"])

    mounter.mount(resolved, PartitionScheme.SINGLE, profile)

    assert fake_executor.commands[:2] == [["umount", "/mnt/boot"], ["umount", "/mnt"]]
    assert sorted(fake_executor.mounted) == ["/mnt", "/mnt/boot"]


def test_failed_mount_raises_and_cleanup_unwinds(mounter, fake_executor, disk_500gb):
    resolved, profile = _resolved(disk_500gb, PartitionScheme.SEPARATE_HOME, Filesystem.EXT4)
    fake_executor.fail_when.append(lambda command: command[0] == "mount" and command[-1] == "/mnt/boot")

    with pytest.raises(MountError) as excinfo:
        mounter.mount(resolved, PartitionScheme.SEPARATE_HOME, profile)
    assert excinfo.value.step == "mount /mnt/boot"

    fake_executor.commands.clear()
    mounter.cleanup()

    assert fake_executor.commands == [["umount", "/mnt/home"], ["umount", "/mnt"]]
    assert fake_executor.mounted == []


def test_cleanup_never_raises(mounter, fake_executor, mock_rich_logger, disk_500gb):
    resolved, profile = _resolved(disk_500gb, PartitionScheme.SINGLE, Filesystem.EXT4)
    mounter.mount(resolved, PartitionScheme.SINGLE, profile)
    fake_executor.fail_when.append(lambda command: command[0] in ("umount", "swapoff"))

    mounter.cleanup()

    assert ["umount", "-l", "/mnt"] in fake_executor.commands
    assert ["swapoff", "/dev/sda2"] in fake_executor.commands
    mock_rich_logger.warning.assert_called()
    # Nothing is tracked any more, a second cleanup is a no-op
    fake_executor.commands.clear()
    mounter.cleanup()
    assert fake_executor.commands == []


def test_cleanup_without_mounts_does_nothing(mounter, fake_executor):
    mounter.cleanup()
    assert fake_executor.commands == []


def test_teardown_deactivates_any_swap_on_the_target_disk(mounter, fake_executor, disk_500gb):
    # A previous layout used the third partition as swap
    fake_executor.swaps.add("/dev/sda3")
    resolved, profile = _resolved(disk_500gb, PartitionScheme.SINGLE, Filesystem.EXT4)

    mounter.mount(resolved, PartitionScheme.SINGLE, profile)

    assert fake_executor.commands.index(["swapoff", "/dev/sda3"]) < fake_executor.commands.index(
        ["mount", "-o", MOUNT_OPTIONS[Filesystem.EXT4], "/dev/sda3", "/mnt"])
    assert fake_executor.swaps == {"/dev/sda2"}
