import os
import re
import stat
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from arch_provisioner.config.models import (
    BootMode,
    Bootloader,
    CpuVendor,
    Filesystem,
    InstallConfig,
    Milestone,
    PartitionRole,
    PartitionScheme,
    TableType,
)
from arch_provisioner.probe import SystemProber
from arch_provisioner.state import ConfigStore, parse_pairs
from arch_provisioner.utils.exceptions import ImmutableKeyError, InputValidationError, ProgressRegressionError

# ======= Execute with: pytest tests/test_state.py ========


@pytest.fixture
def store(settings, mock_rich_logger):
    return ConfigStore(settings, mock_rich_logger)


@pytest.fixture
def mounted_target(settings):
    """Simulates a mounted target root by creating <target>/root."""
    os.makedirs(settings.persistent_directory)
    return Path(settings.persistent_directory)


def _config(**overrides):
    values = dict(
        boot_mode=BootMode.UEFI,
        partition_table=TableType.GPT,
        uefi_bits=64,
        bootloader=Bootloader.SYSTEMD_BOOT,
        target_disk="/dev/sda",
        partitions={PartitionRole.EFI: "/dev/sda1", PartitionRole.SWAP: "/dev/sda2", PartitionRole.ROOT: "/dev/sda3"},
        root_fs=Filesystem.BTRFS,
        scheme=PartitionScheme.BTRFS_SUBVOLUMES,
        cpu_vendor=CpuVendor.INTEL,
        microcode_pkg="intel-ucode",
        microcode_installed=False,
        auto_partitioned=True,
    )
    values.update(overrides)
    return InstallConfig(**values)


def test_parse_pairs_is_tolerant():
    pairs = parse_pairs(
        "# comment\n"
        "\n"
        'BOOT_MODE="UEFI"\n'
        "ROOT_PARTITION='/dev/sda3'\n"
        "  TARGET_DISK = /dev/sda  \n"
        "garbage line\n"
        "lowercase=ignored\n"
        "EMPTY=\n"
    )
    assert pairs == {"BOOT_MODE": "UEFI", "ROOT_PARTITION": "/dev/sda3", "TARGET_DISK": "/dev/sda", "EMPTY": ""}


def test_save_and_load_round_trip(store, mounted_target):
    store.save(_config(), Milestone.PARTITIONS_READY)

    assert store.transient_path.is_file()
    assert store.persistent_path.is_file()
    assert stat.S_IMODE(os.stat(store.persistent_path).st_mode) == 0o600
    assert store.load() == _config()

    content = store.persistent_path.read_text(encoding="utf-8")
    assert content.startswith("#")
    assert "ROOT_PARTITION=/dev/sda3\n" in content
    assert "AUTO_PARTITIONED=yes\n" in content


def test_save_before_target_is_mounted_uses_transient_only(store):
    store.save(_config(), Milestone.PARTITIONS_READY)
    assert store.transient_path.is_file()
    assert not store.persistent_path.exists()


def test_persistent_copy_wins(store, mounted_target):
    store.transient_path.parent.mkdir(parents=True, exist_ok=True)
    store.transient_path.write_text("HOSTNAME=old\nLOCALE=en_US.UTF-8\n", encoding="utf-8")
    store.persistent_path.write_text("HOSTNAME=new\n", encoding="utf-8")

    assert store.read_pairs() == {"HOSTNAME": "new", "LOCALE": "en_US.UTF-8"}


def test_missing_file_loads_empty_config(store):
    config = store.load()
    assert config == InstallConfig()


def test_load_redetects_missing_facts(store):
    store.save_pairs({"TARGET_DISK": "/dev/sda", "ROOT_PARTITION": "/dev/sda3"}, Milestone.PARTITIONS_READY)
    prober = MagicMock(spec=SystemProber)
    prober.boot_mode.return_value = BootMode.UEFI
    prober.uefi_bits.return_value = 64
    prober.cpu_vendor.return_value = CpuVendor.AMD

    config = store.load(prober)

    assert config.boot_mode is BootMode.UEFI
    assert config.uefi_bits == 64
    assert config.cpu_vendor is CpuVendor.AMD
    assert config.microcode_pkg == "amd-ucode"
    assert config.partitions == {PartitionRole.ROOT: "/dev/sda3"}


def test_unknown_keys_survive_rewrites(store):
    store.set_value("HOSTNAME", "archbox", Milestone.SYSTEM_CONFIGURED)
    store.save(_config(), Milestone.PARTITIONS_READY)
    assert store.read_pairs()["HOSTNAME"] == "archbox"
    assert store.load().extras == {"HOSTNAME": "archbox"}


@pytest.mark.parametrize("key, value", [
    ("hostname", "box"),
    ("1KEY", "box"),
    ("HOSTNAME", "two words"),
    ("HOSTNAME", "a=b"),
    ("HOSTNAME", ""),
])
def test_rejects_malformed_pairs(store, key, value):
    with pytest.raises(InputValidationError):
        store.set_value(key, value, Milestone.SYSTEM_CONFIGURED)


def test_partition_keys_are_immutable_downstream(store):
    store.save(_config(), Milestone.PARTITIONS_READY)

    with pytest.raises(ImmutableKeyError, match="ROOT_PARTITION"):
        store.set_value("ROOT_PARTITION", "/dev/sdb3", Milestone.SYSTEM_CONFIGURED)
    with pytest.raises(ImmutableKeyError, match="TARGET_DISK"):
        store.set_value("TARGET_DISK", "/dev/sdb", Milestone.BASE_INSTALLED)

    # Writing the same value back is harmless
    store.set_value("ROOT_PARTITION", "/dev/sda3", Milestone.SYSTEM_CONFIGURED)
    assert store.read_pairs()["ROOT_PARTITION"] == "/dev/sda3"


def test_repartitioning_may_replace_partition_keys(store):
    store.save(_config(), Milestone.PARTITIONS_READY)
    store.save(_config(target_disk="/dev/nvme0n1", partitions={PartitionRole.ROOT: "/dev/nvme0n1p3"}), Milestone.PARTITIONS_READY)
    pairs = store.read_pairs()
    assert pairs["TARGET_DISK"] == "/dev/nvme0n1"
    assert pairs["ROOT_PARTITION"] == "/dev/nvme0n1p3"
    # Partitions of the old layout are gone
    assert "EFI_PARTITION" not in pairs
    assert "SWAP_PARTITION" not in pairs


def test_stale_writer_keeps_existing_values(store):
    store.save(_config(), Milestone.PARTITIONS_READY)
    store.set_value("HOSTNAME", "archbox", Milestone.SYSTEM_CONFIGURED)
    store.progress.advance(Milestone.SYSTEM_CONFIGURED)

    store.save_pairs({"HOSTNAME": "other", "EDITOR": "vim"}, Milestone.BASE_INSTALLED)

    pairs = store.read_pairs()
    assert pairs["HOSTNAME"] == "archbox"
    assert pairs["EDITOR"] == "vim"

    with pytest.raises(ImmutableKeyError):
        store.save(_config(target_disk="/dev/sdb"), Milestone.PARTITIONS_READY)


def test_reset_removes_everything(store, mounted_target):
    store.save(_config(), Milestone.PARTITIONS_READY)
    store.progress.advance(Milestone.PARTITIONS_READY)

    store.reset()

    assert store.read_pairs() == {}
    assert store.progress.current() is None
    assert store.progress.history() == []


# --- Progress marker ---

def test_progress_starts_empty(store):
    assert store.progress.current() is None
    assert not store.progress.is_completed(Milestone.PARTITIONS_READY)


def test_progress_advances_and_records_history(store, mounted_target):
    progress = store.progress

    assert progress.advance(Milestone.PARTITIONS_READY)
    assert progress.advance(Milestone.BASE_INSTALLED)

    assert progress.current() is Milestone.BASE_INSTALLED
    assert progress.is_completed(Milestone.PARTITIONS_READY)
    assert not progress.is_completed(Milestone.SYSTEM_CONFIGURED)
    marker = mounted_target / ".arch-provision.progress"
    assert marker.read_text(encoding="utf-8").strip() == "base-installed"

    history = progress.history()
    assert len(history) == 2
    assert re.match(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2} - partitions-ready$", history[0])
    assert history[1].endswith(" - base-installed")


def test_progress_never_moves_backward(store):
    store.progress.advance(Milestone.SYSTEM_CONFIGURED)

    with pytest.raises(ProgressRegressionError) as excinfo:
        store.progress.advance(Milestone.BASE_INSTALLED)
    assert excinfo.value.exit_code == 6
    assert store.progress.current() is Milestone.SYSTEM_CONFIGURED

    # Same milestone again is a no-op
    assert store.progress.advance(Milestone.SYSTEM_CONFIGURED) is False
    assert len(store.progress.history()) == 1


def test_progress_reads_furthest_of_both_locations(store, settings, mounted_target, mock_rich_logger):
    transient = Path(settings.state_directory) / settings.progress_name
    transient.parent.mkdir(parents=True, exist_ok=True)
    transient.write_text("desktop-installed\n", encoding="utf-8")
    (mounted_target / settings.progress_name).write_text("base-installed\n", encoding="utf-8")

    assert store.progress.current() is Milestone.DESKTOP_INSTALLED

    transient.write_text("no-such-step\n", encoding="utf-8")
    assert store.progress.current() is Milestone.BASE_INSTALLED
    mock_rich_logger.warning.assert_called()
