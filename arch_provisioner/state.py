# arch_provisioner/state.py
"""
Persisted install state shared between separately invoked phases.

Two small files carry everything: a KEY=value configuration and a single-token progress
marker. Both are kept in a transient directory of the live environment and, once the
target root is mounted, under <target>/root so they survive into the installed system.
"""
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from arch_provisioner.config.models import PARTITION_KEYS, InstallConfig, Milestone, Settings
from arch_provisioner.probe import SystemProber
from arch_provisioner.utils.exceptions import ImmutableKeyError, InputValidationError, ProgressRegressionError
from arch_provisioner.utils.logger import RichAppLogger

KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")
VALUE_PATTERN = re.compile(r"^[^\s=]+$")


def _write_atomic(path: Path, content: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(content, encoding="utf-8")
    os.replace(tmp, path)


def parse_pairs(content: str) -> Dict[str, str]:
    """Reads KEY=value lines. Comments, blank and malformed lines are skipped; surrounding quotes are dropped."""
    pairs = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        if KEY_PATTERN.match(key):
            pairs[key] = value
    return pairs


class _TargetAware:
    def __init__(self, settings: Settings, logger: RichAppLogger):
        self.settings = settings
        self.logger = logger

    def target_available(self) -> bool:
        """True once the target root is mounted or already carries /root."""
        return os.path.isdir(self.settings.persistent_directory) or os.path.ismount(self.settings.target_root)

    def _locations(self, name: str) -> List[Path]:
        paths = [Path(self.settings.state_directory) / name]
        if self.target_available():
            paths.append(Path(self.settings.persistent_directory) / name)
        return paths


class ProgressMarker(_TargetAware):
    """The furthest completed milestone. It only ever moves forward."""

    def _paths(self) -> List[Path]:
        return [
            Path(self.settings.state_directory) / self.settings.progress_name,
            Path(self.settings.persistent_directory) / self.settings.progress_name,
        ]

    def current(self) -> Optional[Milestone]:
        found = []
        for path in self._paths():
            if not path.is_file():
                continue
            token = path.read_text(encoding="utf-8").strip()
            if not token:
                continue
            try:
                found.append(Milestone(token))
            except ValueError:
                self.logger.warning(f"Ignoring unknown progress marker '{token}' in {path}")
        return max(found, key=lambda m: m.rank) if found else None

    def is_completed(self, milestone: Milestone) -> bool:
        current = self.current()
        return current is not None and current.rank >= milestone.rank

    def advance(self, milestone: Milestone) -> bool:
        """
        Moves the marker to `milestone`.

        Returns:
            bool: False when the marker already was at `milestone`.

        Raises:
            ProgressRegressionError: The marker is already past `milestone`.
        """
        current = self.current()
        if current is not None:
            if current.rank > milestone.rank:
                raise ProgressRegressionError(current.value, milestone.value)
            if current is milestone:
                self.logger.debug(f"Progress already at '{milestone.value}'.")
                return False

        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        for path in self._locations(self.settings.progress_name):
            _write_atomic(path, milestone.value + "\n")
            with open(path.with_name(path.name + ".log"), "a", encoding="utf-8") as log:
                log.write(f"{stamp} - {milestone.value}\n")
        self.logger.info(f"Progress advanced to '{milestone.value}'.")
        return True

    def history(self) -> List[str]:
        for path in reversed(self._paths()):
            log = path.with_name(path.name + ".log")
            if log.is_file():
                return [line for line in log.read_text(encoding="utf-8").splitlines() if line.strip()]
        return []

    def reset(self):
        for path in self._paths():
            for candidate in (path, path.with_name(path.name + ".log")):
                if candidate.exists():
                    candidate.unlink()
                    self.logger.info(f"Removed {candidate}")


class ConfigStore(_TargetAware):
    """
    Flat KEY=value store. Readers tolerate missing and unknown keys. Writers may add keys
    freely but must not rewrite the resolved partitions, and a writer whose milestone is
    behind the progress marker never overwrites a key that already exists.
    """

    def __init__(self, settings: Settings, logger: RichAppLogger):
        super().__init__(settings, logger)
        self.progress = ProgressMarker(settings, logger)

    @property
    def transient_path(self) -> Path:
        return Path(self.settings.state_directory) / self.settings.config_name

    @property
    def persistent_path(self) -> Path:
        return Path(self.settings.persistent_directory) / self.settings.config_name

    def read_pairs(self) -> Dict[str, str]:
        """Merged view: the copy inside the target root wins over the transient one."""
        pairs: Dict[str, str] = {}
        for path in (self.transient_path, self.persistent_path):
            if path.is_file():
                pairs.update(parse_pairs(path.read_text(encoding="utf-8")))
        return pairs

    def load(self, prober: Optional[SystemProber] = None) -> InstallConfig:
        """
        Reads the persisted configuration. With a prober, facts that can be detected
        again (boot mode, UEFI bitness, CPU vendor, microcode) are filled in when absent.
        """
        config = InstallConfig.from_pairs(self.read_pairs())
        if prober is None:
            return config

        updates = {}
        if config.boot_mode is None:
            updates["boot_mode"] = prober.boot_mode()
        if config.uefi_bits is None:
            bits = prober.uefi_bits()
            if bits:
                updates["uefi_bits"] = bits
        if config.cpu_vendor is None:
            updates["cpu_vendor"] = prober.cpu_vendor()
        vendor = updates.get("cpu_vendor", config.cpu_vendor)
        if config.microcode_pkg is None and vendor is not None and vendor.microcode_package:
            updates["microcode_pkg"] = vendor.microcode_package
        if updates:
            self.logger.info(f"Re-detected missing keys: {', '.join(sorted(updates))}")
        return config.model_copy(update=updates)

    def save(self, config: InstallConfig, milestone: Milestone) -> Dict[str, str]:
        return self.save_pairs(config.to_pairs(), milestone)

    def save_pairs(self, pairs: Dict[str, str], milestone: Milestone) -> Dict[str, str]:
        """
        Merges `pairs` into the stored configuration on behalf of the phase owning `milestone`.

        Returns:
            Dict[str, str]: The configuration as written.
        """
        for key, value in pairs.items():
            if not KEY_PATTERN.match(key):
                raise InputValidationError(f"Invalid configuration key '{key}'.")
            if not VALUE_PATTERN.match(value):
                raise InputValidationError(f"Value for {key} must be a single token without spaces or '=': {value!r}")

        existing = self.read_pairs()
        current = self.progress.current()
        stale_writer = current is not None and current.rank > milestone.rank
        owns_partitions = milestone is Milestone.PARTITIONS_READY and not stale_writer

        merged = dict(existing)
        if owns_partitions and any(key in PARTITION_KEYS for key in pairs):
            # A new layout replaces the previous one entirely
            for key in PARTITION_KEYS:
                if key not in pairs:
                    merged.pop(key, None)

        for key, value in pairs.items():
            if key not in existing or existing[key] == value:
                merged[key] = value
                continue
            if key in PARTITION_KEYS and not owns_partitions:
                raise ImmutableKeyError(key)
            if stale_writer:
                self.logger.warning(f"Keeping {key}={existing[key]}: progress is already at '{current.value}'.")
                continue
            merged[key] = value

        content = "# arch-provision install configuration\n"
        content += f"# Written by phase '{milestone.value}' on {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n"
        content += "".join(f"{key}={value}\n" for key, value in merged.items())

        for path in self._locations(self.settings.config_name):
            _write_atomic(path, content)
            os.chmod(path, 0o600)
            self.logger.debug(f"Configuration written to {path}")
        return merged

    def set_value(self, key: str, value: str, milestone: Milestone) -> Dict[str, str]:
        return self.save_pairs({key: value}, milestone)

    def reset(self):
        """Forgets all persisted state for a fresh start."""
        for path in (self.transient_path, self.persistent_path):
            if path.exists():
                path.unlink()
                self.logger.info(f"Removed {path}")
        self.progress.reset()
