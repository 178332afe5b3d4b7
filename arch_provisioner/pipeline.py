# arch_provisioner/pipeline.py
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Sequence

from pydantic import ValidationError

from arch_provisioner import planner
from arch_provisioner.config.models import (
    BootContext,
    Bootloader,
    CpuVendor,
    Filesystem,
    InstallConfig,
    Milestone,
    PartitionPlan,
    PartitionScheme,
    ProvisionRequest,
    ResolvedPartitions,
    Settings,
    TableType,
)
from arch_provisioner.executors.disk import DiskManager
from arch_provisioner.formatter import Formatter, MountProfile
from arch_provisioner.mount import MountOrchestrator
from arch_provisioner.partitioner import Partitioner
from arch_provisioner.probe import SystemProber
from arch_provisioner.safety import ClearedDevice, SafetyGuard
from arch_provisioner.state import ConfigStore
from arch_provisioner.utils.exceptions import DestructiveGuardError, InputValidationError
from arch_provisioner.utils.executor import Executor


class Operator(Protocol):
    """Whoever answers the questions of a run: a person at the TUI or a scripted answer set."""

    def confirm(self, message: str) -> bool:
        ...

    def ask_phrase(self, prompt: str) -> str:
        ...


@dataclass
class ProvisionState:
    """Everything a provisioning run has learned so far. Each step fills in its part."""
    request: ProvisionRequest
    settings: Settings
    boot: Optional[BootContext] = None
    ram_gib: Optional[int] = None
    cpu_vendor: Optional[CpuVendor] = None
    clearance: Optional[ClearedDevice] = None
    plan: Optional[PartitionPlan] = None
    resolved: Optional[ResolvedPartitions] = None
    profile: Optional[MountProfile] = None
    mounted: List[str] = field(default_factory=list)
    config: Optional[InstallConfig] = None


@dataclass(frozen=True)
class Phase:
    name: str
    milestone: Milestone
    action: Callable[[ProvisionState], None]


class PhasePipeline:
    """
    Runs phases in order. A phase whose milestone is already reached is skipped;
    a phase that completes moves the progress marker to its milestone.
    """

    def __init__(self, store: ConfigStore, logger, dryrun: bool = False):
        self.store = store
        self.logger = logger
        self.dryrun = dryrun

    def run(self, phases: Sequence[Phase], state: ProvisionState) -> List[str]:
        """
        Returns:
            List[str]: Names of the phases that actually ran.
        """
        executed = []
        for phase in phases:
            if self.store.progress.is_completed(phase.milestone):
                self.logger.info(f"Skipping '{phase.name}': progress already at or past '{phase.milestone.value}'.")
                continue
            self.logger.section(phase.name)
            phase.action(state)
            if self.dryrun:
                self.logger.info(f"DRY RUN: progress would advance to '{phase.milestone.value}'.")
            else:
                self.store.progress.advance(phase.milestone)
            executed.append(phase.name)
        return executed


class ProvisioningSession:
    """
    The destructive provisioning phase: probe, guard, plan, confirm, partition,
    format, mount and persist. Any failure or interrupt unmounts what was mounted.
    """

    def __init__(self,
                 prober: SystemProber,
                 guard: SafetyGuard,
                 partitioner: Partitioner,
                 formatter: Formatter,
                 mounter: MountOrchestrator,
                 store: ConfigStore,
                 operator: Operator,
                 dryrun: bool = False):
        self.prober = prober
        self.guard = guard
        self.partitioner = partitioner
        self.formatter = formatter
        self.mounter = mounter
        self.store = store
        self.operator = operator
        self.dryrun = dryrun
        self.logger = guard.logger

    @classmethod
    def create(cls, executor: Executor, settings: Settings, operator: Operator, sys_root: str = "/") -> "ProvisioningSession":
        disk_manager = DiskManager(executor)
        prober = SystemProber(executor, sys_root=sys_root)
        return cls(
            prober=prober,
            guard=SafetyGuard(prober, disk_manager, min_disk_gib=settings.min_disk_gib),
            partitioner=Partitioner(disk_manager, reread_retries=settings.reread_retries, reread_delay=settings.reread_delay),
            formatter=Formatter(disk_manager, scratch_mount=settings.scratch_mount),
            mounter=MountOrchestrator(disk_manager, target_root=settings.target_root),
            store=ConfigStore(settings, executor.logger),
            operator=operator,
            dryrun=executor.dryrun,
        )

    def phase(self) -> Phase:
        return Phase("Provision target disk", Milestone.PARTITIONS_READY, self.run)

    def run(self, state: ProvisionState):
        steps = [self.probe, self.check_device, self.make_plan, self.confirm, self.partition, self.format, self.mount, self.persist]
        try:
            for step in steps:
                step(state)
        except BaseException:
            self.logger.error("Provisioning aborted, running cleanup.")
            self.mounter.cleanup()
            raise

    # --- Steps ---

    def probe(self, state: ProvisionState):
        request = state.request
        mode = self.prober.boot_mode()
        try:
            state.boot = BootContext(mode=mode, table=request.table or TableType.GPT, uefi_bits=self.prober.uefi_bits())
        except ValidationError as e:
            raise InputValidationError(f"Invalid boot configuration: {e.errors()[0]['msg']}")
        bootloader = request.bootloader or Bootloader.GRUB
        if not bootloader.supports(mode):
            raise InputValidationError(f"{bootloader.value} requires UEFI, this system booted in {mode.value} mode.")
        state.ram_gib = self.prober.ram_gib()
        state.cpu_vendor = self.prober.cpu_vendor()
        self.logger.info(f"Boot mode {mode.value}, {state.ram_gib} GiB RAM, CPU vendor {state.cpu_vendor.value}.")

    def check_device(self, state: ProvisionState):
        if not state.request.device:
            raise InputValidationError("No target device selected.")
        state.clearance = self.guard.validate(state.request.device).unwrap()

    def make_plan(self, state: ProvisionState):
        request = state.request
        state.plan = planner.plan(
            disk=state.clearance.disk,
            boot=state.boot,
            ram_gib=state.ram_gib,
            scheme=request.scheme or PartitionScheme.SINGLE,
            filesystem=request.filesystem or Filesystem.EXT4,
            swap_gib=request.swap_gib,
            root_gib=request.root_gib,
            compat_esp=request.compat_esp,
        )
        self.logger.info(state.plan.display_summary())

    def confirm(self, state: ProvisionState):
        plan = state.plan
        for notice in plan.notices:
            self.logger.notice(notice)
        if plan.requires_confirmation and not self.operator.confirm("Continue with the adjusted layout?"):
            raise DestructiveGuardError("Adjusted layout was not accepted; nothing was changed.")
        phrase = self.operator.ask_phrase(f"ALL DATA ON {plan.disk.path} WILL BE DESTROYED. Type the confirmation phrase to continue")
        state.clearance = self.guard.confirm_destruction(state.clearance, phrase)

    def partition(self, state: ProvisionState):
        state.resolved = self.partitioner.partition(state.plan, state.clearance)

    def format(self, state: ProvisionState):
        state.profile = self.formatter.format(state.plan, state.resolved)

    def mount(self, state: ProvisionState):
        state.mounted = self.mounter.mount(state.resolved, state.plan.scheme, state.profile)

    def persist(self, state: ProvisionState):
        vendor = state.cpu_vendor or CpuVendor.UNKNOWN
        state.config = InstallConfig(
            boot_mode=state.boot.mode,
            partition_table=state.boot.table,
            uefi_bits=state.boot.uefi_bits,
            bootloader=state.request.bootloader or Bootloader.GRUB,
            target_disk=state.resolved.disk,
            partitions=dict(state.resolved.partitions),
            root_fs=state.plan.filesystem,
            scheme=state.plan.scheme,
            cpu_vendor=vendor,
            microcode_pkg=vendor.microcode_package,
            microcode_installed=False,
            auto_partitioned=True,
        )
        if self.dryrun:
            self.logger.info(state.config.display_summary())
            self.logger.info("DRY RUN: configuration not written.")
            return
        self.store.save(state.config, Milestone.PARTITIONS_READY)
