"""Boot state machine for the RAM root migration.

Stages run strictly in order on the boot thread:

    INIT -> RESOLVE_ROOT -> PLAN -> PROVISION -> FORMAT -> COPY
         -> REWRITE -> HANDOFF -> DONE

Every stage reports a StageOutcome. Retryable outcomes are retried a
bounded number of times; anything else sends the attempt to FALLBACK,
which tears down whatever this attempt created and leaves the original
boot path untouched. DONE is only reached once the handoff record has
been written.

Example:
    >>> machine = BootStateMachine(load_settings(), KernelCmdline.read())
    >>> result = machine.run()
    >>> result is SetupResult.HANDOFF
"""

from __future__ import annotations

import os
import subprocess
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from zramroot.boot import handoff
from zramroot.boot.cmdline import KernelCmdline
from zramroot.config.settings import Settings
from zramroot.domain.models import (
    CapacityPlan,
    CopyReport,
    HandoffRecord,
    MigrationStage,
    MigrationState,
    OutcomeStatus,
    RamDevice,
    ResolvedDevice,
    RootSpec,
    StageOutcome,
)
from zramroot.logging import (
    EventLogger,
    LoggerFactory,
    attach_physical_log,
    detach_physical_log,
    operation_context,
)
from zramroot.storage import blockinfo, format as fs_format, mount, system
from zramroot.storage.capacity import Margins, explicit_plan, plan_capacity, swap_size_mib
from zramroot.storage.copy import CopyOptions, MigrationCopy, create_skeleton
from zramroot.storage.exceptions import (
    MigrationError,
    MountError,
    RewriteError,
    RootSpecUnresolvableError,
)
from zramroot.storage.fstab import (
    PHYSICAL_ROOT_MOUNT,
    FstabChanges,
    detect_volume_group,
    prepare_mount_points,
    rewrite_fstab,
)
from zramroot.storage.resolver import DeviceResolver, effective_wait_timeout
from zramroot.storage.retry import RetryPolicy, retry_call
from zramroot.storage.zram import ZramProvisioner, required_device_count


REAL_ROOT_MOUNT = "/mnt/real_root_rw"
RAM_ROOT_MOUNT = "/zram_root"

STAGE_RETRY_POLICY = RetryPolicy(attempts=3, delay=1.0)

# Failures a stage may raise; anything else is a bug and propagates
STAGE_ERRORS = (MigrationError, OSError, subprocess.SubprocessError, ValueError)


class SetupResult(Enum):
    SKIPPED = "skipped"
    HANDOFF = "handoff"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class BootPaths:
    """Where the engine mounts things and leaves its records."""

    physical_root: str = REAL_ROOT_MOUNT
    ram_root: str = RAM_ROOT_MOUNT
    kept_physical_root: str = PHYSICAL_ROOT_MOUNT
    handoff_files: tuple[Path, ...] = handoff.HANDOFF_PATHS
    sysroot_dropin: Path = handoff.SYSROOT_DROPIN
    systemd_runtime_dir: Path = system.SYSTEMD_RUNTIME_DIR


class _RetryableStage(Exception):
    def __init__(self, outcome: StageOutcome):
        self.outcome = outcome
        super().__init__(str(outcome.error))


@dataclass
class _Collaborators:
    resolver_factory: Callable[..., DeviceResolver] = DeviceResolver
    provisioner: ZramProvisioner = field(default_factory=ZramProvisioner)
    copy_factory: Callable[..., MigrationCopy] = MigrationCopy
    memory: Callable[[], system.MemoryInfo] = system.get_memory_info
    used_space: Callable[[str], int] = system.get_used_space_mib
    cpu_count: Callable[[], int] = system.get_cpu_count
    boot_id: Callable[[], Optional[str]] = system.read_boot_id


class BootStateMachine:
    """Run one migration attempt.

    The state record is owned by this object and only updated between
    stages. Components report through exceptions, which ``_run_stage``
    converts into StageOutcomes.
    """

    def __init__(
        self,
        settings: Settings,
        cmdline: KernelCmdline,
        *,
        paths: Optional[BootPaths] = None,
        stage_policy: RetryPolicy = STAGE_RETRY_POLICY,
        sleep: Callable[[float], None] = time.sleep,
        **collaborators: Any,
    ):
        self.log = LoggerFactory.for_boot()
        self.settings = self._validated(settings)
        self.cmdline = cmdline
        self.paths = paths or BootPaths()
        self.stage_policy = stage_policy
        self.tools = _Collaborators(**collaborators)
        self._sleep = sleep

        self.state = MigrationState()
        self.device: Optional[ResolvedDevice] = None
        self.plan: Optional[CapacityPlan] = None
        self.root_device: Optional[RamDevice] = None
        self.swap_device: Optional[RamDevice] = None
        self.copy_report: Optional[CopyReport] = None
        self.bind_paths: list[str] = []
        self.record: Optional[HandoffRecord] = None

    def _validated(self, settings: Settings) -> Settings:
        if settings.zram_swap_enabled and settings.zram_swap_device_num == settings.zram_device_num:
            bumped = settings.zram_swap_device_num + 1
            self.log.warning(
                f"ZRAM_SWAP_DEVICE_NUM equals ZRAM_DEVICE_NUM ({settings.zram_device_num}), "
                f"using {bumped} for swap"
            )
            return replace(settings, zram_swap_device_num=bumped)
        return settings

    # ==========================================================================
    # Orchestration
    # ==========================================================================

    def run(self) -> SetupResult:
        trigger = self.settings.trigger_parameter
        if not self.cmdline.has(trigger):
            self.log.debug(f"Kernel parameter '{trigger}' not present, skipping")
            return SetupResult.SKIPPED

        self.log.info("zramroot triggered, moving root filesystem to RAM")
        stages = (
            (MigrationStage.RESOLVE_ROOT, self._resolve_root),
            (MigrationStage.PLAN, self._plan),
            (MigrationStage.PROVISION, self._provision),
            (MigrationStage.FORMAT, self._format),
            (MigrationStage.COPY, self._copy),
            (MigrationStage.REWRITE, self._rewrite),
            (MigrationStage.HANDOFF, self._handoff),
        )
        for stage, step in stages:
            self._transition(stage)
            outcome = self._run_stage(stage, step)
            if not outcome.ok:
                self._fall_back(outcome)
                return SetupResult.FALLBACK

        outcome = self._attempt_stage(MigrationStage.DONE, self._write_handoff)
        if not outcome.ok:
            self._fall_back(outcome)
            return SetupResult.FALLBACK
        self._release_physical_root()
        self._transition(MigrationStage.DONE)
        self._deactivate_lvm()
        self.log.success("zramroot finished successfully")
        return SetupResult.HANDOFF

    def _transition(self, stage: MigrationStage) -> None:
        previous = self.state.stage
        self.state.advance(stage)
        EventLogger.log_stage_transition(self.log, previous.name, stage.name)

    def _attempt_stage(self, stage: MigrationStage, step: Callable[[], Any]) -> StageOutcome:
        try:
            with operation_context(stage.name.lower()):
                value = step()
        except STAGE_ERRORS as error:
            return StageOutcome.failure(stage, error)
        return StageOutcome.success(stage, value)

    def _run_stage(self, stage: MigrationStage, step: Callable[[], Any]) -> StageOutcome:
        """Run ``step``, retrying retryable failures per the stage policy."""

        def _attempt(index: int) -> StageOutcome:
            outcome = self._attempt_stage(stage, step)
            if outcome.status is OutcomeStatus.RETRYABLE:
                raise _RetryableStage(outcome)
            return outcome

        def _on_retry(index: int, error: BaseException) -> None:
            self.log.warning(
                f"{stage.name} failed with a retryable error, "
                f"retry {index + 1}/{self.stage_policy.attempts - 1}: {error}"
            )

        try:
            return retry_call(
                _attempt,
                self.stage_policy,
                retry_on=(_RetryableStage,),
                on_retry=_on_retry,
                sleep=self._sleep,
            )
        except _RetryableStage as exhausted:
            return exhausted.outcome

    # ==========================================================================
    # Stages
    # ==========================================================================

    def _resolve_root(self) -> ResolvedDevice:
        raw = self.cmdline.root
        if not raw:
            raise RootSpecUnresolvableError("", "no root= on the kernel command line")
        try:
            spec = RootSpec.parse(raw)
        except ValueError as error:
            raise RootSpecUnresolvableError(raw, str(error)) from error

        timeout = effective_wait_timeout(self.settings.wait_timeout, self.cmdline.rootdelay)
        resolver = self.tools.resolver_factory(self.cmdline, timeout)
        try:
            self.device = resolver.resolve(spec)
        finally:
            if resolver.activated_volume_groups:
                self.state.activated_volume_groups = True

        self._mount_physical_root()
        self._attach_log()
        return self.device

    def _mount_physical_root(self) -> None:
        target = self.paths.physical_root
        if target not in self.state.mounts:
            mount.mount_device(self.device.path, target, options="rw")
            self.state.record_mount(target)
            self.state.physical_mounted = True
        self.log.info(f"Physical root {self.device.path} mounted at {target}")

    def _attach_log(self) -> None:
        settings = self.settings
        if settings.debug_log_device:
            log_dir = settings.log_dir
            if not mount.is_mounted(log_dir):
                try:
                    mount.mount_device(settings.debug_log_device, log_dir, options="rw")
                except MountError as error:
                    self.log.warning(f"Cannot mount log device {settings.debug_log_device}: {error}")
                else:
                    self.state.record_mount(log_dir)
        elif settings.debug_root_mount:
            log_dir = settings.debug_root_mount
        else:
            log_dir = f"{self.paths.physical_root}/{settings.log_dir.lstrip('/')}"
        path = attach_physical_log(Path(log_dir), debug=settings.debug_mode)
        if path is not None:
            self.log.info(f"Logging to {path}")
            boot_id = self.tools.boot_id()
            if boot_id:
                self.log.info(f"Boot ID: {boot_id}")

    def _plan(self) -> CapacityPlan:
        settings = self.settings
        used = self.tools.used_space(self.paths.physical_root)
        memory = self.tools.memory()
        margins = Margins.from_settings(settings)
        self.log.info(
            f"Root filesystem uses {used}MiB, RAM: {memory.total_mib}MiB total, "
            f"{memory.available_mib}MiB available"
        )
        if settings.zram_size_mib > 0:
            self.plan = explicit_plan(
                settings.zram_size_mib,
                used,
                settings.zram_buffer_percent,
                settings.zram_algo,
                memory,
                margins,
            )
        else:
            self.plan = plan_capacity(
                used, settings.zram_buffer_percent, settings.zram_algo, memory, margins
            )
        return self.plan

    def _provision(self) -> RamDevice:
        settings = self.settings
        provisioner = self.tools.provisioner
        swap_number = settings.zram_swap_device_num if settings.zram_swap_enabled else None
        provisioner.load_module(required_device_count(settings.zram_device_num, swap_number))
        provisioner.wait_for_control(settings.zram_device_num)
        self.root_device = provisioner.provision(
            self.plan.target_size_mib,
            settings.zram_algo,
            settings.zram_device_num,
            reserved=() if swap_number is None else (swap_number,),
            max_attempts=settings.max_attempts,
        )
        self.state.ram_devices.append(self.root_device)
        return self.root_device

    def _format(self) -> None:
        fs_format.format_ram_device(self.root_device, self.settings.zram_fs_type)

    def _copy(self) -> CopyReport:
        settings = self.settings
        ram_root = self.paths.ram_root
        if ram_root not in self.state.mounts:
            options = ",".join(part for part in ("rw", settings.zram_mount_opts) if part)
            mount.mount_device(
                self.root_device.backing_path,
                ram_root,
                fs_type=settings.zram_fs_type,
                options=options,
            )
            self.state.record_mount(ram_root)

        engine = self.tools.copy_factory(
            Path(self.paths.physical_root),
            Path(ram_root),
            CopyOptions.from_settings(settings),
            cpu_count=self.tools.cpu_count(),
            available_mib=self.tools.memory().available_mib,
        )
        self.copy_report = engine.run()
        create_skeleton(Path(ram_root))
        self.bind_paths = prepare_mount_points(
            Path(self.paths.physical_root), Path(ram_root), settings.mount_on_disk
        )
        self.state.ram_root_populated = True
        return self.copy_report

    def _provision_swap(self) -> Optional[RamDevice]:
        """Set up the swap device. Failures only cost the swap."""
        settings = self.settings
        if not settings.zram_swap_enabled:
            return None
        if self.swap_device is not None:
            return self.swap_device
        size = swap_size_mib(self.tools.memory().total_mib, settings.zram_swap_size_mib)
        self.log.info(f"Setting up {size}MiB zram swap device")
        try:
            device = self.tools.provisioner.provision(
                size,
                settings.zram_swap_algo,
                settings.zram_swap_device_num,
                reserved=(self.root_device.device_number,),
                max_attempts=settings.max_attempts,
            )
        except MigrationError as error:
            self.log.error(f"Swap device setup failed, continuing without swap: {error}")
            return None
        self.state.ram_devices.append(device)
        if not fs_format.make_swap(device):
            self.tools.provisioner.reset(device)
            self.state.ram_devices.remove(device)
            return None
        self.swap_device = device
        return device

    def _rewrite(self) -> bool:
        swap = self._provision_swap()
        changes = FstabChanges(
            source_device=self.device.path,
            vg_name=detect_volume_group(self.device),
            bind_paths=tuple(self.bind_paths),
            physical_root_opts=self.settings.physical_root_opts,
            swap_device=swap.backing_path if swap else None,
            swap_priority=self.settings.zram_swap_priority,
        )
        try:
            return rewrite_fstab(Path(self.paths.ram_root), changes)
        except RewriteError as error:
            self.log.error(f"fstab rewrite failed, continuing with the copied fstab: {error}")
            return False

    def _handoff(self) -> None:
        os.sync()
        ram_root = self.paths.ram_root
        if ram_root in self.state.mounts:
            mount.unmount(ram_root)
            self.state.forget_mount(ram_root)

    def _release_physical_root(self) -> None:
        """Unmount the disk once the record is written, keeping it for bind mounts if asked."""
        physical = self.paths.physical_root
        # The log lives on the physical root; it stays attached until the record is on disk
        detach_physical_log()
        for log_mount in [m for m in self.state.mounts if m != physical]:
            if mount.unmount_quietly(log_mount):
                self.state.forget_mount(log_mount)

        if physical in self.state.mounts:
            if mount.unmount_quietly(physical):
                self.state.forget_mount(physical)
                self.state.physical_mounted = False
            else:
                self.log.warning(f"Physical root still mounted at {physical}")

        if self.settings.keeps_physical_root:
            kept = self.paths.kept_physical_root
            self.log.info(f"Keeping physical root mounted at {kept} for bind mounts")
            try:
                mount.mount_device(
                    self.device.path, kept, options=self.settings.physical_root_opts
                )
            except MountError as error:
                self.log.error(f"Failed to remount physical root at {kept}: {error}")
                self.log.error("Bind mounts will not work!")
            else:
                self.state.record_mount(kept)
                self.state.physical_mounted = True

    def _write_handoff(self) -> HandoffRecord:
        self.record = HandoffRecord(
            device_path=self.root_device.backing_path,
            fs_type=self.settings.zram_fs_type,
            mount_flags=mount.final_mount_flags(self.settings.zram_mount_opts),
            boot_id=self.tools.boot_id(),
        )
        self.log.info(f"Setting root to ZRAM device: {self.record.device_path}")
        written = handoff.write_handoff(self.record, self.paths.handoff_files)
        self.state.handoff_paths = [str(path) for path in written]
        handoff.write_sysroot_override(
            self.record, self.paths.sysroot_dropin, self.paths.systemd_runtime_dir
        )
        return self.record

    def _deactivate_lvm(self) -> None:
        """Release the disk's logical volume once nothing uses it."""
        if self.settings.keeps_physical_root or self.device is None:
            return
        vg_name = detect_volume_group(self.device)
        if vg_name is None:
            return
        self.log.info("Attempting to deactivate LVM2 volumes...")
        blockinfo.deactivate_logical_volume(self.device.path)
        if blockinfo.deactivate_volume_groups(vg_name):
            self.log.info(f"Deactivated volume group {vg_name}")
        else:
            self.log.warning(f"Could not deactivate volume group {vg_name} (may be in use)")

    # ==========================================================================
    # Fallback
    # ==========================================================================

    def _fall_back(self, outcome: StageOutcome) -> None:
        reason = f"{outcome.stage.name}: {outcome.error}"
        self.state.fall_back(reason)
        self.log.error(reason)
        self.log.error("Falling back to normal boot (zramroot disabled)")
        self._cleanup()

    def abort(self, error: BaseException) -> None:
        """Fall back after an error escaped the stage machinery."""
        if self.state.stage is MigrationStage.INIT or self.state.stage.is_terminal:
            return
        self._fall_back(StageOutcome.failure(self.state.stage, error))

    def _cleanup(self) -> None:
        """Best-effort teardown of everything this attempt created."""
        handoff.remove_handoff(self.paths.handoff_files)
        handoff.remove_sysroot_override(self.paths.sysroot_dropin)
        self.state.handoff_paths = []
        detach_physical_log()

        for target in reversed(list(self.state.mounts)):
            if mount.unmount_quietly(target):
                self.state.forget_mount(target)
        self.state.physical_mounted = False

        for device in reversed(list(self.state.ram_devices)):
            if self.tools.provisioner.reset(device):
                self.state.ram_devices.remove(device)

        if self.state.activated_volume_groups:
            vg_name = detect_volume_group(self.device) if self.device else None
            if blockinfo.deactivate_volume_groups(vg_name):
                self.state.activated_volume_groups = False
