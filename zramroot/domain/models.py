"""Domain model for RAM root migration.

Value objects passed between boot stages. Everything except JobBin,
CopyAttempt and MigrationState is immutable; a retry builds a fresh
object instead of mutating an old one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from zramroot.storage.exceptions import InvalidTransitionError


MIB = 1024 * 1024

# ==============================================================================
# Root Device Domain
# ==============================================================================


class RootSpecKind(Enum):
    """How the boot command line names the root filesystem."""

    UUID = "UUID"
    LABEL = "LABEL"
    PARTUUID = "PARTUUID"
    PARTLABEL = "PARTLABEL"
    PATH = "path"
    LVM = "lvm"


_TAG_KINDS = {
    "UUID": RootSpecKind.UUID,
    "LABEL": RootSpecKind.LABEL,
    "PARTUUID": RootSpecKind.PARTUUID,
    "PARTLABEL": RootSpecKind.PARTLABEL,
}

# /dev subdirectories that are never volume groups (md holds RAID arrays)
NON_VG_DEV_DIRS = frozenset(
    {
        "block", "bsg", "bus", "char", "cpu", "disk", "dri", "fd", "hugepages",
        "input", "mapper", "md", "mqueue", "net", "pts", "shm", "snd", "usb", "vfio",
    }
)

_DEV_PAIR_RE = re.compile(r"^/dev/([^/]+)/([^/]+)$")


def looks_like_lvm_path(path: str) -> bool:
    """True for ``/dev/<vg>/<lv>`` outside the kernel's own /dev subdirectories."""
    match = _DEV_PAIR_RE.match(path)
    return bool(match) and match.group(1) not in NON_VG_DEV_DIRS


@dataclass(frozen=True)
class RootSpec:
    """The user/boot supplied identifier of the source root."""

    kind: RootSpecKind
    value: str  # e.g. "1234-abcd" for UUID, "/dev/sda2" for a path
    raw: str  # exactly as given on the command line

    @property
    def is_tag(self) -> bool:
        return self.kind in _TAG_KINDS.values()

    @property
    def tag(self) -> str:
        """blkid token form, e.g. ``UUID=1234-abcd``."""
        if not self.is_tag:
            raise ValueError(f"{self.raw!r} is not a tag specification")
        return f"{self.kind.value}={self.value}"

    @classmethod
    def parse(cls, raw: str) -> RootSpec:
        """Parse a ``root=`` value.

        Raises:
            ValueError: If the value is empty or not a tag/device path
        """
        text = (raw or "").strip()
        value = text[len("block:"):] if text.startswith("block:") else text
        if not value:
            raise ValueError("empty root specification")
        key, sep, rest = value.partition("=")
        if sep and key.upper() in _TAG_KINDS:
            if not rest:
                raise ValueError(f"empty {key} in root specification")
            return cls(kind=_TAG_KINDS[key.upper()], value=rest, raw=text)
        if not value.startswith("/"):
            raise ValueError(f"unrecognized root specification: {text!r}")
        if looks_like_lvm_path(value):
            return cls(kind=RootSpecKind.LVM, value=value, raw=text)
        return cls(kind=RootSpecKind.PATH, value=value, raw=text)


class ContainerKind(Enum):
    """What sits between the partition and the root filesystem."""

    PLAIN = "plain"
    LUKS = "luks"
    LVM = "lvm"


@dataclass(frozen=True)
class ResolvedDevice:
    """A concrete block device holding the root filesystem.

    Produced once per boot attempt by the resolver, never mutated.
    """

    path: str  # e.g. "/dev/mapper/vg0-root"
    fs_type: Optional[str]  # e.g. "ext4", None if blkid could not tell
    container: ContainerKind
    member_path: Optional[str] = None  # underlying LUKS/LVM member, if any

    @property
    def is_mapper(self) -> bool:
        return self.path.startswith("/dev/mapper/")


# ==============================================================================
# Capacity Domain
# ==============================================================================


class PlanMode(Enum):
    TIGHT = "tight"  # only the minimum free space on the RAM device
    GENEROUS = "generous"  # extra free space, capped
    FLOOR = "floor"  # raised to 1.25x the compressed size
    EXPLICIT = "explicit"  # size given in configuration


@dataclass(frozen=True)
class CapacityPlan:
    """Inputs and result of RAM device sizing. Immutable once computed."""

    used_source_mib: int
    buffer_percent: int
    compression_ratio: float
    ram_total_mib: int
    ram_available_mib: int
    min_free_ram_mib: int
    pref_free_ram_mib: int
    min_free_target_mib: int
    max_free_target_mib: int
    compressed_mib: int
    target_size_mib: int
    mode: PlanMode

    @property
    def target_size_bytes(self) -> int:
        return self.target_size_mib * MIB

    def summary(self) -> str:
        return (
            f"used={self.used_source_mib}MiB buffer={self.buffer_percent}% "
            f"ratio={self.compression_ratio:g} compressed={self.compressed_mib}MiB "
            f"available={self.ram_available_mib}MiB -> "
            f"target={self.target_size_mib}MiB ({self.mode.value})"
        )


# ==============================================================================
# RAM Device Domain
# ==============================================================================


@dataclass(frozen=True)
class RamDevice:
    """A configured compressed RAM block device."""

    device_number: int
    size_bytes: int
    compression_algorithm: str
    backing_path: str  # e.g. "/dev/zram0"

    @property
    def name(self) -> str:
        return f"zram{self.device_number}"

    @property
    def size_mib(self) -> int:
        return self.size_bytes // MIB


# ==============================================================================
# Copy Domain
# ==============================================================================

ROOT_FILES_UNIT = "ROOT_FILES"


@dataclass(frozen=True)
class WorkUnit:
    """A top-level entry of the source tree and its measured size."""

    name: str  # entry name relative to the source root, or ROOT_FILES_UNIT
    size_kib: int

    @property
    def is_root_files(self) -> bool:
        return self.name == ROOT_FILES_UNIT


@dataclass
class JobBin:
    """Work units assigned to one worker, in processing order.

    Mutated only while the work is being distributed; ``seal()`` makes
    further assignment an error.
    """

    index: int
    units: list[WorkUnit] = field(default_factory=list)
    total_kib: int = 0
    sealed: bool = False

    def add(self, unit: WorkUnit) -> None:
        if self.sealed:
            raise RuntimeError(f"job bin {self.index} is sealed")
        self.units.append(unit)
        self.total_kib += unit.size_kib

    def seal(self) -> None:
        self.sealed = True

    @property
    def unit_names(self) -> list[str]:
        return [unit.name for unit in self.units]


@dataclass
class CopyAttempt:
    """Retry bookkeeping for one unit. Owned by a single worker."""

    unit: WorkUnit
    retry_count: int = 0
    last_exit_code: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.last_exit_code == 0


@dataclass(frozen=True)
class CopyReport:
    """Aggregate result of a migration copy."""

    total_kib: int
    threads: int
    failed_units: tuple[str, ...] = ()
    duration_seconds: float = 0.0

    @property
    def complete(self) -> bool:
        return not self.failed_units

    @property
    def speed_mib_s(self) -> Optional[float]:
        if self.duration_seconds <= 0:
            return None
        return (self.total_kib / 1024) / self.duration_seconds


# ==============================================================================
# Boot State Domain
# ==============================================================================


class MigrationStage(Enum):
    """Boot state machine stages, in forward order."""

    INIT = 0
    RESOLVE_ROOT = 1
    PLAN = 2
    PROVISION = 3
    FORMAT = 4
    COPY = 5
    REWRITE = 6
    HANDOFF = 7
    DONE = 8
    FALLBACK = 9

    @property
    def is_terminal(self) -> bool:
        return self in (MigrationStage.DONE, MigrationStage.FALLBACK)


@dataclass
class MigrationState:
    """Single source of truth for one boot attempt.

    Only the orchestrating thread updates it, between stages. Components
    report outcomes; they never touch this record.
    """

    stage: MigrationStage = MigrationStage.INIT
    physical_mounted: bool = False
    ram_root_populated: bool = False
    fell_back: bool = False
    failure_reason: Optional[str] = None
    # Resources this attempt created, for rollback
    mounts: list[str] = field(default_factory=list)
    activated_volume_groups: bool = False
    ram_devices: list[RamDevice] = field(default_factory=list)
    handoff_paths: list[str] = field(default_factory=list)

    def advance(self, stage: MigrationStage) -> None:
        """Move forward to ``stage``.

        Raises:
            InvalidTransitionError: On a backwards move, a move out of a
                terminal stage, or a move to FALLBACK (use fall_back())
        """
        if (
            self.stage.is_terminal
            or stage is MigrationStage.FALLBACK
            or stage.value <= self.stage.value
        ):
            raise InvalidTransitionError(self.stage.name, stage.name)
        self.stage = stage

    def fall_back(self, reason: str) -> None:
        """Enter FALLBACK. Reachable from every non-terminal stage above INIT."""
        if self.stage is MigrationStage.INIT or self.stage.is_terminal:
            raise InvalidTransitionError(self.stage.name, MigrationStage.FALLBACK.name)
        self.stage = MigrationStage.FALLBACK
        self.fell_back = True
        self.failure_reason = reason

    def record_mount(self, mountpoint: str) -> None:
        if mountpoint not in self.mounts:
            self.mounts.append(mountpoint)

    def forget_mount(self, mountpoint: str) -> None:
        if mountpoint in self.mounts:
            self.mounts.remove(mountpoint)


class OutcomeStatus(Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable-failure"
    FATAL = "fatal-failure"


@dataclass(frozen=True)
class StageOutcome:
    """Structured result a stage reports to the state machine."""

    stage: MigrationStage
    status: OutcomeStatus
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @classmethod
    def success(cls, stage: MigrationStage, value: Any = None) -> StageOutcome:
        return cls(stage=stage, status=OutcomeStatus.SUCCESS, value=value)

    @classmethod
    def failure(cls, stage: MigrationStage, error: BaseException) -> StageOutcome:
        status = (
            OutcomeStatus.RETRYABLE
            if getattr(error, "retryable", False)
            else OutcomeStatus.FATAL
        )
        return cls(stage=stage, status=status, error=error)


# ==============================================================================
# Handoff Domain
# ==============================================================================


@dataclass(frozen=True)
class HandoffRecord:
    """What the mount stage needs to mount the RAM root."""

    device_path: str
    fs_type: str
    mount_flags: str
    boot_id: Optional[str] = None

    def to_env(self) -> str:
        lines = [
            f"ZRAMROOT_DEVICE={self.device_path}",
            f"ZRAMROOT_FSTYPE={self.fs_type}",
            f"ZRAMROOT_ROOTFLAGS={self.mount_flags}",
        ]
        if self.boot_id:
            lines.append(f"ZRAMROOT_BOOT_ID={self.boot_id}")
        return "\n".join(lines) + "\n"

    @classmethod
    def from_env(cls, text: str) -> Optional[HandoffRecord]:
        """Parse an env file; None if a required field is missing."""
        values: dict[str, str] = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            values[key.strip()] = value.strip().strip('"').strip("'")
        device = values.get("ZRAMROOT_DEVICE")
        fs_type = values.get("ZRAMROOT_FSTYPE")
        flags = values.get("ZRAMROOT_ROOTFLAGS")
        if not device or not fs_type or not flags:
            return None
        return cls(
            device_path=device,
            fs_type=fs_type,
            mount_flags=flags,
            boot_id=values.get("ZRAMROOT_BOOT_ID") or None,
        )
