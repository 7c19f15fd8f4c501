"""fstab rewriting inside the migrated tree.

The copied ``/etc/fstab`` still describes the disk the system booted from.
Entries that would remount that disk (or its swap, or other volumes of its
LVM group) are commented out, never deleted, and a managed block with the
RAM-root specific entries is appended:

    # ZRAMROOT: UUID=abcd / ext4 defaults 0 1
    # ZRAMROOT-SWAP-DISABLED: /dev/sda3 none swap sw 0 0

    # BEGIN ZRAMROOT MANAGED ENTRIES
    /dev/sda2 /mnt/physical_root auto rw,nofail 0 0
    /mnt/physical_root/home /home none bind 0 0
    /dev/zram1 none swap sw,pri=10 0 0
    # END ZRAMROOT MANAGED ENTRIES

The managed block is replaced on every run, so rewriting an already
rewritten file changes nothing. The untouched original is kept as
``fstab.zram_backup``.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from zramroot.domain.models import ContainerKind, ResolvedDevice
from zramroot.logging import LoggerFactory
from zramroot.storage import blockinfo
from zramroot.storage.exceptions import RewriteError


log = LoggerFactory.for_fstab()

PHYSICAL_ROOT_MOUNT = "/mnt/physical_root"
BACKUP_SUFFIX = ".zram_backup"
PROTECTED_MOUNTPOINTS = ("/", "/boot", "/boot/efi", "/home", "/var")
DISABLED_PREFIX = "# ZRAMROOT: "
SWAP_DISABLED_PREFIX = "# ZRAMROOT-SWAP-DISABLED: "
BLOCK_BEGIN = "# BEGIN ZRAMROOT MANAGED ENTRIES"
BLOCK_END = "# END ZRAMROOT MANAGED ENTRIES"


@dataclass(frozen=True)
class FstabChanges:
    """Everything the rewrite needs to know about the new root."""

    source_device: str
    vg_name: Optional[str] = None
    bind_paths: tuple[str, ...] = ()  # relative, e.g. ("home", "srv/data")
    physical_root_opts: str = "rw"
    swap_device: Optional[str] = None
    swap_priority: int = 10


def normalize_mount_on_disk(paths: Iterable[str]) -> list[str]:
    """Strip leading/trailing slashes and drop empty or duplicate entries."""
    result: list[str] = []
    for path in paths:
        cleaned = path.strip().strip("/")
        if cleaned and cleaned not in result:
            result.append(cleaned)
    return result


def prepare_mount_points(
    physical_root: Path, ram_root: Path, paths: Iterable[str]
) -> list[str]:
    """Create RAM-root mount points for mount-on-disk directories.

    Paths missing on the physical root are skipped with a warning.

    Returns:
        The relative paths that got a mount point
    """
    prepared: list[str] = []
    for path in normalize_mount_on_disk(paths):
        if not (Path(physical_root) / path).is_dir():
            log.warning(
                f"Mount-on-disk path /{path} does not exist on physical root - skipping"
            )
            continue
        (Path(ram_root) / path).mkdir(parents=True, exist_ok=True)
        log.debug(f"Created mount point /{path} in RAM root")
        prepared.append(path)
    return prepared


def detect_volume_group(device: ResolvedDevice) -> Optional[str]:
    """VG name of the source device, None when it is not an LVM volume."""
    path = device.path
    if not (path.startswith("/dev/mapper/") or blockinfo.parse_lvm_device_path(path)):
        return None
    if device.container is ContainerKind.LUKS:
        # luks-<uuid> mapper names look like <vg>-<lv> but are not LVM
        return None
    return blockinfo.volume_group_of(path)


def _vg_prefixes(vg_name: str) -> tuple[str, str]:
    escaped = vg_name.replace("-", "--")
    return f"/dev/mapper/{escaped}-", f"/dev/{vg_name}/"


def disable_prefix(line: str, vg_name: Optional[str] = None) -> Optional[str]:
    """Comment prefix for ``line``, or None to keep it unchanged."""
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    fields = stripped.split()
    if len(fields) < 2:
        return None
    spec, mountpoint = fields[0], fields[1]
    fs_type = fields[2] if len(fields) > 2 else ""
    if fs_type == "swap" or mountpoint == "swap":
        return SWAP_DISABLED_PREFIX
    if mountpoint in PROTECTED_MOUNTPOINTS:
        return DISABLED_PREFIX
    if vg_name and spec.startswith(_vg_prefixes(vg_name)):
        return DISABLED_PREFIX
    return None


def managed_entries(changes: FstabChanges) -> list[str]:
    entries: list[str] = []
    if changes.bind_paths:
        entries.append(
            f"{changes.source_device} {PHYSICAL_ROOT_MOUNT} auto "
            f"{changes.physical_root_opts},nofail 0 0"
        )
        for path in changes.bind_paths:
            entries.append(f"{PHYSICAL_ROOT_MOUNT}/{path} /{path} none bind 0 0")
    if changes.swap_device:
        entries.append(
            f"{changes.swap_device} none swap sw,pri={changes.swap_priority} 0 0"
        )
    return entries


def _strip_managed_block(lines: list[str]) -> list[str]:
    kept: list[str] = []
    inside = False
    for line in lines:
        if line.strip() == BLOCK_BEGIN:
            inside = True
            continue
        if inside:
            if line.strip() == BLOCK_END:
                inside = False
            continue
        kept.append(line)
    while kept and not kept[-1].strip():
        kept.pop()
    return kept


def rewrite_fstab_text(text: str, changes: FstabChanges) -> str:
    """Return the rewritten fstab content. Pure."""
    output: list[str] = []
    for line in _strip_managed_block(text.splitlines()):
        prefix = disable_prefix(line, changes.vg_name)
        output.append(f"{prefix}{line}" if prefix else line)
    entries = managed_entries(changes)
    if entries:
        output.extend(["", BLOCK_BEGIN, *entries, BLOCK_END])
    return "\n".join(output) + "\n"


def rewrite_fstab(root: Path, changes: FstabChanges) -> bool:
    """Rewrite ``<root>/etc/fstab`` in place.

    Returns:
        False if the tree has no fstab (nothing to do), True otherwise

    Raises:
        RewriteError: If the file cannot be read, backed up or written
    """
    fstab = Path(root) / "etc" / "fstab"
    if not fstab.is_file():
        log.info(f"No fstab at {fstab}, skipping rewrite")
        return False
    backup = fstab.with_name(fstab.name + BACKUP_SUFFIX)
    try:
        if not backup.exists():
            shutil.copy2(fstab, backup)
            log.debug(f"Backed up fstab to {backup}")
        original = fstab.read_text(encoding="utf-8")
        fstab.write_text(rewrite_fstab_text(original, changes), encoding="utf-8")
    except OSError as error:
        raise RewriteError(f"Cannot rewrite {fstab}: {error}", path=str(fstab)) from error
    log.info(
        f"Rewrote {fstab} (volume group: {changes.vg_name or 'none'}, "
        f"bind mounts: {len(changes.bind_paths)}, swap: {changes.swap_device or 'none'})"
    )
    return True
