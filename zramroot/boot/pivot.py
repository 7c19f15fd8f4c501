"""Mount-stage and pre-pivot helpers run after the setup stage.

``mount_root()`` replaces the boot framework's root mount when a fresh
handoff record exists; every failure returns False so the framework
mounts the original root as usual. ``finalize()`` makes sure a kept
physical root travels into the new root before the switch.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Sequence

from zramroot.boot import handoff
from zramroot.domain.models import HandoffRecord
from zramroot.logging import LoggerFactory
from zramroot.storage import blockinfo, mount
from zramroot.storage.exceptions import MountError
from zramroot.storage.fstab import PHYSICAL_ROOT_MOUNT


log = LoggerFactory.for_boot()

DEFAULT_NEWROOT = "/sysroot"


def _newroot_target(newroot: str, kept: str) -> str:
    return os.path.join(newroot, kept.lstrip("/"))


def carry_physical_root(newroot: str, kept: str = PHYSICAL_ROOT_MOUNT) -> bool:
    """Move (or bind) a kept physical root into ``newroot``.

    Returns:
        True if the physical root is reachable inside ``newroot`` afterwards,
        or there was nothing to carry
    """
    target = _newroot_target(newroot, kept)
    if mount.is_mounted(target):
        return True
    if not (os.path.isdir(kept) and mount.is_mounted(kept)):
        return True
    try:
        mount.move_mount(kept, target)
        log.info(f"Moved physical root to {target}")
        return True
    except MountError as error:
        log.debug(f"mount --move failed ({error}), trying bind mount")
    try:
        mount.bind_mount(kept, target)
    except MountError as error:
        log.warning(f"Failed to move/bind physical root: {error}")
        return False
    log.info(f"Bind-mounted physical root to {target}")
    return True


def mount_root(
    newroot: str = DEFAULT_NEWROOT,
    *,
    paths: Sequence[Path] = handoff.HANDOFF_PATHS,
    kept: str = PHYSICAL_ROOT_MOUNT,
    boot_id: Optional[str] = None,
) -> bool:
    """Mount the RAM root at ``newroot``.

    Returns:
        True if the RAM root is mounted; False means "use normal boot"
    """
    record: Optional[HandoffRecord] = handoff.read_handoff(paths, boot_id)
    if record is None:
        log.warning("No valid handoff record, falling back to normal boot")
        return False
    if not blockinfo.is_block_device(record.device_path):
        log.warning(f"ZRAM device {record.device_path} not found, falling back to normal boot")
        return False

    log.info(f"Mounting ZRAM device {record.device_path} as root")
    try:
        mount.mount_device(
            record.device_path,
            newroot,
            fs_type=record.fs_type,
            options=record.mount_flags,
        )
    except (MountError, ValueError, OSError) as error:
        log.warning(f"Failed to mount ZRAM device, falling back to normal boot: {error}")
        return False
    log.info(f"Successfully mounted ZRAM root at {newroot}")
    carry_physical_root(newroot, kept)
    return True


def finalize(newroot: str = DEFAULT_NEWROOT, kept: str = PHYSICAL_ROOT_MOUNT) -> bool:
    """Pre-pivot hook: carry a still-mounted physical root into ``newroot``."""
    return carry_physical_root(newroot, kept)
