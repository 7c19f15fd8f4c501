"""Filesystem creation on the RAM device.

Supported Filesystems:
    ext4:   mkfs.ext4 (e2fsprogs)
    btrfs:  mkfs.btrfs (btrfs-progs)
    xfs:    mkfs.xfs (xfsprogs)

A missing tool or a failed mkfs is fatal; there is no fallback to another
filesystem type. A device reported busy raises DeviceBusyError so the
caller may retry.

Operations:
    - format_ram_device(): Create the root filesystem
    - make_swap(): Initialize the swap device (best-effort)
"""

from __future__ import annotations

from zramroot.domain.models import RamDevice
from zramroot.logging import LoggerFactory
from zramroot.storage.commands import command_exists, run_command
from zramroot.storage.exceptions import (
    DeviceBusyError,
    FormatOperationError,
    FormatToolMissingError,
    UnsupportedFilesystemError,
)


log = LoggerFactory.for_format()

# fs type -> (mkfs command prefix, package providing it)
MKFS_COMMANDS = {
    "ext4": (["mkfs.ext4", "-F", "-q"], "e2fsprogs"),
    "btrfs": (["mkfs.btrfs", "-f"], "btrfs-progs"),
    "xfs": (["mkfs.xfs", "-f"], "xfsprogs"),
}


def build_mkfs_command(fs_type: str, device_path: str) -> list[str]:
    """mkfs command line for ``fs_type``.

    Raises:
        UnsupportedFilesystemError: For anything but ext4, btrfs and xfs
    """
    try:
        prefix, _ = MKFS_COMMANDS[fs_type]
    except KeyError:
        raise UnsupportedFilesystemError(fs_type) from None
    return [*prefix, device_path]


def format_ram_device(device: RamDevice, fs_type: str) -> None:
    """Create a ``fs_type`` filesystem on ``device``.

    Raises:
        UnsupportedFilesystemError: Unknown filesystem type
        FormatToolMissingError: mkfs tool not in the initramfs
        DeviceBusyError: The device is still held by someone
        FormatOperationError: mkfs failed
    """
    command = build_mkfs_command(fs_type, device.backing_path)
    tool = command[0]
    if not command_exists(tool):
        raise FormatToolMissingError(tool, MKFS_COMMANDS[fs_type][1])

    log.info(f"Formatting {device.backing_path} with {fs_type}")
    result = run_command(command, check=False)
    if result.returncode != 0:
        stderr_msg = (result.stderr or "").strip() or "no error message"
        log.error(f"{tool} failed with code {result.returncode}: {stderr_msg}")
        if "busy" in stderr_msg.lower():
            raise DeviceBusyError(device.backing_path, stderr_msg)
        raise FormatOperationError(
            f"Failed to format {device.backing_path} as {fs_type}: {stderr_msg}",
            device=device.backing_path,
        )
    log.info(f"{device.backing_path} formatted successfully")


def make_swap(device: RamDevice) -> bool:
    """Run mkswap on the swap device. Returns False instead of raising."""
    if not command_exists("mkswap"):
        log.error("mkswap not found, swap device disabled")
        return False
    try:
        result = run_command(["mkswap", device.backing_path], check=False)
    except OSError as error:
        log.error(f"mkswap failed for {device.backing_path}: {error}")
        return False
    if result.returncode != 0:
        log.error(
            f"mkswap failed for {device.backing_path}: {(result.stderr or '').strip()}"
        )
        return False
    log.info(f"Swap initialized on {device.backing_path}")
    return True
