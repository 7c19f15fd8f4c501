"""Mount helpers for the physical root and the RAM root.

Functions:
    - is_mounted(): Check whether a directory is a mount point
    - mount_device(): Mount a block device (creating the target)
    - bind_mount() / move_mount(): Bind or move an existing mount
    - unmount(): Unmount, raising on failure
    - unmount_quietly(): Unmount with lazy fallback, for cleanup paths
    - final_mount_flags(): Root mount options handed to the next stage
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Optional

from zramroot.logging import LoggerFactory
from zramroot.storage.commands import run_command
from zramroot.storage.exceptions import DeviceBusyError, MountOperationError


log = LoggerFactory.for_mount()

_INVALID_CHARS = (";", "&", "|", "$", "`", "\n", "\r")


def _validate_path(path: str, kind: str) -> None:
    if not path or any(char in path for char in _INVALID_CHARS):
        raise ValueError(f"Invalid {kind} path: {path!r}")


def is_mounted(path: str) -> bool:
    return os.path.ismount(path)


def _run_mount(command: list[str], target: str) -> None:
    try:
        result = run_command(command, check=False)
    except OSError as error:
        raise MountOperationError(f"{command[0]} unavailable: {error}", target=target) from error
    if result.returncode == 0:
        return
    stderr_msg = (result.stderr or "").strip() or f"exit code {result.returncode}"
    if "busy" in stderr_msg.lower():
        raise DeviceBusyError(target, stderr_msg)
    raise MountOperationError(f"{' '.join(command)} failed: {stderr_msg}", target=target)


def mount_device(
    device: str,
    target: str,
    *,
    fs_type: Optional[str] = None,
    options: Optional[str] = None,
) -> None:
    """Mount ``device`` on ``target``.

    Raises:
        ValueError: If a path contains shell metacharacters
        DeviceBusyError: If mount reports the device busy
        MountOperationError: For any other mount failure
    """
    _validate_path(device, "device")
    _validate_path(target, "mount target")
    Path(target).mkdir(parents=True, exist_ok=True)
    command = ["mount"]
    if fs_type:
        command.extend(["-t", fs_type])
    if options:
        command.extend(["-o", options])
    command.extend([device, target])
    log.debug(f"Mounting {device} at {target} ({options or 'defaults'})")
    _run_mount(command, target)


def bind_mount(source: str, target: str) -> None:
    _validate_path(source, "bind source")
    _validate_path(target, "bind target")
    Path(target).mkdir(parents=True, exist_ok=True)
    _run_mount(["mount", "--bind", source, target], target)


def move_mount(source: str, target: str) -> None:
    """Move the mount at ``source`` to ``target`` (``mount --move``)."""
    _validate_path(source, "move source")
    _validate_path(target, "move target")
    Path(target).mkdir(parents=True, exist_ok=True)
    _run_mount(["mount", "--move", source, target], target)


def unmount(target: str) -> None:
    """Unmount ``target``.

    Raises:
        DeviceBusyError: If the filesystem is still in use
        MountOperationError: For any other failure
    """
    _validate_path(target, "mount target")
    _run_mount(["umount", target], target)


def unmount_quietly(target: str) -> bool:
    """Unmount, falling back to a lazy unmount. Never raises."""
    if not is_mounted(target):
        return True
    for command in (["umount", target], ["umount", "-l", target]):
        try:
            result = run_command(command, check=False)
        except (OSError, subprocess.SubprocessError) as error:
            log.warning(f"Cannot unmount {target}: {error}")
            return False
        if result.returncode == 0:
            return True
    log.warning(f"Failed to unmount {target}")
    return False


def final_mount_flags(mount_opts: str) -> str:
    """``<opts>,rw`` without ``defaults``/``ro`` and without duplicates."""
    flags: list[str] = []
    for option in [*mount_opts.split(","), "rw"]:
        option = option.strip()
        if not option or option in ("defaults", "ro") or option in flags:
            continue
        flags.append(option)
    return ",".join(flags) or "rw"
