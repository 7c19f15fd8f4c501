"""HandoffRecord persistence between the setup and mount stages.

The setup stage writes the record to a runtime location; the mount stage
reads it back. A record written during a different boot (its boot id does
not match the running kernel's) is stale and ignored, so a leftover file
can never redirect a normal boot onto an empty RAM device.

Functions:
    - write_handoff(): Persist the record to every handoff path
    - read_handoff(): Return the first fresh record, or None
    - remove_handoff(): Delete partially-written records during fallback
    - write_sysroot_override(): systemd ``sysroot.mount`` drop-in
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Optional, Sequence

from zramroot.domain.models import HandoffRecord
from zramroot.logging import LoggerFactory
from zramroot.storage import system
from zramroot.storage.commands import command_exists, try_command


log = LoggerFactory.for_boot()

HANDOFF_PATHS = (
    Path("/run/initramfs/zramroot.env"),
    Path("/tmp/zramroot.env"),
)
SYSROOT_DROPIN = Path("/run/systemd/system/sysroot.mount.d/zramroot.conf")


def _write_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(content, encoding="utf-8")
    os.replace(tmp_path, path)


def write_handoff(
    record: HandoffRecord, paths: Sequence[Path] = HANDOFF_PATHS
) -> list[Path]:
    """Write ``record`` to each path.

    The first path is the primary location; failing to write it raises.
    The remaining paths are backups and are skipped with a warning.

    Returns:
        The paths that were written

    Raises:
        OSError: If the primary path cannot be written
    """
    written: list[Path] = []
    content = record.to_env()
    for index, path in enumerate(paths):
        path = Path(path)
        try:
            _write_atomic(path, content)
        except OSError as error:
            if index == 0:
                raise
            log.warning(f"Cannot write backup handoff record {path}: {error}")
            continue
        written.append(path)
        log.debug(f"Wrote handoff record {path}")
    log.info(f"ZRAMROOT_DEVICE={record.device_path}")
    log.info(f"ZRAMROOT_FSTYPE={record.fs_type}")
    log.info(f"ZRAMROOT_ROOTFLAGS={record.mount_flags}")
    return written


def read_handoff(
    paths: Sequence[Path] = HANDOFF_PATHS,
    boot_id: Optional[str] = None,
) -> Optional[HandoffRecord]:
    """First complete, fresh record found in ``paths``.

    Args:
        paths: Candidate locations, in priority order
        boot_id: Running boot id; read from the kernel when omitted

    Returns:
        The record, or None if there is none or it is stale
    """
    current = boot_id if boot_id is not None else system.read_boot_id()
    for path in paths:
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            continue
        except OSError as error:
            log.warning(f"Cannot read handoff record {path}: {error}")
            continue
        record = HandoffRecord.from_env(text)
        if record is None:
            log.warning(f"Incomplete handoff record in {path}, ignoring")
            continue
        if record.boot_id and current and record.boot_id != current:
            log.warning(
                f"Stale handoff record in {path} (boot id {record.boot_id}, "
                f"running {current}), ignoring"
            )
            continue
        return record
    return None


def remove_handoff(paths: Iterable[Path] = HANDOFF_PATHS) -> list[Path]:
    """Delete handoff records. Returns the paths that were removed."""
    removed: list[Path] = []
    for path in paths:
        path = Path(path)
        for candidate in (path, path.with_name(path.name + ".tmp")):
            try:
                candidate.unlink()
            except FileNotFoundError:
                continue
            except OSError as error:
                log.warning(f"Cannot remove handoff record {candidate}: {error}")
                continue
            removed.append(candidate)
            log.debug(f"Removed handoff record {candidate}")
    return removed


def sysroot_override_text(record: HandoffRecord) -> str:
    # Where= stays /sysroot
    return (
        "[Mount]\n"
        f"What={record.device_path}\n"
        f"Options={record.mount_flags}\n"
        f"Type={record.fs_type}\n"
    )


def write_sysroot_override(
    record: HandoffRecord,
    dropin: Path = SYSROOT_DROPIN,
    runtime_dir: Path = system.SYSTEMD_RUNTIME_DIR,
) -> bool:
    """Point systemd's ``sysroot.mount`` at the RAM device.

    Only done on a systemd initramfs, where ``sysroot.mount`` takes
    precedence over the legacy mount hook.

    Returns:
        True if a drop-in was written
    """
    if not system.is_systemd_initramfs(runtime_dir):
        return False
    log.info("Systemd detected. Overriding sysroot.mount...")
    _write_atomic(Path(dropin), sysroot_override_text(record))
    if not command_exists("systemctl"):
        log.error("systemctl not found! sysroot.mount override might fail")
    elif try_command(["systemctl", "daemon-reload"]):
        log.info("Systemd daemon reloaded to apply sysroot.mount override")
    else:
        log.error("systemctl daemon-reload failed")
    return True


def remove_sysroot_override(dropin: Path = SYSROOT_DROPIN) -> bool:
    try:
        Path(dropin).unlink()
    except FileNotFoundError:
        return False
    except OSError as error:
        log.warning(f"Cannot remove {dropin}: {error}")
        return False
    return True
