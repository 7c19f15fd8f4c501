"""Block device inspection using blkid, udevadm and the LVM tools.

Every probe returns a typed value (or None) instead of raw tool output, so
callers never scrape text themselves.

Operations:
    - settle_udev(): Wait for the udev event queue to drain
    - find_device_by_tag(): Map UUID=/LABEL=/PARTUUID=/PARTLABEL= to a device
    - get_fs_type() / get_uuid(): Probe filesystem metadata
    - activate_volume_groups() / deactivate_volume_groups(): vgchange wrappers
    - volume_group_of(): VG owning a mapper device (lvs, then dm uuid, then name split)
    - dm_uuid(): device-mapper UUID from sysfs, telling LVM from LUKS volumes
    - split_mapper_name() / lvm_mapper_path(): device-mapper naming rules

Mapper Naming:
    device-mapper joins VG and LV with a single dash and doubles every dash
    inside either name, so "my-vg/root" becomes "/dev/mapper/my--vg-root".
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from zramroot.domain.models import looks_like_lvm_path
from zramroot.logging import LoggerFactory
from zramroot.storage.commands import command_exists, run_command, try_command


log = LoggerFactory.for_resolver()

FS_TYPE_LUKS = "crypto_LUKS"
FS_TYPE_LVM_MEMBER = "LVM2_member"
UDEV_SETTLE_TIMEOUT = 10

# First dash not part of a "--" pair separates VG from LV
_MAPPER_NAME_RE = re.compile(r"^((?:[^-]|--)+)-((?:[^-]|--)+)$")
SYS_BLOCK = Path("/sys/block")
DM_UUID_LVM_PREFIX = "LVM-"


@dataclass(frozen=True)
class LogicalVolume:
    vg_name: str
    lv_name: str

    @property
    def mapper_path(self) -> str:
        return lvm_mapper_path(self.vg_name, self.lv_name)


def device_exists(path: str) -> bool:
    return os.path.exists(path)


def resolve_symlink(path: str) -> str:
    return os.path.realpath(path)


def settle_udev(timeout: int = UDEV_SETTLE_TIMEOUT) -> bool:
    if not command_exists("udevadm"):
        return False
    return try_command(["udevadm", "settle", f"--timeout={timeout}"])


def _first_line(text: str) -> Optional[str]:
    for line in (text or "").splitlines():
        line = line.strip()
        if line:
            return line
    return None


def find_device_by_tag(tag: str) -> Optional[str]:
    """Device path for a ``KEY=value`` tag, None if blkid finds nothing."""
    try:
        result = run_command(["blkid", "-o", "device", "-t", tag], check=False)
    except OSError as error:
        log.debug(f"blkid unavailable: {error}")
        return None
    if result.returncode != 0:
        return None
    return _first_line(result.stdout)


def _probe_value(device: str, key: str) -> Optional[str]:
    try:
        result = run_command(
            ["blkid", "-o", "value", "-s", key, device], check=False, log_output=False
        )
    except OSError as error:
        log.debug(f"blkid unavailable: {error}")
        return None
    if result.returncode != 0:
        return None
    return _first_line(result.stdout)


def get_fs_type(device: str) -> Optional[str]:
    return _probe_value(device, "TYPE")


def get_uuid(device: str) -> Optional[str]:
    return _probe_value(device, "UUID")


def activate_volume_groups() -> bool:
    if not command_exists("vgchange"):
        log.debug("vgchange not available, skipping volume group activation")
        return False
    return try_command(["vgchange", "-ay"])


def deactivate_logical_volume(device: str) -> bool:
    if not command_exists("lvchange"):
        return False
    return try_command(["lvchange", "-an", device])


def deactivate_volume_groups(vg_name: Optional[str] = None) -> bool:
    """Deactivate one volume group, or every group when the name is unknown."""
    if not command_exists("vgchange"):
        return False
    command = ["vgchange", "-an"]
    if vg_name:
        command.append(vg_name)
    return try_command(command)


def lvm_mapper_path(vg_name: str, lv_name: str) -> str:
    vg = vg_name.replace("-", "--")
    lv = lv_name.replace("-", "--")
    return f"/dev/mapper/{vg}-{lv}"


def split_mapper_name(name: str) -> Optional[LogicalVolume]:
    """Split a device-mapper name into VG and LV by the naming convention.

    >>> split_mapper_name("my--vg-root")
    LogicalVolume(vg_name='my-vg', lv_name='root')
    """
    match = _MAPPER_NAME_RE.match(name)
    if not match:
        return None
    return LogicalVolume(
        vg_name=match.group(1).replace("--", "-"),
        lv_name=match.group(2).replace("--", "-"),
    )


def parse_lvm_device_path(path: str) -> Optional[LogicalVolume]:
    """LogicalVolume for ``/dev/mapper/<vg>-<lv>`` or ``/dev/<vg>/<lv>``."""
    if path.startswith("/dev/mapper/"):
        return split_mapper_name(path[len("/dev/mapper/"):])
    if not looks_like_lvm_path(path):
        return None
    vg_name, lv_name = path[len("/dev/"):].split("/")
    return LogicalVolume(vg_name=vg_name, lv_name=lv_name)


def _lvs_volume_group(device: str) -> Optional[str]:
    if not command_exists("lvs"):
        return None
    try:
        result = run_command(["lvs", "--noheadings", "-o", "vg_name", device], check=False)
    except OSError:
        return None
    if result.returncode != 0:
        return None
    return _first_line(result.stdout)


def dm_uuid(device: str, sys_block: Path = SYS_BLOCK) -> Optional[str]:
    """device-mapper UUID of ``device`` (``LVM-...``, ``CRYPT-...``), None if not dm."""
    name = os.path.basename(os.path.realpath(device))
    try:
        return _first_line((sys_block / name / "dm" / "uuid").read_text())
    except OSError:
        return None


def volume_group_of(device: str, sys_block: Path = SYS_BLOCK) -> Optional[str]:
    """Best-effort VG name of an LVM device, None for non-LVM devices."""
    vg_name = _lvs_volume_group(device)
    if vg_name:
        return vg_name
    uuid = dm_uuid(device, sys_block)
    if uuid is not None and not uuid.startswith(DM_UUID_LVM_PREFIX):
        log.debug(f"{device} is a {uuid.split('-', 1)[0]} mapper device, not LVM")
        return None
    volume = parse_lvm_device_path(device)
    if volume is None:
        return None
    log.debug(f"Volume group of {device} from name convention: {volume.vg_name}")
    return volume.vg_name


def logical_volume_from_arg(item: str) -> Optional[LogicalVolume]:
    """Parse an ``rd.lvm.lv=<vg>/<lv>`` item."""
    vg_name, sep, lv_name = item.partition("/")
    if not sep or not vg_name or not lv_name:
        return None
    return LogicalVolume(vg_name=vg_name, lv_name=lv_name)


def is_block_device(path: str) -> bool:
    try:
        return Path(path).is_block_device()
    except OSError:
        return False
