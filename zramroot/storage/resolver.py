"""Root device resolution.

Turns a ``root=`` specification into the block device that actually holds
the root filesystem, following LUKS and LVM containers:

    UUID=... --blkid--> /dev/sda2 (crypto_LUKS)
             --rd.luks.name / rd.luks.uuid / luks-<UUID>--> /dev/mapper/luks-...
             (LVM2_member) --vgchange -ay, rd.lvm.lv--> /dev/mapper/vg-root

The resolver only reads and activates; it never destroys state.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from zramroot.boot.cmdline import KernelCmdline
from zramroot.domain.models import ContainerKind, ResolvedDevice, RootSpec, RootSpecKind
from zramroot.logging import LoggerFactory
from zramroot.storage import blockinfo
from zramroot.storage.exceptions import DeviceWaitTimeoutError, RootSpecUnresolvableError
from zramroot.storage.retry import wait_until


log = LoggerFactory.for_resolver()

MIN_WAIT_TIMEOUT = 30
MAX_WAIT_TIMEOUT = 180


def effective_wait_timeout(wait_timeout: int, rootdelay: Optional[int] = None) -> int:
    """Device-appearance timeout scaled by ``rootdelay`` and clamped to [30, 180]."""
    timeout = max(wait_timeout, rootdelay or 0)
    return max(MIN_WAIT_TIMEOUT, min(MAX_WAIT_TIMEOUT, timeout))


def luks_mapper_candidate(root_uuid: Optional[str], cmdline: KernelCmdline) -> Optional[str]:
    """Mapper path the initramfs will use for an encrypted root.

    Preference: ``rd.luks.name=<uuid>=<name>``, then ``rd.luks.uuid=``, then
    ``luks-<UUID>``. Arguments naming a different UUID are skipped.
    """
    for item in cmdline.luks_names:
        uuid, sep, name = item.partition("=")
        if not sep or not name:
            continue
        if not root_uuid or uuid == root_uuid:
            return f"/dev/mapper/{name}"
    for uuid in cmdline.luks_uuids:
        if uuid.startswith("UUID="):
            uuid = uuid[len("UUID="):]
        if not uuid:
            continue
        bare = uuid[len("luks-"):] if uuid.startswith("luks-") else uuid
        if not root_uuid or bare == root_uuid:
            return f"/dev/mapper/luks-{bare}"
    if root_uuid:
        return f"/dev/mapper/luks-{root_uuid}"
    return None


def lvm_root_candidate(device: str, cmdline: KernelCmdline) -> Optional[str]:
    """Logical volume to use as root; an explicit mapper path wins."""
    if device.startswith("/dev/mapper/"):
        return device
    for item in cmdline.lvm_volumes:
        volume = blockinfo.logical_volume_from_arg(item)
        if volume is not None:
            return volume.mapper_path
    return None


class DeviceResolver:
    """Resolve a RootSpec to a ResolvedDevice.

    ``activated_volume_groups`` records whether this resolver ran
    ``vgchange -ay`` so the caller can undo it on rollback.
    """

    def __init__(
        self,
        cmdline: KernelCmdline,
        timeout: float,
        *,
        interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cmdline = cmdline
        self.timeout = timeout
        self.interval = interval
        self._sleep = sleep
        self._clock = clock
        self.activated_volume_groups = False

    def _wait(self, predicate: Callable[[], bool]) -> bool:
        return wait_until(
            predicate,
            self.timeout,
            interval=self.interval,
            clock=self._clock,
            sleep=self._sleep,
        )

    def _wait_for_device(self, device: str) -> None:
        if blockinfo.device_exists(device):
            return
        log.info(f"Waiting for {device} (timeout: {self.timeout:g}s)")
        if not self._wait(lambda: blockinfo.device_exists(device)):
            raise DeviceWaitTimeoutError(device, self.timeout)
        log.info(f"Device {device} is now available")

    def _initial_device(self, spec: RootSpec) -> str:
        if spec.is_tag:
            found: list[str] = []

            def _lookup() -> bool:
                device = blockinfo.find_device_by_tag(spec.tag)
                if device:
                    found.append(device)
                    return True
                return False

            if not self._wait(_lookup):
                raise RootSpecUnresolvableError(spec.raw, "no block device carries this tag")
            return found[0]
        if spec.value.startswith("/dev/disk/by-") and blockinfo.device_exists(spec.value):
            return blockinfo.resolve_symlink(spec.value)
        return spec.value

    def _root_uuid(self, spec: RootSpec, device: str) -> Optional[str]:
        if spec.kind in (RootSpecKind.UUID, RootSpecKind.PARTUUID):
            return spec.value
        return blockinfo.get_uuid(device)

    def _activate_lvm(self, volume: Optional[str]) -> None:
        # Groups that were already active belong to the boot framework
        if volume and blockinfo.device_exists(volume):
            log.debug(f"{volume} already active, skipping volume group activation")
            return
        log.info("Activating LVM volume groups")
        if blockinfo.activate_volume_groups():
            self.activated_volume_groups = True

    def resolve(self, spec: RootSpec) -> ResolvedDevice:
        """Resolve ``spec``.

        Raises:
            RootSpecUnresolvableError: If no device matches the specification
            DeviceWaitTimeoutError: If the device (or its mapper) never appears
        """
        blockinfo.settle_udev()
        device = self._initial_device(spec)
        log.debug(f"Root specification {spec.raw} -> {device}")

        container = ContainerKind.PLAIN
        member: Optional[str] = None

        if spec.kind is RootSpecKind.LVM:
            self._activate_lvm(device)
            container = ContainerKind.LVM
        else:
            self._wait_for_device(device)
            fs_type = blockinfo.get_fs_type(device)

            if fs_type == blockinfo.FS_TYPE_LUKS and not device.startswith("/dev/mapper/"):
                mapper = luks_mapper_candidate(self._root_uuid(spec, device), self.cmdline)
                if mapper is None:
                    raise RootSpecUnresolvableError(
                        spec.raw, "encrypted root without a usable UUID or rd.luks argument"
                    )
                log.info(f"Detected encrypted root, waiting for mapper device: {mapper}")
                self._wait_for_device(mapper)
                member, device = device, mapper
                container = ContainerKind.LUKS
                fs_type = blockinfo.get_fs_type(device)

            if fs_type == blockinfo.FS_TYPE_LVM_MEMBER:
                explicit = spec.value if spec.kind is RootSpecKind.PATH else ""
                volume = lvm_root_candidate(explicit, self.cmdline)
                if volume is None:
                    raise RootSpecUnresolvableError(
                        spec.raw, "LVM physical volume but no logical volume given (rd.lvm.lv=)"
                    )
                log.info("Detected LVM2 member")
                self._activate_lvm(volume)
                log.info(f"Using LVM root device: {volume}")
                member = member or device
                device = volume
                container = ContainerKind.LVM

        self._wait_for_device(device)
        resolved = ResolvedDevice(
            path=device,
            fs_type=blockinfo.get_fs_type(device),
            container=container,
            member_path=member,
        )
        log.info(
            f"Physical root device: {resolved.path} "
            f"(type: {resolved.fs_type or 'unknown'}, container: {resolved.container.value})"
        )
        return resolved
