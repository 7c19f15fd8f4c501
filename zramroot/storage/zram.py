"""Compressed RAM block device provisioning.

Devices are driven through sysfs:

    /sys/class/zram-control/hot_add     read to create a device
    /sys/block/zramN/reset              write 1 to drop all state
    /sys/block/zramN/comp_algorithm     compression algorithm
    /sys/block/zramN/disksize           size in bytes

When the sysfs attributes are missing, ``zramctl`` configures the device
instead. A candidate number that fails any step is abandoned for the next
one; reserved numbers (e.g. the swap device) are never touched.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, Iterable, Optional

from zramroot.domain.models import MIB, RamDevice
from zramroot.logging import LoggerFactory
from zramroot.storage.commands import command_exists, run_command, try_command
from zramroot.storage.exceptions import (
    ProvisioningExhaustedError,
    RamDeviceSetupError,
    ZramControlUnavailableError,
)
from zramroot.storage.retry import RetryPolicy, retry_call, wait_until


log = LoggerFactory.for_zram()

SYSFS_ROOT = Path("/sys")
DEV_ROOT = Path("/dev")
CONTROL_TIMEOUT = 30
DEFAULT_MAX_ATTEMPTS = 10


def required_device_count(root_number: int, swap_number: Optional[int] = None) -> int:
    """``num_devices`` for modprobe so both root and swap numbers exist."""
    count = root_number + 1
    if swap_number is not None:
        count = max(count, swap_number + 1)
    return count


def candidate_numbers(start: int, max_attempts: int, reserved: Iterable[int] = ()) -> list[int]:
    """Device numbers to try, in order. Reserved numbers use up an attempt."""
    reserved_set = set(reserved)
    return [start + i for i in range(max_attempts) if start + i not in reserved_set]


class ZramProvisioner:
    """Create, configure and reset zram devices.

    Args:
        sysfs_root: Mount point of sysfs (tests point this at tmp_path)
        dev_root: Directory holding the device nodes
    """

    def __init__(
        self,
        sysfs_root: Path = SYSFS_ROOT,
        dev_root: Path = DEV_ROOT,
        *,
        control_timeout: float = CONTROL_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sysfs_root = Path(sysfs_root)
        self.dev_root = Path(dev_root)
        self.control_timeout = control_timeout
        self._sleep = sleep
        self._clock = clock

    # -- paths -----------------------------------------------------------

    @property
    def control_dir(self) -> Path:
        return self.sysfs_root / "class" / "zram-control"

    def block_dir(self, number: int) -> Path:
        return self.sysfs_root / "block" / f"zram{number}"

    def device_path(self, number: int) -> Path:
        return self.dev_root / f"zram{number}"

    def device_exists(self, number: int) -> bool:
        return self.device_path(number).exists() or self.block_dir(number).exists()

    # -- module ----------------------------------------------------------

    def load_module(self, num_devices: int) -> bool:
        log.debug(f"Loading zram module with num_devices={num_devices}")
        loaded = try_command(["modprobe", "zram", f"num_devices={num_devices}"])
        if not loaded:
            log.error("Failed to load zram module")
        return loaded

    def wait_for_control(self, device_number: int) -> None:
        """Wait for the control interface or the requested device.

        Raises:
            ZramControlUnavailableError: If neither appears in time
        """
        log.info("Waiting for zram control interface...")
        ready = wait_until(
            lambda: self.control_dir.exists() or self.block_dir(device_number).exists(),
            self.control_timeout,
            clock=self._clock,
            sleep=self._sleep,
        )
        if not ready:
            raise ZramControlUnavailableError(self.control_timeout)

    # -- per-candidate steps ---------------------------------------------

    def _write_attr(self, number: int, name: str, value: str) -> None:
        path = self.block_dir(number) / name
        try:
            path.write_text(f"{value}\n", encoding="utf-8")
        except OSError as error:
            raise RamDeviceSetupError(number, name, str(error)) from error

    def _ensure_exists(self, number: int) -> None:
        if self.device_exists(number):
            log.debug(f"zram{number} already exists")
            return
        hot_add = self.control_dir / "hot_add"
        if hot_add.exists():
            try:
                created = hot_add.read_text(encoding="utf-8").strip()
            except OSError as error:
                raise RamDeviceSetupError(number, "hot_add", str(error)) from error
            log.debug(f"hot_add created zram{created}")
        else:
            log.warning("hot_add not available, reloading module for more devices")
            try_command(["modprobe", "zram", f"num_devices={number + 1}"])
        if not self.device_exists(number):
            raise RamDeviceSetupError(number, "create", "device did not appear")

    def _release(self, number: int) -> None:
        device = str(self.device_path(number))
        try_command(["swapoff", device])
        if not try_command(["umount", device]):
            try_command(["umount", "-l", device])

    def _configure_with_zramctl(self, number: int, size_bytes: int, algorithm: str) -> None:
        if not command_exists("zramctl"):
            raise RamDeviceSetupError(number, "disksize", "sysfs not writable and zramctl missing")
        device = str(self.device_path(number))
        try_command(["zramctl", "--reset", device])
        result = run_command(
            ["zramctl", "--algorithm", algorithm, "--size", str(size_bytes), device],
            check=False,
        )
        if result.returncode != 0:
            raise RamDeviceSetupError(number, "zramctl", (result.stderr or "").strip())

    def _setup_candidate(self, number: int, size_bytes: int, algorithm: str) -> RamDevice:
        self._ensure_exists(number)
        block_dir = self.block_dir(number)
        if (block_dir / "reset").exists():
            log.info(f"Resetting existing zram device zram{number}")
            self._release(number)
            self._write_attr(number, "reset", "1")
        log.info(f"Configuring zram{number} with {algorithm} compression")
        if (block_dir / "disksize").exists():
            if (block_dir / "comp_algorithm").exists():
                self._write_attr(number, "comp_algorithm", algorithm)
            self._write_attr(number, "disksize", str(size_bytes))
        else:
            self._configure_with_zramctl(number, size_bytes, algorithm)
        return RamDevice(
            device_number=number,
            size_bytes=size_bytes,
            compression_algorithm=algorithm,
            backing_path=str(self.device_path(number)),
        )

    # -- public ----------------------------------------------------------

    def provision(
        self,
        size_mib: int,
        algorithm: str,
        start: int,
        *,
        reserved: Iterable[int] = (),
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> RamDevice:
        """Set up a device of ``size_mib`` on the first working candidate.

        Raises:
            ProvisioningExhaustedError: If every candidate number failed
        """
        candidates = candidate_numbers(start, max_attempts, reserved)
        if not candidates:
            raise ProvisioningExhaustedError(0)
        size_bytes = size_mib * MIB

        def _attempt(index: int) -> RamDevice:
            number = candidates[index]
            log.info(
                f"Creating zram device /dev/zram{number} "
                f"(attempt {index + 1}/{len(candidates)})"
            )
            return self._setup_candidate(number, size_bytes, algorithm)

        def _on_retry(index: int, error: BaseException) -> None:
            log.error(f"zram setup failed ({error}), trying next device")

        try:
            device = retry_call(
                _attempt,
                RetryPolicy(attempts=len(candidates), delay=0),
                retry_on=(RamDeviceSetupError,),
                on_retry=_on_retry,
                sleep=self._sleep,
            )
        except RamDeviceSetupError as error:
            raise ProvisioningExhaustedError(len(candidates), error) from error
        log.info(
            f"zram device configured: {device.backing_path} {size_mib} MiB "
            f"with {algorithm} compression"
        )
        return device

    def reset(self, device: RamDevice) -> bool:
        """Drop a device's contents during rollback. Best-effort."""
        self._release(device.device_number)
        try:
            self._write_attr(device.device_number, "reset", "1")
        except RamDeviceSetupError as error:
            log.warning(f"Could not reset {device.backing_path}: {error}")
            return False
        log.info(f"Reset {device.backing_path}")
        return True
