"""Custom exceptions for RAM root migration.

This module defines a hierarchy of exceptions so the boot state machine can
tell fatal failures from retryable ones without parsing messages.

Exception Hierarchy:
    MigrationError (base)
        ├── ConfigError
        ├── InvalidTransitionError
        ├── ResolutionError
        │   ├── RootSpecUnresolvableError
        │   └── DeviceWaitTimeoutError
        ├── CapacityError
        │   └── InsufficientRamError
        ├── ProvisioningError
        │   ├── ZramControlUnavailableError
        │   ├── RamDeviceSetupError
        │   └── ProvisioningExhaustedError
        ├── FormatError
        │   ├── FormatToolMissingError
        │   ├── UnsupportedFilesystemError
        │   └── FormatOperationError
        ├── MountError
        │   ├── MountOperationError
        │   └── DeviceBusyError (retryable)
        ├── CopyError
        │   ├── SourceEmptyError
        │   ├── UnitCopyFailedError (retryable)
        │   ├── CopyTimeoutError
        │   └── PartialCopyError
        └── RewriteError

Usage:
    from zramroot.storage.exceptions import InsufficientRamError

    if available_mib < required_mib:
        raise InsufficientRamError(required_mib, available_mib)
"""

from __future__ import annotations

from typing import Iterable, Optional


class MigrationError(Exception):
    """Base exception for all migration failures."""

    retryable = False


class ConfigError(MigrationError):
    """Configuration file holds an invalid value."""

    def __init__(self, key: str, value: str, reason: str):
        self.key = key
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid configuration {key}={value!r}: {reason}")


class InvalidTransitionError(MigrationError):
    """The boot state machine was asked to move backwards or out of a terminal state."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid stage transition {current} -> {requested}")


class ResolutionError(MigrationError):
    """Base exception for root device resolution errors."""


class RootSpecUnresolvableError(ResolutionError):
    """The root specification does not name any block device."""

    def __init__(self, root_spec: str, reason: str = ""):
        self.root_spec = root_spec
        self.reason = reason
        msg = f"Cannot resolve root device from {root_spec!r}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class DeviceWaitTimeoutError(ResolutionError):
    """Device did not appear within the bounded wait."""

    def __init__(self, device_path: str, timeout_seconds: float):
        self.device_path = device_path
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Device {device_path} did not become available within "
            f"{timeout_seconds:g} seconds"
        )


class CapacityError(MigrationError):
    """Base exception for capacity planning errors."""


class InsufficientRamError(CapacityError):
    """Not enough RAM to hold the compressed root plus safety margins."""

    def __init__(self, required_mib: int, available_mib: int):
        self.required_mib = required_mib
        self.available_mib = available_mib
        super().__init__(
            f"Insufficient RAM: need {required_mib} MiB, have {available_mib} MiB"
        )


class ProvisioningError(MigrationError):
    """Base exception for RAM block device provisioning errors."""


class ZramControlUnavailableError(ProvisioningError):
    """Neither the zram control interface nor the device appeared."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"zram control interface not available after {timeout_seconds:g}s "
            "(zram module missing or not loaded)"
        )


class RamDeviceSetupError(ProvisioningError):
    """One candidate device could not be created or configured."""

    def __init__(self, device_number: int, step: str, reason: str = ""):
        self.device_number = device_number
        self.step = step
        self.reason = reason
        msg = f"zram{device_number}: {step} failed"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ProvisioningExhaustedError(ProvisioningError):
    """Every candidate device number failed."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        msg = f"Failed to set up a zram device after {attempts} attempts"
        if last_error is not None:
            msg += f" (last error: {last_error})"
        super().__init__(msg)


class FormatError(MigrationError):
    """Base exception for format operations."""


class FormatToolMissingError(FormatError):
    """The mkfs tool for the configured filesystem is not installed."""

    def __init__(self, tool: str, package_hint: str = ""):
        self.tool = tool
        self.package_hint = package_hint
        msg = f"{tool} not found in initramfs"
        if package_hint:
            msg += f" - install {package_hint} and rebuild initramfs"
        super().__init__(msg)


class UnsupportedFilesystemError(FormatError):
    def __init__(self, fs_type: str):
        self.fs_type = fs_type
        super().__init__(f"Unsupported filesystem type: {fs_type}")


class FormatOperationError(FormatError):
    """Generic format operation failure."""

    def __init__(self, message: str, device: str = None):
        self.device = device
        super().__init__(message)


class MountError(MigrationError):
    """Base exception for mount-related errors."""


class MountOperationError(MountError):
    """mount or umount returned an error."""

    def __init__(self, message: str, target: str = None):
        self.target = target
        super().__init__(message)


class DeviceBusyError(MountError):
    """Device is currently in use; the operation may succeed on retry."""

    retryable = True

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device {device_name} is busy"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class CopyError(MigrationError):
    """Base exception for the migration copy."""


class SourceEmptyError(CopyError):
    def __init__(self, source: str):
        self.source = source
        super().__init__(f"Could not determine size of source {source} (zero or unreadable)")


class UnitCopyFailedError(CopyError):
    """One work unit failed to copy; the worker retries it."""

    retryable = True

    def __init__(self, unit: str, exit_code: int, stderr: str = ""):
        self.unit = unit
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Copy of {unit} failed with exit code {exit_code}")


class CopyTimeoutError(CopyError):
    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Copy operation timed out after {timeout_seconds:g} seconds")


class PartialCopyError(CopyError):
    """Raised under the strict policy when units exhausted their retries."""

    def __init__(self, failed_units: Iterable[str]):
        self.failed_units = list(failed_units)
        super().__init__(
            f"{len(self.failed_units)} unit(s) failed to copy: "
            f"{', '.join(self.failed_units)}"
        )


class RewriteError(MigrationError):
    """fstab rewrite failure. Best-effort; never fatal to the migration."""

    def __init__(self, message: str, path: str = None):
        self.path = path
        super().__init__(message)
