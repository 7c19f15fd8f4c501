"""Tests for storage exception classes."""

import pytest

from zramroot.storage.exceptions import (
    CapacityError,
    ConfigError,
    CopyError,
    CopyTimeoutError,
    DeviceBusyError,
    DeviceWaitTimeoutError,
    FormatError,
    FormatToolMissingError,
    InsufficientRamError,
    MigrationError,
    MountError,
    PartialCopyError,
    ProvisioningError,
    ProvisioningExhaustedError,
    RamDeviceSetupError,
    ResolutionError,
    RewriteError,
    RootSpecUnresolvableError,
    SourceEmptyError,
    UnitCopyFailedError,
    ZramControlUnavailableError,
)


class TestExceptionHierarchy:
    """Test exception inheritance hierarchy."""

    @pytest.mark.parametrize(
        "error,parent",
        [
            (RootSpecUnresolvableError("LABEL=x"), ResolutionError),
            (DeviceWaitTimeoutError("/dev/sda2", 30), ResolutionError),
            (InsufficientRamError(10, 5), CapacityError),
            (ZramControlUnavailableError(30), ProvisioningError),
            (RamDeviceSetupError(0, "disksize"), ProvisioningError),
            (ProvisioningExhaustedError(10), ProvisioningError),
            (FormatToolMissingError("mkfs.xfs"), FormatError),
            (DeviceBusyError("/dev/zram0"), MountError),
            (SourceEmptyError("/mnt/real_root_rw"), CopyError),
            (CopyTimeoutError(1800), CopyError),
            (PartialCopyError(["var"]), CopyError),
            (RewriteError("fstab"), MigrationError),
            (ConfigError("WAIT_TIMEOUT", "x", "expected an integer"), MigrationError),
        ],
    )
    def test_parents(self, error, parent):
        assert isinstance(error, parent)
        assert isinstance(error, MigrationError)


class TestRetryable:
    """Only transient failures are marked retryable."""

    def test_retryable(self):
        assert DeviceBusyError("/dev/zram0").retryable is True
        assert UnitCopyFailedError("var", 23).retryable is True

    @pytest.mark.parametrize(
        "error",
        [
            InsufficientRamError(10, 5),
            ProvisioningExhaustedError(10),
            CopyTimeoutError(5),
            RootSpecUnresolvableError("UUID=1"),
        ],
    )
    def test_fatal(self, error):
        assert error.retryable is False


class TestMessages:
    def test_insufficient_ram(self):
        error = InsufficientRamError(5168, 5000)
        assert error.required_mib == 5168
        assert str(error) == "Insufficient RAM: need 5168 MiB, have 5000 MiB"

    def test_unresolvable_with_reason(self):
        error = RootSpecUnresolvableError("LABEL=x", "no block device carries this tag")
        assert str(error) == "Cannot resolve root device from 'LABEL=x': no block device carries this tag"

    def test_wait_timeout(self):
        assert "within 30 seconds" in str(DeviceWaitTimeoutError("/dev/sda2", 30))

    def test_exhausted_includes_last_error(self):
        last = RamDeviceSetupError(9, "create", "device did not appear")
        error = ProvisioningExhaustedError(10, last)
        assert error.last_error is last
        assert "zram9: create failed: device did not appear" in str(error)

    def test_format_tool_hint(self):
        assert "install xfsprogs" in str(FormatToolMissingError("mkfs.xfs", "xfsprogs"))

    def test_partial_copy_lists_units(self):
        assert str(PartialCopyError(("var", "home"))) == "2 unit(s) failed to copy: var, home"
