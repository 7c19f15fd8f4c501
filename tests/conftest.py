"""
Pytest configuration and shared fixtures for zramroot tests.

No test executes an external tool: subprocess calls are patched and
filesystem behavior runs inside tmp_path.
"""

import subprocess
from pathlib import Path
from typing import Callable, List
from unittest.mock import Mock

import pytest

from zramroot import logging as logging_module
from zramroot.config.settings import Settings
from zramroot.domain.models import ContainerKind, RamDevice, ResolvedDevice
from zramroot.storage.system import MemoryInfo


# ==============================================================================
# Logging Fixtures
# ==============================================================================


@pytest.fixture
def log_records():
    """
    Fixture capturing every loguru record emitted during the test.

    Returns:
        List of loguru record dicts, in emission order.
    """
    records: list = []

    def sink(message):
        records.append(message.record)

    sink_id = logging_module.logger.add(sink, level="DEBUG", enqueue=False)
    yield records
    logging_module.logger.remove(sink_id)


@pytest.fixture(autouse=True)
def reset_physical_log():
    """Auto-use fixture closing any physical log file a test attached."""
    yield
    logging_module.detach_physical_log()


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> Mock:
    """Build a CompletedProcess-like mock."""
    result = Mock(spec=subprocess.CompletedProcess)
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


@pytest.fixture
def completed_process() -> Callable[..., Mock]:
    """Fixture providing the CompletedProcess mock builder."""
    return completed


@pytest.fixture
def mock_subprocess_success(mocker) -> Mock:
    """
    Fixture providing a mock subprocess.run that always succeeds.

    Returns:
        Mock object for subprocess.run.
    """
    return mocker.patch("subprocess.run", return_value=completed())


@pytest.fixture
def capture_subprocess_calls(mocker) -> List[List[str]]:
    """
    Fixture that captures all subprocess.run calls for inspection.

    Returns:
        List that will contain all subprocess command arguments.
    """
    calls: List[List[str]] = []

    def track_call(cmd, **kwargs):
        calls.append(list(cmd))
        return completed()

    mocker.patch("subprocess.run", side_effect=track_call)
    return calls


class FakeProcess:
    """Popen stand-in returning a scripted exit code."""

    def __init__(self, command, returncode: int = 0, stderr: str = ""):
        self.command = command
        self.returncode = None
        self._final_code = returncode
        self._stderr = stderr
        self.terminated = False

    def communicate(self):
        self.returncode = -15 if self.terminated else self._final_code
        return "", self._stderr

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True


@pytest.fixture
def fake_popen() -> Callable:
    """
    Fixture providing a Popen factory driven by a per-unit exit code table.

    ``fake_popen.codes[name]`` is a list of exit codes consumed one per
    attempt for the unit whose path ends in ``name``; units without an
    entry succeed. Every command is recorded in ``fake_popen.commands``.
    """

    def factory(command, **kwargs):
        factory.commands.append(command)
        source = command[-2].rstrip("/")
        name = source.rsplit("/", 1)[-1]
        codes = factory.codes.get(name)
        code = codes.pop(0) if codes else 0
        return FakeProcess(command, returncode=code, stderr="rsync error" if code else "")

    factory.commands = []
    factory.codes = {}
    return factory


# ==============================================================================
# Domain Fixtures
# ==============================================================================


@pytest.fixture
def settings() -> Settings:
    """Fixture providing default settings."""
    return Settings()


@pytest.fixture
def memory() -> MemoryInfo:
    return MemoryInfo(total_mib=8192, available_mib=6000)


@pytest.fixture
def plain_device() -> ResolvedDevice:
    return ResolvedDevice(path="/dev/sda2", fs_type="ext4", container=ContainerKind.PLAIN)


@pytest.fixture
def lvm_device() -> ResolvedDevice:
    return ResolvedDevice(
        path="/dev/mapper/vg0-root",
        fs_type="ext4",
        container=ContainerKind.LVM,
        member_path="/dev/sda2",
    )


@pytest.fixture
def ram_device() -> RamDevice:
    return RamDevice(
        device_number=0,
        size_bytes=4096 * 1024 * 1024,
        compression_algorithm="lz4",
        backing_path="/dev/zram0",
    )


@pytest.fixture
def source_tree(tmp_path) -> Path:
    """
    Fixture providing a small root filesystem tree.

    Layout: etc/, usr/bin/, var/log/, home/user/, a top-level file and a
    top-level symlink, plus the pseudo filesystem directories.
    """
    root = tmp_path / "physical"
    for directory in ("etc", "usr/bin", "var/log", "home/user", "proc", "sys", "dev"):
        (root / directory).mkdir(parents=True)
    (root / "etc" / "fstab").write_text("/dev/sda2 / ext4 defaults 0 1\n")
    (root / "vmlinuz").write_text("kernel")
    (root / "bin").symlink_to("usr/bin")
    return root
