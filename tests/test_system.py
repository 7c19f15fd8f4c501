"""Tests for storage/system.py - host resource readers."""

from types import SimpleNamespace
from unittest.mock import patch

from zramroot.domain.models import MIB
from zramroot.storage import system


class TestResources:
    def test_memory_info(self):
        fake = SimpleNamespace(total=8192 * MIB, available=6000 * MIB + 123)
        with patch.object(system.psutil, "virtual_memory", return_value=fake):
            info = system.get_memory_info()
        assert info == system.MemoryInfo(total_mib=8192, available_mib=6000)

    def test_cpu_count_never_zero(self):
        with patch.object(system.psutil, "cpu_count", return_value=None):
            assert system.get_cpu_count() == 1
        with patch.object(system.psutil, "cpu_count", return_value=8):
            assert system.get_cpu_count() == 8

    def test_used_space(self):
        fake = SimpleNamespace(used=2000 * MIB, total=0, free=0, percent=0)
        with patch.object(system.psutil, "disk_usage", return_value=fake) as mock_usage:
            assert system.get_used_space_mib("/mnt/real_root_rw") == 2000
        mock_usage.assert_called_once_with("/mnt/real_root_rw")


class TestBootEnvironment:
    def test_boot_id(self, tmp_path):
        path = tmp_path / "boot_id"
        path.write_text("0f1e2d3c\n")
        assert system.read_boot_id(path) == "0f1e2d3c"

    def test_boot_id_unavailable(self, tmp_path):
        assert system.read_boot_id(tmp_path / "missing") is None

    def test_systemd_detection(self, tmp_path):
        assert system.is_systemd_initramfs(tmp_path) is True
        assert system.is_systemd_initramfs(tmp_path / "missing") is False
