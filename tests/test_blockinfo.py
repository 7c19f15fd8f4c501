"""Tests for storage/blockinfo.py - block device inspection."""

from unittest.mock import patch

import pytest

from zramroot.storage import blockinfo
from zramroot.storage.blockinfo import LogicalVolume


class TestMapperNaming:
    """Tests for device-mapper naming rules."""

    @pytest.mark.parametrize(
        "vg,lv,expected",
        [
            ("vg0", "root", "/dev/mapper/vg0-root"),
            ("my-vg", "root", "/dev/mapper/my--vg-root"),
            ("vg", "lv-home", "/dev/mapper/vg-lv--home"),
        ],
    )
    def test_mapper_path(self, vg, lv, expected):
        assert blockinfo.lvm_mapper_path(vg, lv) == expected

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("vg0-root", LogicalVolume("vg0", "root")),
            ("my--vg-root", LogicalVolume("my-vg", "root")),
            ("vg-lv--home", LogicalVolume("vg", "lv-home")),
            ("luks-1234-abcd", None),
            ("cryptroot", None),
        ],
    )
    def test_split_mapper_name(self, name, expected):
        assert blockinfo.split_mapper_name(name) == expected

    @pytest.mark.parametrize(
        "path,vg",
        [
            ("/dev/mapper/vg0-root", "vg0"),
            ("/dev/vg0/root", "vg0"),
            ("/dev/disk/by-uuid", None),
            ("/dev/md/root", None),
            ("/dev/sda2", None),
        ],
    )
    def test_parse_lvm_device_path(self, path, vg):
        volume = blockinfo.parse_lvm_device_path(path)
        assert (volume.vg_name if volume else None) == vg

    @pytest.mark.parametrize("item", ["vg0", "/root", "vg0/", ""])
    def test_invalid_lvm_argument(self, item):
        assert blockinfo.logical_volume_from_arg(item) is None

    def test_lvm_argument(self):
        assert blockinfo.logical_volume_from_arg("vg0/root").mapper_path == "/dev/mapper/vg0-root"


class TestProbes:
    """Tests for blkid probes."""

    def test_find_device_by_tag(self, completed_process):
        with patch.object(blockinfo, "run_command", return_value=completed_process(0, "/dev/sda2\n")) as mock_run:
            assert blockinfo.find_device_by_tag("UUID=1234") == "/dev/sda2"
        mock_run.assert_called_once_with(["blkid", "-o", "device", "-t", "UUID=1234"], check=False)

    def test_tag_not_found(self, completed_process):
        with patch.object(blockinfo, "run_command", return_value=completed_process(2)):
            assert blockinfo.find_device_by_tag("LABEL=none") is None

    def test_blkid_missing(self):
        with patch.object(blockinfo, "run_command", side_effect=FileNotFoundError("blkid")):
            assert blockinfo.find_device_by_tag("UUID=1") is None
            assert blockinfo.get_fs_type("/dev/sda2") is None

    def test_get_fs_type(self, completed_process):
        with patch.object(blockinfo, "run_command", return_value=completed_process(0, "crypto_LUKS\n")) as mock_run:
            assert blockinfo.get_fs_type("/dev/sda2") == blockinfo.FS_TYPE_LUKS
        assert mock_run.call_args[0][0] == ["blkid", "-o", "value", "-s", "TYPE", "/dev/sda2"]

    def test_get_uuid_empty_output(self, completed_process):
        with patch.object(blockinfo, "run_command", return_value=completed_process(0, "\n")):
            assert blockinfo.get_uuid("/dev/sda2") is None


class TestVolumeGroups:
    """Tests for LVM helpers."""

    def test_volume_group_from_lvs(self, completed_process):
        with patch.object(blockinfo, "command_exists", return_value=True), patch.object(
            blockinfo, "run_command", return_value=completed_process(0, "  vg-data  \n")
        ):
            assert blockinfo.volume_group_of("/dev/mapper/vg--data-root") == "vg-data"

    def test_volume_group_from_name_without_lvs(self):
        with patch.object(blockinfo, "command_exists", return_value=False):
            assert blockinfo.volume_group_of("/dev/mapper/my--vg-root") == "my-vg"
            assert blockinfo.volume_group_of("/dev/sda2") is None

    def test_activate(self):
        with patch.object(blockinfo, "command_exists", return_value=True), patch.object(
            blockinfo, "try_command", return_value=True
        ) as mock_try:
            assert blockinfo.activate_volume_groups() is True
        mock_try.assert_called_once_with(["vgchange", "-ay"])

    def test_activate_without_lvm_tools(self):
        with patch.object(blockinfo, "command_exists", return_value=False):
            assert blockinfo.activate_volume_groups() is False

    @pytest.mark.parametrize("vg,command", [("vg0", ["vgchange", "-an", "vg0"]), (None, ["vgchange", "-an"])])
    def test_deactivate(self, vg, command):
        with patch.object(blockinfo, "command_exists", return_value=True), patch.object(
            blockinfo, "try_command", return_value=True
        ) as mock_try:
            blockinfo.deactivate_volume_groups(vg)
        mock_try.assert_called_once_with(command)

    def test_settle_udev(self):
        with patch.object(blockinfo, "command_exists", return_value=True), patch.object(
            blockinfo, "try_command", return_value=True
        ) as mock_try:
            assert blockinfo.settle_udev(5) is True
        mock_try.assert_called_once_with(["udevadm", "settle", "--timeout=5"])


def test_is_block_device(tmp_path):
    regular = tmp_path / "file"
    regular.write_text("")
    assert blockinfo.is_block_device(str(regular)) is False
    assert blockinfo.is_block_device(str(tmp_path / "missing")) is False


class TestDeviceMapperUuid:
    """Tests for dm_uuid() and its use in volume_group_of()."""

    @pytest.fixture
    def sys_block(self, tmp_path):
        return tmp_path / "block"

    def add_dm(self, sys_block, name, uuid):
        (sys_block / name / "dm").mkdir(parents=True)
        (sys_block / name / "dm" / "uuid").write_text(uuid + "\n")

    def test_dm_uuid(self, sys_block):
        self.add_dm(sys_block, "vg0-root", "LVM-abcdef")
        assert blockinfo.dm_uuid("/dev/mapper/vg0-root", sys_block) == "LVM-abcdef"
        assert blockinfo.dm_uuid("/dev/sda2", sys_block) is None

    def test_crypt_mapper_is_not_a_volume_group(self, sys_block):
        self.add_dm(sys_block, "cryptroot-data", "CRYPT-LUKS2-1234-cryptroot-data")
        with patch.object(blockinfo, "command_exists", return_value=False):
            assert blockinfo.volume_group_of("/dev/mapper/cryptroot-data", sys_block) is None

    def test_lvm_mapper_falls_through_to_name(self, sys_block):
        self.add_dm(sys_block, "vg0-root", "LVM-abcdef")
        with patch.object(blockinfo, "command_exists", return_value=False):
            assert blockinfo.volume_group_of("/dev/mapper/vg0-root", sys_block) == "vg0"

    def test_raid_array_is_not_a_volume_group(self, sys_block):
        with patch.object(blockinfo, "command_exists", return_value=False):
            assert blockinfo.volume_group_of("/dev/md/root", sys_block) is None
