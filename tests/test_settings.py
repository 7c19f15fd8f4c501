"""Tests for config/settings.py - configuration file loading."""

import pytest

from zramroot.config.settings import (
    DEFAULT_LOG_DIR,
    Settings,
    load_settings,
    parse_config_text,
    settings_from_mapping,
)
from zramroot.storage.exceptions import ConfigError


SAMPLE_CONFIG = """\
# zramroot configuration
DEBUG_MODE=yes
ZRAM_ALGO="zstd"
ZRAM_FS_TYPE='btrfs'
ZRAM_MOUNT_OPTS=noatime,compress=zstd   # inline comment
ZRAM_EXCLUDE_PATTERNS="/var/cache/* /home/*/.cache"
ZRAM_MOUNT_ON_DISK="/home /srv/data"
export WAIT_TIMEOUT=60
COPY_FAILURE_POLICY=strict
not an assignment
"""


class TestParseConfigText:
    """Tests for parse_config_text()."""

    def test_shell_style_values(self):
        values = parse_config_text(SAMPLE_CONFIG)

        assert values["ZRAM_ALGO"] == "zstd"
        assert values["ZRAM_FS_TYPE"] == "btrfs"
        assert values["ZRAM_MOUNT_OPTS"] == "noatime,compress=zstd"
        assert values["ZRAM_EXCLUDE_PATTERNS"] == "/var/cache/* /home/*/.cache"
        assert values["WAIT_TIMEOUT"] == "60"
        assert "not an assignment" not in values

    def test_unbalanced_quote(self):
        with pytest.raises(ConfigError) as exc_info:
            parse_config_text('ZRAM_ALGO="lz4\n')
        assert exc_info.value.key == "ZRAM_ALGO"


class TestSettingsFromMapping:
    """Tests for settings_from_mapping()."""

    def test_defaults(self):
        assert settings_from_mapping({}) == Settings()

    def test_typed_values(self):
        settings = settings_from_mapping(parse_config_text(SAMPLE_CONFIG))

        assert settings.debug_mode is True
        assert settings.zram_algo == "zstd"
        assert settings.zram_fs_type == "btrfs"
        assert settings.exclude_patterns == ("/var/cache/*", "/home/*/.cache")
        assert settings.mount_on_disk == ("/home", "/srv/data")
        assert settings.keeps_physical_root is True
        assert settings.wait_timeout == 60
        assert settings.strict_copy is True

    def test_unknown_keys_are_ignored(self):
        assert settings_from_mapping({"SOMETHING_ELSE": "1"}) == Settings()

    @pytest.mark.parametrize(
        "key,value",
        [
            ("ZRAM_SIZE_MiB", "big"),
            ("ZRAM_SIZE_MiB", "-1"),
            ("DEBUG_MODE", "maybe"),
            ("ZRAM_FS_TYPE", "vfat"),
            ("COPY_FAILURE_POLICY", "sometimes"),
            ("COPY_MAX_RETRIES", "0"),
            ("ZRAM_MAX_ATTEMPTS", "0"),
        ],
    )
    def test_invalid_values(self, key, value):
        with pytest.raises(ConfigError) as exc_info:
            settings_from_mapping({key: value})
        assert exc_info.value.key == key

    @pytest.mark.parametrize("value,expected", [("yes", True), ("On", True), ("1", True), ("no", False), ("", False)])
    def test_booleans(self, value, expected):
        assert settings_from_mapping({"ZRAM_SWAP_ENABLED": value}).zram_swap_enabled is expected

    @pytest.mark.parametrize("value", ["", "/"])
    def test_log_dir_never_bare_root(self, value):
        assert settings_from_mapping({"DEBUG_LOG_DIR": value}).log_dir == DEFAULT_LOG_DIR


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_settings(tmp_path / "absent.conf") == Settings()

    def test_reads_file(self, tmp_path):
        path = tmp_path / "zramroot.conf"
        path.write_text("ZRAM_SIZE_MiB=4096\nZRAM_SWAP_ENABLED=no\n")

        settings = load_settings(path)

        assert settings.zram_size_mib == 4096
        assert settings.zram_swap_enabled is False

    def test_invalid_file_raises(self, tmp_path):
        path = tmp_path / "zramroot.conf"
        path.write_text("ZRAM_BUFFER_PERCENT=ten\n")

        with pytest.raises(ConfigError):
            load_settings(path)
