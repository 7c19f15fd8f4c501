"""Tests for storage/copy/filters.py - rsync filter composition."""

import pytest

from zramroot.config.settings import Settings
from zramroot.storage.copy.filters import (
    DEFAULT_EXCLUDES,
    EXCLUDE,
    INCLUDE,
    FilterSet,
    pattern_matches,
)


class TestPatternMatches:
    """Tests for the rsync wildcard translation."""

    @pytest.mark.parametrize(
        "pattern,path,expected",
        [
            ("/proc/*", "/proc/1", True),
            ("/proc/*", "/proc", False),
            ("/proc/*", "/usr/proc/1", False),
            ("*.log", "/var/log/syslog.log", True),
            ("*.log", "/var/log/syslog", False),
            ("/var/cache/**", "/var/cache/apt/archives/x.deb", True),
            ("/home/?", "/home/a", True),
            ("/home/?", "/home/ab", False),
            ("/lost+found", "/lost+found", True),
            ("/var/tmp/", "/var/tmp", True),
        ],
    )
    def test_matching(self, pattern, path, expected):
        assert pattern_matches(pattern, path) is expected


class TestFilterSet:
    """Tests for FilterSet rule order and decisions."""

    def test_rule_order(self):
        filters = FilterSet(
            includes=("/var/log/keep.log",),
            mount_on_disk=("/home/",),
            excludes=("/var/cache/*",),
        )

        rules = filters.rules()

        assert rules[0] == (INCLUDE, "/var/log/keep.log")
        assert rules[1:3] == [(EXCLUDE, "/home"), (EXCLUDE, "/home/*")]
        assert rules[3] == (EXCLUDE, "/var/cache/*")
        assert rules[4:] == [(EXCLUDE, pattern) for pattern in DEFAULT_EXCLUDES]

    def test_rsync_args(self):
        args = FilterSet(includes=("/a",), excludes=("/b",), defaults=()).rsync_args()
        assert args == ["--include=/a", "--exclude=/b"]

    def test_include_beats_exclude(self):
        """A path matching both an include and an exclude is copied."""
        filters = FilterSet(includes=("*.conf",), excludes=("/etc/*",))

        assert filters.decide("/etc/app.conf") is True
        assert filters.decide("/etc/passwd") is False

    def test_default_exclusions(self):
        filters = FilterSet()

        assert filters.decide("/proc/1/status") is False
        assert filters.decide("/var/log/journal/abc/system.journal") is False
        assert filters.decide("/proc") is True
        assert filters.decide("/usr/bin/ls") is True

    def test_mount_on_disk_skips_whole_subtree(self):
        filters = FilterSet(mount_on_disk=("home",))

        assert filters.decide("/home") is False
        assert filters.decide("/home/user/.bashrc") is False
        assert filters.decide("/homework") is True

    def test_from_settings(self):
        settings = Settings(
            include_patterns=("/opt/keep",),
            exclude_patterns=("/opt/*",),
            mount_on_disk=("srv",),
        )

        filters = FilterSet.from_settings(settings)

        assert filters.includes == ("/opt/keep",)
        assert filters.excludes == ("/opt/*",)
        assert filters.mount_on_disk == ("srv",)
        assert filters.decide("/opt/keep") is True
        assert filters.decide("/opt/other") is False

    def test_describe(self):
        lines = list(FilterSet(includes=("/a",), defaults=()).describe())
        assert lines == ["Include: /a"]
