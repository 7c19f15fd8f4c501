"""Tests for storage/copy/operations.py - the parallel migration copy.

rsync never runs: workers get a fake Popen whose exit codes are scripted
per unit, and sizes come from a fake measure function.
"""

import itertools
import threading

import pytest

from zramroot.domain.models import ROOT_FILES_UNIT
from zramroot.storage.copy.filters import FilterSet
from zramroot.storage.copy.operations import (
    SKELETON_DIRS,
    CopyOptions,
    MigrationCopy,
    create_skeleton,
)
from zramroot.storage.exceptions import CopyTimeoutError, PartialCopyError, SourceEmptyError


def _measure_for(source):
    def measure(path):
        if path == str(source):
            return 1000
        return 100

    return measure


def _engine(source, dest, popen, *, measure=None, **options):
    defaults = {"retry_delay": 0}
    defaults.update(options)
    return MigrationCopy(
        source,
        dest,
        CopyOptions(**defaults),
        cpu_count=2,
        available_mib=8000,
        measure=measure or _measure_for(source),
        popen=popen,
        sleep=lambda seconds: None,
        interval=0,
    )


@pytest.fixture
def dest(tmp_path):
    path = tmp_path / "ram"
    path.mkdir()
    return path


class TestPlan:
    """Tests for MigrationCopy.plan()."""

    def test_plan_distributes_discovered_units(self, source_tree, dest, fake_popen):
        engine = _engine(source_tree, dest, fake_popen)

        total, bins = engine.plan()

        assert total == 1000
        assert len(bins) == 2
        names = [name for job_bin in bins for name in job_bin.unit_names]
        assert sorted(names) == sorted(["etc", "usr", "var", "home", ROOT_FILES_UNIT])
        assert sum(job_bin.total_kib for job_bin in bins) == 1000

    def test_empty_source_is_fatal(self, source_tree, dest, fake_popen):
        engine = _engine(source_tree, dest, fake_popen, measure=lambda path: 0)

        with pytest.raises(SourceEmptyError):
            engine.plan()


class TestRun:
    """Tests for MigrationCopy.run()."""

    def test_successful_copy(self, source_tree, dest, fake_popen, log_records):
        report = _engine(source_tree, dest, fake_popen).run()

        assert report.complete
        assert report.total_kib == 1000
        assert report.threads == 2
        # one rsync per unit, nothing retried
        assert len(fake_popen.commands) == 5
        messages = [record["message"] for record in log_records]
        assert any("100%" in message for message in messages)

    def test_scenario_d_failed_unit_is_best_effort(self, source_tree, dest, fake_popen):
        """A unit failing all 3 attempts does not fail the copy by default."""
        fake_popen.codes["var"] = [23, 23, 23]

        report = _engine(source_tree, dest, fake_popen, retries=3).run()

        assert report.failed_units == ("var",)
        assert not report.complete
        var_commands = [cmd for cmd in fake_popen.commands if cmd[-2].endswith("/var")]
        assert len(var_commands) == 3

    def test_transient_failure_is_retried(self, source_tree, dest, fake_popen):
        fake_popen.codes["usr"] = [12]

        report = _engine(source_tree, dest, fake_popen).run()

        assert report.complete
        usr_commands = [cmd for cmd in fake_popen.commands if cmd[-2].endswith("/usr")]
        assert len(usr_commands) == 2

    def test_strict_policy_raises_partial_copy(self, source_tree, dest, fake_popen):
        fake_popen.codes["etc"] = [1, 1, 1]

        with pytest.raises(PartialCopyError) as exc_info:
            _engine(source_tree, dest, fake_popen, strict=True).run()

        assert exc_info.value.failed_units == ["etc"]

    def test_timeout_cancels_workers(self, source_tree, dest):
        release = threading.Event()

        class BlockingProcess:
            returncode = None

            def communicate(self):
                release.wait(5)
                self.returncode = -15
                return "", ""

            def poll(self):
                return self.returncode

            def terminate(self):
                release.set()

        counter = itertools.count(0, 1000)
        engine = MigrationCopy(
            source_tree,
            dest,
            CopyOptions(timeout=10, retry_delay=0),
            cpu_count=2,
            available_mib=8000,
            measure=_measure_for(source_tree),
            popen=lambda command, **kwargs: BlockingProcess(),
            sleep=lambda seconds: None,
            clock=lambda: next(counter),
            interval=0,
        )

        with pytest.raises(CopyTimeoutError):
            engine.run()

        assert all(not worker.is_alive() for worker in engine.workers)
        # cancelled units are not reported as failures
        assert all(not worker.failed_units for worker in engine.workers)

    def test_filters_passed_to_rsync(self, source_tree, dest, fake_popen):
        filters = FilterSet(excludes=("/var/cache/*",), defaults=())

        _engine(source_tree, dest, fake_popen, filters=filters).run()

        assert all("--exclude=/var/cache/*" in command for command in fake_popen.commands)


class TestCopyOptions:
    def test_from_settings(self, settings):
        options = CopyOptions.from_settings(settings)

        assert options.timeout == 1800
        assert options.retries == 3
        assert options.strict is False
        assert options.threads_hint == 0


class TestCreateSkeleton:
    """Tests for create_skeleton()."""

    def test_creates_pseudo_filesystem_mount_points(self, tmp_path):
        create_skeleton(tmp_path)

        for name, mode in SKELETON_DIRS.items():
            path = tmp_path / name
            assert path.is_dir()
            assert path.stat().st_mode & 0o7777 == mode

    def test_tmp_is_sticky_world_writable(self, tmp_path):
        create_skeleton(tmp_path)
        assert (tmp_path / "tmp").stat().st_mode & 0o7777 == 0o1777
