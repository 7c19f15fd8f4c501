"""Tests for storage/copy/progress.py - copy progress reporting."""

import pytest

from zramroot.logging import get_logger
from zramroot.storage.copy.progress import (
    BAR_WIDTH,
    ProgressMonitor,
    compute_percent,
    render_progress_bar,
)


class TestComputePercent:
    @pytest.mark.parametrize(
        "dest,source,expected",
        [(0, 1000, 0), (500, 1000, 50), (999, 1000, 99), (1000, 1000, 99), (5000, 1000, 99)],
    )
    def test_capped_below_completion(self, dest, source, expected):
        assert compute_percent(dest, source) == expected

    def test_zero_source(self):
        assert compute_percent(100, 0) == 0


class TestRenderProgressBar:
    def test_layout(self):
        bar = render_progress_bar(50, 2, 4)

        assert bar.startswith("[" + "#" * 25 + "-" * 25 + "]")
        assert bar.endswith(" 50% [2/4 threads] Copying...")

    def test_full_bar(self):
        bar = render_progress_bar(100, 0, 4)
        assert bar.startswith("[" + "#" * BAR_WIDTH + "]")


class TestProgressMonitor:
    """Tests for ProgressMonitor."""

    def test_emits_only_on_change(self, tmp_path):
        sizes = iter([100, 100, 300])
        monitor = ProgressMonitor(
            tmp_path, 1000, 2, get_logger(source="test"), measure=lambda path: next(sizes)
        )

        monitor.start()
        assert monitor.poll(2) == 10
        assert monitor.poll(2) is None
        assert monitor.poll(1) == 30
        monitor.finish()

        assert monitor.history == [0, 10, 30, 100]

    def test_debug_emits_structured_events(self, tmp_path, log_records):
        monitor = ProgressMonitor(
            tmp_path, 1000, 2, get_logger(source="test"), measure=lambda path: 500, debug=True
        )

        monitor.poll(2)

        events = [r for r in log_records if r["extra"].get("event_type") == "copy_progress"]
        assert len(events) == 1
        assert events[0]["extra"]["percent"] == 50
