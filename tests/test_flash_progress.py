"""Tests for flash/progress.py - session progress aggregation."""

import io

from aesir.backends.base import ProgressEvent
from aesir.firmware.models import FlashSource
from aesir.flash.progress import ProgressAggregator
from aesir.types import ProgressPhase


def _source(pit_table, name, length):
    return FlashSource(
        name=name,
        stream=io.BytesIO(),
        length=length,
        partition=pit_table.find_by_file_name(name),
    )


def _event(partition, percent, phase=ProgressPhase.TRANSFER):
    return ProgressEvent(partition, phase, 0, 0, percent)


class TestProgressEvent:
    """Tests for ProgressEvent.from_bytes."""

    def test_floor_percent(self):
        """Percentages are floored."""
        event = ProgressEvent.from_bytes("BOOT", ProgressPhase.TRANSFER, 2, 3)

        assert event.percent == 66

    def test_zero_length(self):
        """A zero-length transfer is complete."""
        event = ProgressEvent.from_bytes("BOOT", ProgressPhase.COMMIT, 0, 0)

        assert event.percent == 100

    def test_clamped(self):
        """Overshooting byte counts clamp to 100."""
        event = ProgressEvent.from_bytes("BOOT", ProgressPhase.TRANSFER, 12, 10)

        assert event.percent == 100


class TestProgressAggregator:
    """Tests for ProgressAggregator."""

    def test_session_percent_weighted_by_bytes(self, pit_table):
        """Session progress is weighted by declared partition lengths."""
        aggregator = ProgressAggregator(400)
        aggregator.start_partition(_source(pit_table, "boot.img", 100))

        update = aggregator.update(_event("BOOT", 50))
        assert update.partition_percent == 50
        assert update.session_percent == 12

        aggregator.update(_event("BOOT", 100))
        aggregator.finish_partition()
        aggregator.start_partition(_source(pit_table, "system.img", 300))

        update = aggregator.update(_event("SYSTEM", 0))
        assert update.partition_percent == 0
        assert update.session_percent == 25

        update = aggregator.update(_event("SYSTEM", 100))
        assert update.session_percent == 100

    def test_regression_dropped(self, pit_table):
        """A lower percentage within a partition is dropped."""
        aggregator = ProgressAggregator(100)
        aggregator.start_partition(_source(pit_table, "boot.img", 100))
        aggregator.update(_event("BOOT", 60))

        assert aggregator.update(_event("BOOT", 40)) is None

    def test_duplicates_dropped(self, pit_table):
        """A repeated percentage and phase is dropped."""
        aggregator = ProgressAggregator(100)
        aggregator.start_partition(_source(pit_table, "boot.img", 100))
        aggregator.update(_event("BOOT", 30))

        assert aggregator.update(_event("BOOT", 30)) is None
        commit = aggregator.update(_event("BOOT", 30, ProgressPhase.COMMIT))
        assert commit is not None
        assert commit.phase == ProgressPhase.COMMIT

    def test_session_never_decreases(self, pit_table):
        """Session progress stays monotonic across partitions."""
        aggregator = ProgressAggregator(200)
        aggregator.start_partition(_source(pit_table, "boot.img", 100))
        aggregator.update(_event("BOOT", 100))
        aggregator.finish_partition()
        aggregator.start_partition(_source(pit_table, "recovery.img", 100))

        update = aggregator.update(_event("RECOVERY", 0))

        assert update.session_percent == 50
        assert aggregator.session_percent == 50

    def test_zero_total(self, pit_table):
        """Without a declared total the partition percentage is used."""
        aggregator = ProgressAggregator(0)
        aggregator.start_partition(_source(pit_table, "boot.img", 0))

        assert aggregator.update(_event("BOOT", 70)).session_percent == 70

    def test_sequence_fields_forwarded(self, pit_table):
        """Sequence position is carried through to the update."""
        aggregator = ProgressAggregator(100)
        aggregator.start_partition(_source(pit_table, "boot.img", 100))

        update = aggregator.update(
            ProgressEvent("BOOT", ProgressPhase.TRANSFER, 10, 100, 10, 1, 4)
        )

        assert (update.sequence_index, update.sequence_total) == (1, 4)
