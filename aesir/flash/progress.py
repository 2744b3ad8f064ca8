"""Session-wide progress aggregation.

Backends report per-partition ProgressEvents. The aggregator folds them into
one session signal: partition percentages never decrease within a partition,
session percentages never decrease at all, and repeated values are dropped.
"""

import logging
import threading
from dataclasses import dataclass

from aesir.backends.base import ProgressEvent
from aesir.firmware.models import FlashSource
from aesir.types import ProgressPhase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressUpdate:
    """One de-duplicated progress notification.

    Attributes:
        partition: Partition being written.
        phase: Transfer or commit.
        partition_percent: Percentage of the current partition.
        session_percent: Percentage of all bytes in the session.
        sequence_index: Current sequence of the partition.
        sequence_total: Expected sequences of the partition.
    """

    partition: str
    phase: ProgressPhase
    partition_percent: int
    session_percent: int
    sequence_index: int = 0
    sequence_total: int = 1


def _clamp(value: int) -> int:
    return max(0, min(100, value))


class ProgressAggregator:
    """Folds partition events into a monotonic session progress signal."""

    def __init__(self, total_bytes: int) -> None:
        self.total_bytes = total_bytes
        self._lock = threading.Lock()
        self._completed_bytes = 0
        self._partition: str | None = None
        self._partition_length = 0
        self._partition_percent = -1
        self._session_percent = 0
        self._last: tuple[int, ProgressPhase] | None = None

    @property
    def session_percent(self) -> int:
        return self._session_percent

    def start_partition(self, source: FlashSource) -> None:
        """Reset per-partition state before a transfer."""
        with self._lock:
            self._partition = source.partition.name
            self._partition_length = source.length
            self._partition_percent = -1
            self._last = None

    def finish_partition(self) -> None:
        """Account the current partition as fully transferred."""
        with self._lock:
            self._completed_bytes += self._partition_length
            self._partition = None
            self._partition_length = 0

    def update(self, event: ProgressEvent) -> ProgressUpdate | None:
        """Fold one backend event into the session signal.

        Args:
            event: Event from the backend.

        Returns:
            The update to surface, or None when it repeats or regresses.
        """
        with self._lock:
            percent = _clamp(event.percent)
            if percent < self._partition_percent:
                logger.debug(
                    "Dropping regressing progress %d%% for %s", percent, event.partition
                )
                return None
            key = (percent, event.phase)
            if key == self._last:
                return None
            self._last = key
            self._partition_percent = percent

            if self.total_bytes > 0:
                done = self._completed_bytes + self._partition_length * percent // 100
                session = _clamp(done * 100 // self.total_bytes)
            else:
                session = percent
            self._session_percent = max(self._session_percent, session)

            return ProgressUpdate(
                partition=event.partition,
                phase=event.phase,
                partition_percent=percent,
                session_percent=self._session_percent,
                sequence_index=event.sequence_index,
                sequence_total=event.sequence_total,
            )


__all__ = ["ProgressAggregator", "ProgressUpdate"]
