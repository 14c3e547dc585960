# Admission control for batches during filesystem event storms
from __future__ import annotations

import logging

from librarian_watch.batcher import Batch

logger = logging.getLogger(__name__)

WATCH_EVENT_STORM = "watch_event_storm"


class StormGuard:
    """Discards batches whose epoch saw more raw events than the threshold.

    The counter covers every raw event since the previous batch was emitted,
    and is reset each time a batch is judged, so one storm never affects the
    admission of the next batch.
    """

    def __init__(self, threshold: int):
        if threshold <= 0:
            raise ValueError("storm threshold must be positive")
        self.threshold = threshold
        self._event_count = 0
        self.storms_detected = 0

    @property
    def event_count(self) -> int:
        return self._event_count

    def record_event(self) -> None:
        self._event_count += 1

    def is_storming(self) -> bool:
        return self._event_count > self.threshold

    def admit(self, batch: Batch) -> bool:
        """Judge a batch at its deadline; False means discard it."""
        storming = self.is_storming()
        observed = self._event_count
        self.reset()
        if storming:
            self.storms_detected += 1
            logger.warning(
                f"Watch event storm: {observed} events in one batch window "
                f"(threshold {self.threshold}), discarding {len(batch.paths)} path(s)"
            )
            return False
        return True

    def reset(self) -> None:
        self._event_count = 0
