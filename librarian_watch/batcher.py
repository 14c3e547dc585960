# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Event coalescing: per-path debounce followed by a bounded batch window.

A raw event (re)arms a per-path debounce timer. When a path has been quiet for
``debounce_ms`` it joins the open batch, opening one if needed. The batch
deadline is fixed when the batch opens (``opened_at + batch_window_ms``) and
is never pushed back by later arrivals, so ``batch_window_ms`` bounds how
stale a quiet path can get. At the deadline the batch's path set is handed to
``on_batch`` exactly once and the next path to settle opens a new batch.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from librarian_watch.scheduler import ScheduledTask, TaskScheduler

logger = logging.getLogger(__name__)


@dataclass
class PendingChange:
    """A path waiting for its debounce window to expire."""

    path: str
    last_event_at: float
    event_count: int = 1
    timer: Optional[ScheduledTask] = field(default=None, repr=False)


@dataclass
class Batch:
    """An open coalescing window."""

    paths: Set[str]
    opened_at: float
    deadline_at: float
    epoch: int = 0

    def sorted_paths(self) -> List[str]:
        return sorted(self.paths)


class DebounceBatcher:
    """Coalesces raw path events into deduplicated batches."""

    def __init__(
        self,
        scheduler: TaskScheduler,
        on_batch: Callable[[Batch], None],
        debounce_ms: float = 200,
        batch_window_ms: float = 1000,
    ):
        self._scheduler = scheduler
        self._on_batch = on_batch
        self.debounce_ms = debounce_ms
        self.batch_window_ms = batch_window_ms

        self._pending: Dict[str, PendingChange] = {}
        self._open_batch: Optional[Batch] = None
        self._deadline_timer: Optional[ScheduledTask] = None
        self._epoch = 0

    @property
    def pending(self) -> Dict[str, PendingChange]:
        return dict(self._pending)

    @property
    def open_batch(self) -> Optional[Batch]:
        return self._open_batch

    @property
    def epoch(self) -> int:
        """Number of batches emitted so far."""
        return self._epoch

    def on_event(self, path: str) -> None:
        """Record a raw event for ``path`` and (re)arm its debounce timer."""
        now = self._scheduler.now()
        pending = self._pending.get(path)
        if pending is None:
            pending = PendingChange(path=path, last_event_at=now)
            self._pending[path] = pending
        else:
            pending.last_event_at = now
            pending.event_count += 1
            self._scheduler.cancel(pending.timer)

        pending.timer = self._scheduler.call_later(
            self.debounce_ms,
            lambda: self._on_debounce_expired(path),
            name=f"debounce:{path}",
        )

    def _on_debounce_expired(self, path: str) -> None:
        pending = self._pending.pop(path, None)
        if pending is None:
            return

        if self._open_batch is None:
            now = self._scheduler.now()
            self._open_batch = Batch(
                paths=set(),
                opened_at=now,
                deadline_at=now + self.batch_window_ms,
                epoch=self._epoch,
            )
            self._deadline_timer = self._scheduler.call_later(
                self.batch_window_ms, self._on_deadline, name="batch-deadline"
            )
        self._open_batch.paths.add(path)
        logger.debug(f"Debounced {path} after {pending.event_count} event(s)")

    def _on_deadline(self) -> None:
        batch = self._open_batch
        self._open_batch = None
        self._deadline_timer = None
        if batch is None:
            return
        self._epoch += 1
        self._on_batch(batch)

    def cancel(self) -> None:
        """Drop all pending paths and the open batch without emitting."""
        for pending in self._pending.values():
            self._scheduler.cancel(pending.timer)
        self._pending.clear()
        self._scheduler.cancel(self._deadline_timer)
        self._deadline_timer = None
        self._open_batch = None
